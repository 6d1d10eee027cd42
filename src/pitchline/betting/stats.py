"""Rolling team and league aggregates built from finished results.

Profiles are pure functions of the result rows, a window and an injected
``now``; :class:`StatsAggregator` only adds store access and the cached
copies (with ``computed_at`` freshness) that downstream jobs read.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from collections import Counter
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..utils_date import ensure_utc, lookback_start, parse_timestamp, utcnow
from .models import METRICS, FixtureResult
from .store import GLOBAL_LEAGUE_KEY, SQLiteStore

logger = logging.getLogger(__name__)

NEUTRAL_RATE = 0.5
TEAM_WINDOW_MONTHS = 18
LEAGUE_WINDOW_MONTHS = 12
TEAM_SAMPLE_SIZE = 10

# League totals used when a league has no qualifying matches yet.
DEFAULT_LEAGUE_TOTALS: Mapping[str, float] = {
    "goals": 2.6,
    "corners": 10.0,
    "cards": 4.0,
    "fouls": 24.0,
    "offsides": 3.5,
}

DEFAULT_THRESHOLDS: Mapping[str, float] = {
    "goals": 2.5,
    "corners": 9.5,
    "cards": 4.5,
    "fouls": 25.5,
    "offsides": 3.5,
}

LEAGUE_THRESHOLDS: Mapping[int, Mapping[str, float]] = {
    39: {"corners": 9.5, "fouls": 23.5},
    40: {"corners": 10.5, "fouls": 24.5},
    140: {"corners": 9.5, "fouls": 25.5},
    141: {"corners": 9.5, "fouls": 24.5},
    78: {"corners": 9.5, "fouls": 22.5},
    79: {"corners": 9.5, "fouls": 23.5},
    135: {"corners": 9.5, "fouls": 27.5},
    136: {"corners": 9.5, "fouls": 26.5},
    61: {"corners": 9.5, "fouls": 24.5},
    62: {"corners": 9.5, "fouls": 24.5},
    94: {"corners": 9.5, "fouls": 28.5},
    88: {"corners": 10.5, "fouls": 24.5},
    144: {"corners": 10.5, "fouls": 25.5},
    203: {"corners": 9.5, "fouls": 26.5},
    2: {"corners": 9.5, "fouls": 24.5},
    3: {"corners": 9.5, "fouls": 25.5},
    848: {"corners": 9.5, "fouls": 25.5},
}


def league_thresholds(
    league_id: int | None,
    overrides: Mapping[int, Mapping[str, float]] | None = None,
) -> dict[str, float]:
    """Over/under thresholds for a league, falling back to the defaults."""

    thresholds = dict(DEFAULT_THRESHOLDS)
    table = LEAGUE_THRESHOLDS if overrides is None else {**LEAGUE_THRESHOLDS, **overrides}
    if league_id is not None:
        thresholds.update(table.get(league_id, {}))
    return thresholds


@dataclasses.dataclass(slots=True)
class MetricSample:
    """Running sums for one metric.

    For team profiles ``for``/``against`` are from the team's perspective;
    league profiles use them for home and away respectively.
    """

    metric: str
    sample_size: int = 0
    total_for: float = 0.0
    total_against: float = 0.0
    distribution: dict[int, int] = dataclasses.field(default_factory=dict)

    def add(self, value_for: int, value_against: int) -> None:
        self.sample_size += 1
        self.total_for += value_for
        self.total_against += value_against
        total = value_for + value_against
        self.distribution[total] = self.distribution.get(total, 0) + 1

    @property
    def avg_for(self) -> float | None:
        return self.total_for / self.sample_size if self.sample_size else None

    @property
    def avg_against(self) -> float | None:
        return self.total_against / self.sample_size if self.sample_size else None

    @property
    def avg_total(self) -> float | None:
        if not self.sample_size:
            return None
        return (self.total_for + self.total_against) / self.sample_size

    def rate_over(self, line: float) -> float:
        """Share of matches whose total beat ``line``; neutral when empty."""

        if not self.sample_size:
            return NEUTRAL_RATE
        hits = sum(count for total, count in self.distribution.items() if total > line)
        return hits / self.sample_size

    def rate_under(self, line: float) -> float:
        if not self.sample_size:
            return NEUTRAL_RATE
        hits = sum(count for total, count in self.distribution.items() if total < line)
        return hits / self.sample_size

    def to_payload(self) -> dict[str, Any]:
        return {
            "sample_size": self.sample_size,
            "total_for": self.total_for,
            "total_against": self.total_against,
            "distribution": {str(total): count for total, count in sorted(self.distribution.items())},
        }

    @classmethod
    def from_payload(cls, metric: str, payload: Mapping[str, Any]) -> "MetricSample":
        return cls(
            metric=metric,
            sample_size=int(payload.get("sample_size", 0)),
            total_for=float(payload.get("total_for", 0.0)),
            total_against=float(payload.get("total_against", 0.0)),
            distribution={int(total): int(count) for total, count in (payload.get("distribution") or {}).items()},
        )


@dataclasses.dataclass(slots=True)
class TeamStatProfile:
    team_id: int
    computed_at: dt.datetime
    window_start: dt.datetime
    sample_size: int
    metrics: dict[str, MetricSample]
    league_id: int | None = None
    btts_hits: int = 0
    wins: int = 0
    draws: int = 0
    losses: int = 0

    def metric(self, name: str) -> MetricSample:
        sample = self.metrics.get(name)
        return sample if sample is not None else MetricSample(metric=name)

    def metric_sample(self, name: str) -> int:
        return self.metric(name).sample_size

    @property
    def goals_sample(self) -> int:
        return self.metric_sample("goals")

    @property
    def btts_rate(self) -> float:
        sample = self.goals_sample
        return self.btts_hits / sample if sample else NEUTRAL_RATE

    @property
    def over_25_rate(self) -> float:
        return self.metric("goals").rate_over(2.5)

    def outcome_rates(self) -> tuple[float, float, float]:
        """(win, draw, loss) shares; a third each when nothing is known."""

        sample = self.goals_sample
        if not sample:
            return 1 / 3, 1 / 3, 1 / 3
        return self.wins / sample, self.draws / sample, self.losses / sample

    def age(self, now: dt.datetime) -> dt.timedelta:
        return ensure_utc(now) - self.computed_at

    def to_payload(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "league_id": self.league_id,
            "computed_at": self.computed_at.isoformat(),
            "window_start": self.window_start.isoformat(),
            "sample_size": self.sample_size,
            "btts_hits": self.btts_hits,
            "wins": self.wins,
            "draws": self.draws,
            "losses": self.losses,
            "metrics": {name: sample.to_payload() for name, sample in self.metrics.items()},
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TeamStatProfile":
        return cls(
            team_id=int(payload["team_id"]),
            league_id=payload.get("league_id"),
            computed_at=parse_timestamp(payload["computed_at"]),
            window_start=parse_timestamp(payload["window_start"]),
            sample_size=int(payload["sample_size"]),
            btts_hits=int(payload.get("btts_hits", 0)),
            wins=int(payload.get("wins", 0)),
            draws=int(payload.get("draws", 0)),
            losses=int(payload.get("losses", 0)),
            metrics={
                name: MetricSample.from_payload(name, data)
                for name, data in (payload.get("metrics") or {}).items()
            },
        )


@dataclasses.dataclass(slots=True)
class LeagueStatProfile:
    league_id: int
    computed_at: dt.datetime
    window_start: dt.datetime
    matches_count: int
    metrics: dict[str, MetricSample]
    thresholds: dict[str, float]
    btts_hits: int = 0
    home_wins: int = 0
    draws: int = 0
    away_wins: int = 0

    def metric(self, name: str) -> MetricSample:
        sample = self.metrics.get(name)
        return sample if sample is not None else MetricSample(metric=name)

    def average_total(self, name: str) -> float:
        """Mean match total for ``name``, or the documented fallback."""

        value = self.metric(name).avg_total
        if value is None or value <= 0:
            return DEFAULT_LEAGUE_TOTALS[name]
        return value

    def per_team_average(self, name: str) -> float:
        return self.average_total(name) / 2.0

    def threshold(self, name: str) -> float:
        return self.thresholds.get(name, DEFAULT_THRESHOLDS[name])

    def over_rate(self, name: str, line: float | None = None) -> float:
        return self.metric(name).rate_over(self.threshold(name) if line is None else line)

    def under_rate(self, name: str, line: float | None = None) -> float:
        return self.metric(name).rate_under(self.threshold(name) if line is None else line)

    @property
    def btts_rate(self) -> float:
        sample = self.metric("goals").sample_size
        return self.btts_hits / sample if sample else NEUTRAL_RATE

    def outcome_rates(self) -> tuple[float, float, float]:
        """(home win, draw, away win) shares."""

        sample = self.metric("goals").sample_size
        if not sample:
            return 1 / 3, 1 / 3, 1 / 3
        return self.home_wins / sample, self.draws / sample, self.away_wins / sample

    def to_payload(self) -> dict[str, Any]:
        return {
            "league_id": self.league_id,
            "computed_at": self.computed_at.isoformat(),
            "window_start": self.window_start.isoformat(),
            "matches_count": self.matches_count,
            "thresholds": dict(self.thresholds),
            "btts_hits": self.btts_hits,
            "home_wins": self.home_wins,
            "draws": self.draws,
            "away_wins": self.away_wins,
            "metrics": {name: sample.to_payload() for name, sample in self.metrics.items()},
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LeagueStatProfile":
        return cls(
            league_id=int(payload["league_id"]),
            computed_at=parse_timestamp(payload["computed_at"]),
            window_start=parse_timestamp(payload["window_start"]),
            matches_count=int(payload["matches_count"]),
            thresholds={key: float(value) for key, value in (payload.get("thresholds") or {}).items()},
            btts_hits=int(payload.get("btts_hits", 0)),
            home_wins=int(payload.get("home_wins", 0)),
            draws=int(payload.get("draws", 0)),
            away_wins=int(payload.get("away_wins", 0)),
            metrics={
                name: MetricSample.from_payload(name, data)
                for name, data in (payload.get("metrics") or {}).items()
            },
        )


def compute_team_profile(
    results: Iterable[FixtureResult],
    team_id: int,
    *,
    now: dt.datetime,
    window_start: dt.datetime,
    max_sample: int = TEAM_SAMPLE_SIZE,
    metrics: Sequence[str] = METRICS,
    league_id: int | None = None,
) -> TeamStatProfile:
    """Average the last ``max_sample`` final matches of ``team_id``.

    The match list is truncated first; each metric then only counts the
    matches where both sides' values are present, so per-metric samples can
    be smaller than ``sample_size``.
    """

    if max_sample <= 0:
        raise ValueError("max_sample must be positive")
    now = ensure_utc(now)
    window_start = ensure_utc(window_start)
    eligible = [
        result
        for result in results
        if result.is_final
        and result.involves(team_id)
        and window_start <= result.kickoff_at <= now
        and (league_id is None or result.league_id == league_id)
    ]
    eligible.sort(key=lambda result: (result.kickoff_at, result.fixture_id), reverse=True)
    recent = eligible[:max_sample]

    samples = {name: MetricSample(metric=name) for name in metrics}
    btts_hits = wins = draws = losses = 0
    for result in recent:
        for name, sample in samples.items():
            value_for, value_against = result.perspective(team_id, name)
            if value_for is None or value_against is None:
                continue
            sample.add(value_for, value_against)
        goals_for, goals_against = result.perspective(team_id, "goals")
        if goals_for is None or goals_against is None:
            continue
        if goals_for > 0 and goals_against > 0:
            btts_hits += 1
        if goals_for > goals_against:
            wins += 1
        elif goals_for == goals_against:
            draws += 1
        else:
            losses += 1

    return TeamStatProfile(
        team_id=team_id,
        league_id=league_id,
        computed_at=now,
        window_start=window_start,
        sample_size=len(recent),
        metrics=samples,
        btts_hits=btts_hits,
        wins=wins,
        draws=draws,
        losses=losses,
    )


def compute_league_profile(
    results: Iterable[FixtureResult],
    league_id: int,
    *,
    now: dt.datetime,
    window_start: dt.datetime,
    metrics: Sequence[str] = METRICS,
    thresholds: Mapping[str, float] | None = None,
) -> LeagueStatProfile:
    now = ensure_utc(now)
    window_start = ensure_utc(window_start)
    samples = {name: MetricSample(metric=name) for name in metrics}
    outcomes: Counter[str] = Counter()
    matches = 0
    for result in results:
        if not (result.is_final and result.league_id == league_id):
            continue
        if not window_start <= result.kickoff_at <= now:
            continue
        matches += 1
        for name, sample in samples.items():
            home, away = result.pair(name)
            if home is None or away is None:
                continue
            sample.add(home, away)
        home_goals, away_goals = result.pair("goals")
        if home_goals is None or away_goals is None:
            continue
        if home_goals > 0 and away_goals > 0:
            outcomes["btts"] += 1
        if home_goals > away_goals:
            outcomes["home"] += 1
        elif home_goals == away_goals:
            outcomes["draw"] += 1
        else:
            outcomes["away"] += 1

    return LeagueStatProfile(
        league_id=league_id,
        computed_at=now,
        window_start=window_start,
        matches_count=matches,
        metrics=samples,
        thresholds=dict(thresholds if thresholds is not None else league_thresholds(league_id)),
        btts_hits=outcomes["btts"],
        home_wins=outcomes["home"],
        draws=outcomes["draw"],
        away_wins=outcomes["away"],
    )


def is_stale(computed_at: dt.datetime, now: dt.datetime, max_age: dt.timedelta) -> bool:
    return ensure_utc(now) - ensure_utc(computed_at) > max_age


@dataclasses.dataclass(slots=True)
class AggregationBatch:
    """Profiles computed in a batch plus the teams that failed."""

    profiles: dict[int, TeamStatProfile] = dataclasses.field(default_factory=dict)
    errors: dict[int, str] = dataclasses.field(default_factory=dict)
    skipped: list[int] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _positive(name: str, value: int | None, default: int) -> int:
    """``default`` when ``value`` is None; zero and negatives are rejected, not defaulted."""

    if value is None:
        return default
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value


class StatsAggregator:
    """Compute and cache team and league profiles from the result store."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        team_window_months: int = TEAM_WINDOW_MONTHS,
        league_window_months: int = LEAGUE_WINDOW_MONTHS,
        max_sample: int = TEAM_SAMPLE_SIZE,
        max_age: dt.timedelta = dt.timedelta(hours=24),
        threshold_overrides: Mapping[int, Mapping[str, float]] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self.team_window_months = team_window_months
        self.league_window_months = league_window_months
        self.max_sample = max_sample
        self.max_age = max_age
        self._threshold_overrides = threshold_overrides

    def aggregate(
        self,
        team_id: int,
        metric_set: Sequence[str] = METRICS,
        window_months: int | None = None,
        max_sample: int | None = None,
        *,
        league_id: int | None = None,
    ) -> TeamStatProfile:
        now = self._clock()
        window_start = lookback_start(now, months=_positive("window_months", window_months, self.team_window_months))
        results = self._store.results_for_team(
            team_id, since=window_start, until=now, league_id=league_id
        )
        return compute_team_profile(
            results,
            team_id,
            now=now,
            window_start=window_start,
            max_sample=_positive("max_sample", max_sample, self.max_sample),
            metrics=metric_set,
            league_id=league_id,
        )

    def aggregate_league(self, league_id: int, window_months: int | None = None) -> LeagueStatProfile:
        now = self._clock()
        window_start = lookback_start(now, months=_positive("window_months", window_months, self.league_window_months))
        results = self._store.results_for_league(league_id, since=window_start, until=now)
        return compute_league_profile(
            results,
            league_id,
            now=now,
            window_start=window_start,
            thresholds=league_thresholds(league_id, self._threshold_overrides),
        )

    def aggregate_many(
        self,
        team_ids: Iterable[int],
        metric_set: Sequence[str] = METRICS,
        window_months: int | None = None,
        max_sample: int | None = None,
        *,
        league_id: int | None = None,
    ) -> AggregationBatch:
        """Aggregate several teams; one team's failure never stops the rest."""

        batch = AggregationBatch()
        for team_id in team_ids:
            try:
                batch.profiles[team_id] = self.aggregate(
                    team_id,
                    metric_set,
                    window_months,
                    max_sample,
                    league_id=league_id,
                )
            except Exception as exc:  # noqa: BLE001 - isolate per-team failures
                logger.warning("Aggregation failed for team %s: %s", team_id, exc)
                batch.errors[team_id] = str(exc)
        return batch

    # ------------------------------------------------------------------
    # cached profiles
    # ------------------------------------------------------------------
    def team_profile(self, team_id: int, *, league_id: int | None = None, force: bool = False) -> TeamStatProfile:
        """Return a cached profile when fresh, recomputing and saving otherwise."""

        profile, _ = self.refresh_team(team_id, league_id=league_id, force=force)
        return profile

    def refresh_team(
        self,
        team_id: int,
        *,
        league_id: int | None = None,
        force: bool = False,
    ) -> tuple[TeamStatProfile, bool]:
        league_key = GLOBAL_LEAGUE_KEY if league_id is None else league_id
        now = self._clock()
        if not force:
            cached = self._store.load_team_profile(team_id, league_key)
            if cached is not None and not is_stale(cached[0], now, self.max_age):
                return TeamStatProfile.from_payload(cached[1]), False
        profile = self.aggregate(team_id, league_id=league_id)
        self._store.save_team_profile(team_id, league_key, profile.computed_at, profile.to_payload())
        return profile, True

    def league_profile(self, league_id: int, *, force: bool = False) -> LeagueStatProfile:
        profile, _ = self.refresh_league(league_id, force=force)
        return profile

    def refresh_league(self, league_id: int, *, force: bool = False) -> tuple[LeagueStatProfile, bool]:
        now = self._clock()
        if not force:
            cached = self._store.load_league_profile(league_id)
            if cached is not None and not is_stale(cached[0], now, self.max_age):
                return LeagueStatProfile.from_payload(cached[1]), False
        profile = self.aggregate_league(league_id)
        self._store.save_league_profile(league_id, profile.computed_at, profile.to_payload())
        return profile, True


__all__ = [
    "AggregationBatch",
    "DEFAULT_LEAGUE_TOTALS",
    "DEFAULT_THRESHOLDS",
    "LEAGUE_THRESHOLDS",
    "LeagueStatProfile",
    "MetricSample",
    "NEUTRAL_RATE",
    "StatsAggregator",
    "TeamStatProfile",
    "compute_league_profile",
    "compute_team_profile",
    "is_stale",
    "league_thresholds",
]
