"""Turn odds offers and profiles into scored candidate selections."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

from ..utils_date import ensure_utc
from .markets import MarketKind, MarketSpec, Side, parse_market
from .models import Fixture
from .probability import DataQuality, ProbabilityEngine, RateObservation
from .stats import LeagueStatProfile, TeamStatProfile
from .utils import edge_from_decimal, implied_probability_from_decimal, normalise_decimal_odds

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .calibration import PerformanceWeights

logger = logging.getLogger(__name__)

ODDS_MIN = 1.25
ODDS_MAX = 5.00


@dataclasses.dataclass(frozen=True, slots=True)
class LineRule:
    """Combined averages in ``[low, high)`` map to ``line`` (``None`` = skip)."""

    low: float
    high: float
    line: float | None


LINE_RULES: Mapping[MarketKind, tuple[LineRule, ...]] = {
    MarketKind.GOALS: (
        LineRule(1.0, 2.0, 0.5),
        LineRule(2.0, 2.7, 1.5),
        LineRule(2.7, 4.0, 2.5),
        LineRule(4.0, 5.0, 3.5),
        LineRule(5.0, float("inf"), 4.5),
    ),
    MarketKind.CORNERS: (
        LineRule(7.0, 8.0, 7.5),
        LineRule(8.0, 9.0, 8.5),
        LineRule(9.0, 10.0, 9.5),
        LineRule(10.0, 11.0, 10.5),
        LineRule(11.0, 12.0, 11.5),
        LineRule(12.0, float("inf"), 12.5),
    ),
    MarketKind.CARDS: (
        LineRule(0.0, 2.0, None),
        LineRule(2.0, 3.0, 1.5),
        LineRule(3.0, 4.0, 2.5),
        LineRule(4.0, 5.0, 3.5),
        LineRule(5.0, 6.0, 4.5),
        LineRule(6.0, float("inf"), 5.5),
    ),
    MarketKind.FOULS: (
        LineRule(0.0, 20.0, None),
        LineRule(20.0, 24.0, 23.5),
        LineRule(24.0, 28.0, 27.5),
        LineRule(28.0, float("inf"), 31.5),
    ),
    MarketKind.OFFSIDES: (
        LineRule(0.0, 2.0, None),
        LineRule(2.0, 3.0, 2.5),
        LineRule(3.0, 4.0, 3.5),
        LineRule(4.0, 5.0, 4.5),
        LineRule(5.0, float("inf"), 5.5),
    ),
}


def pick_line(kind: MarketKind, combined_average: float | None) -> float | None:
    """Recommended "over" line for a combined average, or ``None`` to skip."""

    if combined_average is None:
        return None
    for rule in LINE_RULES.get(kind, ()):
        if rule.low <= combined_average < rule.high:
            return rule.line
    return None


def combined_averages(home: TeamStatProfile, away: TeamStatProfile) -> dict[str, float | None]:
    """Mean of both teams' per-match totals for every tracked metric."""

    combined: dict[str, float | None] = {}
    for kind in LINE_RULES:
        metric = kind.value
        values = [
            value
            for value in (home.metric(metric).avg_total, away.metric(metric).avg_total)
            if value is not None
        ]
        combined[metric] = sum(values) / len(values) if values else None
    return combined


@dataclasses.dataclass(slots=True)
class OddsOffer:
    """A bookmaker price for one market side on one fixture."""

    fixture_id: int
    market: MarketSpec
    odds: float
    bookmaker: str = ""

    @classmethod
    def from_raw(
        cls,
        fixture_id: int,
        market: str,
        side: str,
        line: float | str | None,
        odds: float | str,
        bookmaker: str = "",
    ) -> "OddsOffer":
        return cls(
            fixture_id=fixture_id,
            market=parse_market(market, side, line),
            odds=normalise_decimal_odds(odds),
            bookmaker=bookmaker,
        )


@dataclasses.dataclass(slots=True)
class CandidateSelection:
    fixture_id: int
    market: MarketSpec
    odds: float
    model_probability: float
    edge: float
    kickoff_at: dt.datetime
    league_id: int | None = None
    data_quality: DataQuality = DataQuality.LOW
    sample_size: int = 0
    performance_weight: float = 1.0
    bookmaker: str = ""
    combined_snapshot: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def implied_probability(self) -> float:
        return implied_probability_from_decimal(self.odds)

    @property
    def identity(self) -> str:
        """Canonical ``fixture-market-side-line`` token used in ticket hashes."""

        line = "" if self.market.line is None else f"{self.market.line:g}"
        return f"{self.fixture_id}-{self.market.kind.value}-{self.market.side.value}-{line}"

    def is_upcoming(self, now: dt.datetime) -> bool:
        return self.kickoff_at > ensure_utc(now)


def consolidate_best_offers(offers: Iterable[OddsOffer]) -> list[OddsOffer]:
    """Keep the best price per (fixture, market side, line)."""

    best: dict[tuple[int, str], OddsOffer] = {}
    for offer in offers:
        key = (offer.fixture_id, offer.market.key)
        current = best.get(key)
        if current is None or offer.odds > current.odds:
            best[key] = offer
    return list(best.values())


def prune_expired(candidates: Iterable[CandidateSelection], now: dt.datetime) -> list[CandidateSelection]:
    return [candidate for candidate in candidates if candidate.is_upcoming(now)]


class CandidateBuilder:
    """Estimate every supported offer of a fixture and keep the playable ones."""

    def __init__(
        self,
        engine: ProbabilityEngine,
        *,
        weights: "PerformanceWeights | None" = None,
        odds_min: float = ODDS_MIN,
        odds_max: float = ODDS_MAX,
        min_quality: DataQuality = DataQuality.LOW,
        min_edge: float | None = None,
        follow_line_rules: bool = False,
    ) -> None:
        if odds_min > odds_max:
            raise ValueError("odds_min must not exceed odds_max")
        self.engine = engine
        self.weights = weights
        self.odds_min = odds_min
        self.odds_max = odds_max
        self.min_quality = min_quality
        self.min_edge = min_edge
        self.follow_line_rules = follow_line_rules

    def in_band(self, odds: float) -> bool:
        return self.odds_min <= odds <= self.odds_max

    def build(
        self,
        fixture: Fixture,
        offers: Sequence[OddsOffer],
        home: TeamStatProfile,
        away: TeamStatProfile,
        league: LeagueStatProfile,
        *,
        secondary_rates: Mapping[str, tuple[RateObservation | None, RateObservation | None]] | None = None,
    ) -> list[CandidateSelection]:
        """Score ``offers`` for ``fixture``.

        ``secondary_rates`` maps a market key to optional (home, away)
        secondary observations handed through to the engine.
        """

        combined = combined_averages(home, away)
        recommended = {kind.value: pick_line(kind, combined[kind.value]) for kind in LINE_RULES}
        candidates: list[CandidateSelection] = []
        for offer in consolidate_best_offers(offers):
            spec = offer.market
            if offer.fixture_id != fixture.fixture_id:
                continue
            if not self.in_band(offer.odds):
                logger.debug("Offer %s @ %.2f outside odds band", spec.key, offer.odds)
                continue
            if not self.engine.supports(spec):
                continue
            if self.follow_line_rules and spec.kind.is_total:
                if spec.side is not Side.OVER or recommended.get(spec.kind.value) != spec.line:
                    continue
            secondary_home, secondary_away = (secondary_rates or {}).get(spec.key, (None, None))
            estimate = self.engine.estimate(
                spec,
                home,
                away,
                league,
                secondary_home=secondary_home,
                secondary_away=secondary_away,
            )
            if not estimate.data_quality.at_least(self.min_quality):
                continue
            edge = edge_from_decimal(estimate.probability, offer.odds)
            if self.min_edge is not None and edge < self.min_edge:
                continue
            weight = 1.0
            if self.weights is not None:
                weight = self.weights.weight_for(spec, fixture.league_id)
            snapshot = estimate.snapshot()
            snapshot["combined"] = {key: None if value is None else round(value, 3) for key, value in combined.items()}
            snapshot["recommended_line"] = recommended.get(spec.kind.value)
            snapshot["home_sample"] = home.sample_size
            snapshot["away_sample"] = away.sample_size
            candidates.append(
                CandidateSelection(
                    fixture_id=fixture.fixture_id,
                    league_id=fixture.league_id,
                    kickoff_at=fixture.kickoff_at,
                    market=spec,
                    odds=offer.odds,
                    model_probability=estimate.probability,
                    edge=edge,
                    data_quality=estimate.data_quality,
                    sample_size=estimate.min_sample,
                    performance_weight=weight,
                    bookmaker=offer.bookmaker,
                    combined_snapshot=snapshot,
                )
            )
        logger.debug("Fixture %s produced %d candidates", fixture.fixture_id, len(candidates))
        return candidates


__all__ = [
    "CandidateBuilder",
    "CandidateSelection",
    "LINE_RULES",
    "LineRule",
    "ODDS_MAX",
    "ODDS_MIN",
    "OddsOffer",
    "combined_averages",
    "consolidate_best_offers",
    "pick_line",
    "prune_expired",
]
