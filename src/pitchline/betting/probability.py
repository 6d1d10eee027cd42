"""Bounded market probabilities from team and league profiles.

Every estimate blends a parametric model (Poisson totals, independent
scoring for BTTS, a linear ratio for fouls, a Poisson score grid for 1X2)
with an empirical hit rate, then clamps to market-specific bounds so no
price ever sees certainty.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
from typing import Any, Mapping

from .errors import UnsupportedMarket
from .markets import MarketKind, MarketSpec, Side
from .stats import LeagueStatProfile, TeamStatProfile
from .utils import clamp

logger = logging.getLogger(__name__)

REFERENCE_SAMPLE = 5
HOME_ADJUSTMENT = 1.05
AWAY_ADJUSTMENT = 0.95
TRUSTED_SAMPLE = 8
DISAGREEMENT_TOLERANCE = 0.15
MAX_GOALS_GRID = 10
FOULS_SLOPE = 0.4
FOULS_MODEL_BOUNDS = (0.2, 0.9)


@dataclasses.dataclass(frozen=True, slots=True)
class MarketModel:
    """Blend weight ``alpha`` on the model and the final clamp bounds."""

    alpha: float
    min_bound: float
    max_bound: float

    def __post_init__(self) -> None:
        if not 0.0 < self.alpha < 1.0:
            raise ValueError("alpha must lie strictly between 0 and 1")
        if not 0.0 < self.min_bound < self.max_bound < 1.0:
            raise ValueError("bounds must satisfy 0 < min < max < 1")


DEFAULT_MARKET_MODELS: Mapping[MarketKind, MarketModel] = {
    MarketKind.GOALS: MarketModel(alpha=0.6, min_bound=0.25, max_bound=0.85),
    MarketKind.BTTS: MarketModel(alpha=0.5, min_bound=0.25, max_bound=0.85),
    MarketKind.CORNERS: MarketModel(alpha=0.55, min_bound=0.30, max_bound=0.80),
    MarketKind.FOULS: MarketModel(alpha=0.5, min_bound=0.25, max_bound=0.85),
    MarketKind.CARDS: MarketModel(alpha=0.5, min_bound=0.25, max_bound=0.85),
    MarketKind.OFFSIDES: MarketModel(alpha=0.5, min_bound=0.25, max_bound=0.85),
    MarketKind.RESULT: MarketModel(alpha=0.6, min_bound=0.05, max_bound=0.90),
}


class DataQuality(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_sample(cls, sample: int) -> "DataQuality":
        if sample >= 8:
            return cls.HIGH
        if sample >= 5:
            return cls.MEDIUM
        return cls.LOW

    def at_least(self, other: "DataQuality") -> bool:
        order = [DataQuality.LOW, DataQuality.MEDIUM, DataQuality.HIGH]
        return order.index(self) >= order.index(other)


@dataclasses.dataclass(frozen=True, slots=True)
class RateObservation:
    """An empirical rate with the sample it came from and a source label."""

    rate: float
    sample_size: int
    source: str


def resolve_empirical_rate(
    primary: RateObservation,
    secondary: RateObservation | None,
    *,
    trusted_sample: int = TRUSTED_SAMPLE,
    tolerance: float = DISAGREEMENT_TOLERANCE,
) -> RateObservation:
    """Pick between a team's own rate and a secondary cached rate.

    1. No usable secondary, or the secondary sample is below
       ``trusted_sample``: the primary wins.
    2. Secondary trusted and primary not: the secondary wins.
    3. Both trusted and within ``tolerance`` of each other: the primary wins.
    4. Both trusted and further apart: sample-weighted average, labelled
       ``"blended"``.
    """

    if secondary is None or secondary.sample_size < trusted_sample:
        return primary
    if primary.sample_size < trusted_sample:
        return secondary
    if abs(primary.rate - secondary.rate) <= tolerance:
        return primary
    total = primary.sample_size + secondary.sample_size
    blended = (primary.rate * primary.sample_size + secondary.rate * secondary.sample_size) / total
    return RateObservation(
        rate=blended,
        sample_size=max(primary.sample_size, secondary.sample_size),
        source="blended",
    )


def shrink(
    team_value: float | None,
    league_value: float,
    sample_size: int,
    reference_sample: int = REFERENCE_SAMPLE,
) -> float:
    """Pull a small-sample team value toward the league value.

    With no sample (or no value) the league value is returned; from
    ``reference_sample`` upwards the team value is used as is, and in between
    the weight on the team value is ``sample_size / reference_sample``.
    """

    if team_value is None or sample_size <= 0:
        return league_value
    if sample_size >= reference_sample:
        return team_value
    weight = sample_size / reference_sample
    return weight * team_value + (1.0 - weight) * league_value


def poisson_pmf(k: int, lam: float) -> float:
    if k < 0:
        return 0.0
    if lam <= 0:
        return 1.0 if k == 0 else 0.0
    return math.exp(k * math.log(lam) - lam - math.lgamma(k + 1))


def poisson_cdf(k: int, lam: float) -> float:
    if k < 0:
        return 0.0
    if lam <= 0:
        return 1.0
    cumulative = 0.0
    term = math.exp(-lam)
    cumulative += term
    for i in range(1, k + 1):
        term *= lam / i
        cumulative += term
    return min(cumulative, 1.0)


def poisson_over(line: float, lam: float) -> float:
    """``P(X > line)`` for a Poisson total."""

    return max(0.0, 1.0 - poisson_cdf(math.floor(line), lam))


def poisson_under(line: float, lam: float) -> float:
    """``P(X < line)``; on whole lines the push mass belongs to neither side."""

    return poisson_cdf(math.ceil(line) - 1, lam)


def result_probabilities(mu_home: float, mu_away: float, max_goals: int = MAX_GOALS_GRID) -> tuple[float, float, float]:
    """(home, draw, away) from independent Poisson scores, renormalised on the grid."""

    home_pmf = [poisson_pmf(k, mu_home) for k in range(max_goals + 1)]
    away_pmf = [poisson_pmf(k, mu_away) for k in range(max_goals + 1)]
    home = draw = away = 0.0
    for home_goals, p_home in enumerate(home_pmf):
        for away_goals, p_away in enumerate(away_pmf):
            joint = p_home * p_away
            if home_goals > away_goals:
                home += joint
            elif home_goals == away_goals:
                draw += joint
            else:
                away += joint
    mass = home + draw + away
    if mass <= 0:
        return 1 / 3, 1 / 3, 1 / 3
    return home / mass, draw / mass, away / mass


@dataclasses.dataclass(slots=True)
class ProbabilityEstimate:
    market: MarketSpec
    probability: float
    model_probability: float
    empirical_probability: float
    data_quality: DataQuality
    min_sample: int
    expected_home: float | None = None
    expected_away: float | None = None
    empirical_sources: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def expected_total(self) -> float | None:
        if self.expected_home is None or self.expected_away is None:
            return None
        return self.expected_home + self.expected_away

    def snapshot(self) -> dict[str, Any]:
        return {
            "market": self.market.key,
            "probability": round(self.probability, 4),
            "model_probability": round(self.model_probability, 4),
            "empirical_probability": round(self.empirical_probability, 4),
            "data_quality": self.data_quality.value,
            "min_sample": self.min_sample,
            "expected_home": None if self.expected_home is None else round(self.expected_home, 3),
            "expected_away": None if self.expected_away is None else round(self.expected_away, 3),
            "empirical_sources": dict(self.empirical_sources),
        }


class ProbabilityEngine:
    """Estimate market probabilities for one fixture's pair of profiles."""

    def __init__(
        self,
        *,
        market_models: Mapping[MarketKind, MarketModel] | None = None,
        reference_sample: int = REFERENCE_SAMPLE,
        home_adjustment: float = HOME_ADJUSTMENT,
        away_adjustment: float = AWAY_ADJUSTMENT,
        trusted_sample: int = TRUSTED_SAMPLE,
        disagreement_tolerance: float = DISAGREEMENT_TOLERANCE,
    ) -> None:
        self.market_models = dict(DEFAULT_MARKET_MODELS)
        if market_models:
            self.market_models.update(market_models)
        self.reference_sample = reference_sample
        self.home_adjustment = home_adjustment
        self.away_adjustment = away_adjustment
        self.trusted_sample = trusted_sample
        self.disagreement_tolerance = disagreement_tolerance

    def supports(self, market: MarketSpec) -> bool:
        return market.kind in self.market_models

    def estimate(
        self,
        market: MarketSpec,
        team_home_profile: TeamStatProfile,
        team_away_profile: TeamStatProfile,
        league_profile: LeagueStatProfile,
        home_adjustment: float | None = None,
        away_adjustment: float | None = None,
        *,
        secondary_home: RateObservation | None = None,
        secondary_away: RateObservation | None = None,
    ) -> ProbabilityEstimate:
        """Blend model and empirical probabilities for ``market``.

        ``secondary_home``/``secondary_away`` are optional rates for the
        same market side from another cache (for example a longer BTTS
        history); :func:`resolve_empirical_rate` decides whether they
        replace or temper the team's own rate.
        """

        model_config = self.market_models.get(market.kind)
        if model_config is None:
            raise UnsupportedMarket(f"no probability model for {market.kind.value}")
        home_adj = self.home_adjustment if home_adjustment is None else home_adjustment
        away_adj = self.away_adjustment if away_adjustment is None else away_adjustment

        if market.kind is MarketKind.BTTS:
            mu_home, mu_away = self._expected_counts("goals", team_home_profile, team_away_profile, league_profile, home_adj, away_adj)
            p_yes = (1.0 - math.exp(-mu_home)) * (1.0 - math.exp(-mu_away))
            model = p_yes if market.side is Side.YES else 1.0 - p_yes
            sample_metric = "goals"
        elif market.kind is MarketKind.RESULT:
            mu_home, mu_away = self._expected_counts("goals", team_home_profile, team_away_profile, league_profile, home_adj, away_adj)
            home_p, draw_p, away_p = result_probabilities(mu_home, mu_away)
            model = {Side.HOME: home_p, Side.DRAW: draw_p, Side.AWAY: away_p}[market.side]
            sample_metric = "goals"
        elif market.kind is MarketKind.FOULS:
            mu_home, mu_away = self._expected_fouls(team_home_profile, team_away_profile, league_profile, home_adj, away_adj)
            ratio = (mu_home + mu_away) / league_profile.average_total("fouls")
            p_over = clamp(0.5 + (ratio - 1.0) * FOULS_SLOPE, *FOULS_MODEL_BOUNDS)
            model = p_over if market.side is Side.OVER else 1.0 - p_over
            sample_metric = "fouls"
        else:
            metric = market.kind.value
            mu_home, mu_away = self._expected_counts(metric, team_home_profile, team_away_profile, league_profile, home_adj, away_adj)
            assert market.line is not None
            lam = mu_home + mu_away
            if market.side is Side.OVER:
                model = poisson_over(market.line, lam)
            else:
                model = poisson_under(market.line, lam)
            sample_metric = metric

        home_rate, away_rate, league_rate = self._empirical_rates(market, team_home_profile, team_away_profile, league_profile)
        home_obs = resolve_empirical_rate(
            home_rate,
            secondary_home,
            trusted_sample=self.trusted_sample,
            tolerance=self.disagreement_tolerance,
        )
        away_obs = resolve_empirical_rate(
            away_rate,
            secondary_away,
            trusted_sample=self.trusted_sample,
            tolerance=self.disagreement_tolerance,
        )
        empirical = (home_obs.rate + away_obs.rate + league_rate) / 3.0

        blended = model_config.alpha * model + (1.0 - model_config.alpha) * empirical
        probability = clamp(blended, model_config.min_bound, model_config.max_bound)

        min_sample = min(
            team_home_profile.metric_sample(sample_metric),
            team_away_profile.metric_sample(sample_metric),
        )
        estimate = ProbabilityEstimate(
            market=market,
            probability=probability,
            model_probability=model,
            empirical_probability=empirical,
            data_quality=DataQuality.from_sample(min_sample),
            min_sample=min_sample,
            expected_home=mu_home,
            expected_away=mu_away,
            empirical_sources={"home": home_obs.source, "away": away_obs.source},
        )
        logger.debug(
            "Estimated %s: model=%.3f empirical=%.3f final=%.3f (%s)",
            market.key,
            model,
            empirical,
            probability,
            estimate.data_quality.value,
        )
        return estimate

    # ------------------------------------------------------------------
    # parametric pieces
    # ------------------------------------------------------------------
    def _expected_counts(
        self,
        metric: str,
        home: TeamStatProfile,
        away: TeamStatProfile,
        league: LeagueStatProfile,
        home_adj: float,
        away_adj: float,
    ) -> tuple[float, float]:
        """Attack/defence decomposition scaled by the league per-team rate."""

        per_team = league.per_team_average(metric)
        home_sample = home.metric(metric)
        away_sample = away.metric(metric)
        home_for = shrink(home_sample.avg_for, per_team, home_sample.sample_size, self.reference_sample)
        home_against = shrink(home_sample.avg_against, per_team, home_sample.sample_size, self.reference_sample)
        away_for = shrink(away_sample.avg_for, per_team, away_sample.sample_size, self.reference_sample)
        away_against = shrink(away_sample.avg_against, per_team, away_sample.sample_size, self.reference_sample)

        attack_home = home_for / per_team
        defence_home = home_against / per_team
        attack_away = away_for / per_team
        defence_away = away_against / per_team

        mu_home = per_team * (0.5 * attack_home + 0.5 * defence_away) * home_adj
        mu_away = per_team * (0.5 * attack_away + 0.5 * defence_home) * away_adj
        return mu_home, mu_away

    def _expected_fouls(
        self,
        home: TeamStatProfile,
        away: TeamStatProfile,
        league: LeagueStatProfile,
        home_adj: float,
        away_adj: float,
    ) -> tuple[float, float]:
        per_team = league.per_team_average("fouls")
        home_sample = home.metric("fouls")
        away_sample = away.metric("fouls")
        home_committed = shrink(home_sample.avg_for, per_team, home_sample.sample_size, self.reference_sample)
        home_suffered = shrink(home_sample.avg_against, per_team, home_sample.sample_size, self.reference_sample)
        away_committed = shrink(away_sample.avg_for, per_team, away_sample.sample_size, self.reference_sample)
        away_suffered = shrink(away_sample.avg_against, per_team, away_sample.sample_size, self.reference_sample)
        mu_home = (home_committed + away_suffered) / 2.0 * home_adj
        mu_away = (away_committed + home_suffered) / 2.0 * away_adj
        return mu_home, mu_away

    # ------------------------------------------------------------------
    # empirical pieces
    # ------------------------------------------------------------------
    def _empirical_rates(
        self,
        market: MarketSpec,
        home: TeamStatProfile,
        away: TeamStatProfile,
        league: LeagueStatProfile,
    ) -> tuple[RateObservation, RateObservation, float]:
        if market.kind is MarketKind.BTTS:
            home_rate, away_rate, league_rate = home.btts_rate, away.btts_rate, league.btts_rate
            if market.side is Side.NO:
                home_rate, away_rate, league_rate = 1.0 - home_rate, 1.0 - away_rate, 1.0 - league_rate
            sample_metric = "goals"
        elif market.kind is MarketKind.RESULT:
            home_win, home_draw, home_loss = home.outcome_rates()
            away_win, away_draw, away_loss = away.outcome_rates()
            league_home, league_draw, league_away = league.outcome_rates()
            home_rate, away_rate, league_rate = {
                Side.HOME: (home_win, away_loss, league_home),
                Side.DRAW: (home_draw, away_draw, league_draw),
                Side.AWAY: (home_loss, away_win, league_away),
            }[market.side]
            sample_metric = "goals"
        else:
            metric = market.kind.value
            assert market.line is not None
            if market.side is Side.OVER:
                home_rate = home.metric(metric).rate_over(market.line)
                away_rate = away.metric(metric).rate_over(market.line)
                league_rate = league.over_rate(metric, market.line)
            else:
                home_rate = home.metric(metric).rate_under(market.line)
                away_rate = away.metric(metric).rate_under(market.line)
                league_rate = league.under_rate(metric, market.line)
            sample_metric = metric
        return (
            self._team_or_league(home_rate, home.metric_sample(sample_metric), league_rate),
            self._team_or_league(away_rate, away.metric_sample(sample_metric), league_rate),
            league_rate,
        )

    @staticmethod
    def _team_or_league(rate: float, sample_size: int, league_rate: float) -> RateObservation:
        # a team without history (promoted, new) takes the league rate, not the neutral default
        if sample_size <= 0:
            return RateObservation(league_rate, 0, "league")
        return RateObservation(rate, sample_size, "team")


__all__ = [
    "DEFAULT_MARKET_MODELS",
    "DataQuality",
    "MarketModel",
    "ProbabilityEngine",
    "ProbabilityEstimate",
    "RateObservation",
    "poisson_cdf",
    "poisson_over",
    "poisson_pmf",
    "poisson_under",
    "resolve_empirical_rate",
    "result_probabilities",
    "shrink",
]
