"""Bayesian recalibration of selection weights from settled legs."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

import polars as pl

from ..utils_date import isoformat, lookback_start, utcnow
from .markets import MarketSpec
from .store import GLOBAL_LEAGUE_KEY, SQLiteStore

logger = logging.getLogger(__name__)

PRIOR_STRENGTH = 50
PRIOR_RATE = 0.5
WEIGHT_MIN = 0.7
WEIGHT_MAX = 1.5
LOOKBACK_DAYS = 90
MIN_SAMPLE_SIZE = 10
PREFERRED_RATE = 0.58
AVOID_RATE = 0.42
AVOID_WEIGHT = 0.80
NO_LINE = -1.0

_SETTLED_SCHEMA = {
    "market": pl.Utf8,
    "side": pl.Utf8,
    "line": pl.Float64,
    "league_id": pl.Int64,
    "odds": pl.Float64,
    "status": pl.Utf8,
}


@dataclasses.dataclass(slots=True)
class PerformanceWeight:
    market: str
    side: str
    line: float
    league_key: int
    wins: int
    losses: int
    pushes: int
    sample_size: int
    raw_win_rate: float
    roi: float
    bayes_win_rate: float
    weight: float
    lookback_days: int = LOOKBACK_DAYS
    computed_at: str = ""

    @property
    def is_global(self) -> bool:
        return self.league_key == GLOBAL_LEAGUE_KEY

    def to_record(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "PerformanceWeight":
        fields = {field.name for field in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in record.items() if key in fields})


def compute_weights(
    rows: Sequence[Mapping[str, Any]],
    *,
    computed_at: dt.datetime,
    lookback_days: int = LOOKBACK_DAYS,
    prior_strength: float = PRIOR_STRENGTH,
    prior_rate: float = PRIOR_RATE,
    weight_bounds: tuple[float, float] = (WEIGHT_MIN, WEIGHT_MAX),
) -> list[PerformanceWeight]:
    """Aggregate settled legs globally and per league.

    ``rows`` carry ``market``, ``side``, ``line``, ``league_id``, ``odds``
    and ``status`` (``WON``/``LOST``/``PUSHED``).  Pushes count toward the
    sample size but not toward the raw win rate or ROI denominators.
    """

    if not rows:
        return []
    frame = pl.from_dicts(list(rows), schema=_SETTLED_SCHEMA).with_columns(
        pl.col("line").fill_null(NO_LINE),
    )
    aggregations = [
        (pl.col("status") == "WON").sum().cast(pl.Int64).alias("wins"),
        (pl.col("status") == "LOST").sum().cast(pl.Int64).alias("losses"),
        (pl.col("status") == "PUSHED").sum().cast(pl.Int64).alias("pushes"),
        pl.len().cast(pl.Int64).alias("sample_size"),
        pl.when(pl.col("status") == "WON").then(pl.col("odds")).otherwise(0.0).sum().alias("won_odds"),
    ]
    keys = ["market", "side", "line"]
    global_frame = frame.group_by(keys).agg(aggregations).with_columns(
        pl.lit(GLOBAL_LEAGUE_KEY, dtype=pl.Int64).alias("league_key")
    )
    league_frame = (
        frame.filter(pl.col("league_id").is_not_null())
        .group_by([*keys, "league_id"])
        .agg(aggregations)
        .rename({"league_id": "league_key"})
    )
    combined = pl.concat([global_frame, league_frame.select(global_frame.columns)], how="vertical")

    decisive = pl.col("wins") + pl.col("losses")
    lower, upper = weight_bounds
    bayes = (pl.col("wins") + prior_strength * prior_rate) / (pl.col("sample_size") + prior_strength)
    result = (
        combined.with_columns(
            pl.when(decisive > 0)
            .then(pl.col("wins") / decisive)
            .otherwise(0.0)
            .round(4)
            .alias("raw_win_rate"),
            pl.when(decisive > 0)
            .then(((pl.col("won_odds") - pl.col("wins")) - pl.col("losses")) / decisive * 100.0)
            .otherwise(0.0)
            .round(2)
            .alias("roi"),
            bayes.round(4).alias("bayes_win_rate"),
            (bayes / prior_rate).clip(lower, upper).round(4).alias("weight"),
        )
        .drop("won_odds")
        .sort(["market", "side", "line", "league_key"])
    )
    stamp = isoformat(computed_at)
    return [
        PerformanceWeight(
            market=record["market"],
            side=record["side"],
            line=float(record["line"]),
            league_key=int(record["league_key"]),
            wins=int(record["wins"]),
            losses=int(record["losses"]),
            pushes=int(record["pushes"]),
            sample_size=int(record["sample_size"]),
            raw_win_rate=float(record["raw_win_rate"]),
            roi=float(record["roi"]),
            bayes_win_rate=float(record["bayes_win_rate"]),
            weight=float(record["weight"]),
            lookback_days=lookback_days,
            computed_at=stamp,
        )
        for record in result.iter_rows(named=True)
    ]


def weights_frame(weights: Iterable[PerformanceWeight]) -> pl.DataFrame:
    records = [weight.to_record() for weight in weights]
    if not records:
        return pl.DataFrame(schema={field.name: pl.Utf8 for field in dataclasses.fields(PerformanceWeight)})
    return pl.from_dicts(records)


def export_weights(weights: Iterable[PerformanceWeight], path: str | Path) -> Path:
    """Write weights to CSV or Parquet, chosen by file suffix."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    frame = weights_frame(weights)
    if target.suffix.lower() == ".parquet":
        frame.write_parquet(target)
    else:
        frame.write_csv(target)
    return target


class WeightCalibrator:
    """Periodic job body: recompute and overwrite every performance weight."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        lookback_days: int = LOOKBACK_DAYS,
        prior_strength: float = PRIOR_STRENGTH,
        prior_rate: float = PRIOR_RATE,
        weight_bounds: tuple[float, float] = (WEIGHT_MIN, WEIGHT_MAX),
    ) -> None:
        self._store = store
        self._clock = clock
        self.lookback_days = lookback_days
        self.prior_strength = prior_strength
        self.prior_rate = prior_rate
        self.weight_bounds = weight_bounds

    def recalibrate(self, lookback_days: int | None = None) -> list[PerformanceWeight]:
        days = lookback_days or self.lookback_days
        now = self._clock()
        rows = self._store.settled_legs_since(lookback_start(now, days=days))
        weights = compute_weights(
            rows,
            computed_at=now,
            lookback_days=days,
            prior_strength=self.prior_strength,
            prior_rate=self.prior_rate,
            weight_bounds=self.weight_bounds,
        )
        written = self._store.replace_performance_weights([weight.to_record() for weight in weights])
        logger.info(
            "Recalibrated %d weights from %d settled legs over %d days",
            written,
            len(rows),
            days,
        )
        return weights


class PerformanceWeights:
    """Lookup of calibrated weights with league-over-global precedence."""

    def __init__(
        self,
        weights: Iterable[PerformanceWeight],
        *,
        min_sample_size: int = MIN_SAMPLE_SIZE,
        default_weight: float = 1.0,
    ) -> None:
        self._records: dict[tuple[str, str, float, int], PerformanceWeight] = {
            (weight.market, weight.side, float(weight.line), int(weight.league_key)): weight
            for weight in weights
        }
        self.min_sample_size = min_sample_size
        self.default_weight = default_weight

    @classmethod
    def from_store(cls, store: SQLiteStore, **kwargs: Any) -> "PerformanceWeights":
        return cls(
            (PerformanceWeight.from_record(record) for record in store.load_performance_weights()),
            **kwargs,
        )

    def __len__(self) -> int:
        return len(self._records)

    def lookup(self, spec: MarketSpec, league_id: int | None = None) -> PerformanceWeight | None:
        """League record when it has enough sample, else global, else ``None``."""

        base = (spec.kind.value, spec.side.value, spec.line_key)
        if league_id is not None:
            record = self._records.get((*base, league_id))
            if record is not None and record.sample_size >= self.min_sample_size:
                return record
        record = self._records.get((*base, GLOBAL_LEAGUE_KEY))
        if record is not None and record.sample_size >= self.min_sample_size:
            return record
        return None

    def weight_for(self, spec: MarketSpec, league_id: int | None = None) -> float:
        record = self.lookup(spec, league_id)
        return record.weight if record is not None else self.default_weight

    def is_preferred(self, spec: MarketSpec, league_id: int | None = None) -> bool:
        record = self.lookup(spec, league_id)
        return record is not None and record.bayes_win_rate >= PREFERRED_RATE

    def should_avoid(self, spec: MarketSpec, league_id: int | None = None) -> bool:
        record = self.lookup(spec, league_id)
        if record is None:
            return False
        return record.bayes_win_rate < AVOID_RATE or record.weight < AVOID_WEIGHT


__all__ = [
    "PerformanceWeight",
    "PerformanceWeights",
    "WeightCalibrator",
    "compute_weights",
    "export_weights",
    "weights_frame",
]
