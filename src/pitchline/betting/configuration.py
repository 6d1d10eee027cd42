"""Layered YAML configuration and service factories for the betting core."""

from __future__ import annotations

import datetime as dt
import json
import os
import re
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    Mapping,
    MutableMapping,
    Sequence,
)

import yaml
from pydantic import BaseModel, Field

from ..config import get_settings
from ..utils_date import utcnow
from .errors import ConfigurationError
from .markets import MarketKind
from .probability import MarketModel

ENVIRONMENT_VARIABLE = "PITCHLINE_ENV"
EXTRA_CONFIG_VARIABLE = "PITCHLINE_EXTRA_CONFIG"
ENV_OVERRIDE_PREFIX = "PITCHLINE__"

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .calibration import PerformanceWeights, WeightCalibrator
    from .candidates import CandidateBuilder
    from .ingestion import ResultIngestionService
    from .jobs import JobRunner
    from .optimizer import SelectionOptimizer
    from .prediction_markets import PredictionMarketService
    from .probability import ProbabilityEngine
    from .retry import RetryPolicy
    from .settlement import SettlementEngine
    from .sources.base import ResultSource
    from .stats import StatsAggregator
    from .store import SQLiteStore

Clock = Callable[[], dt.datetime]


class StoreConfig(BaseModel):
    """Location of the SQLite store; empty path defers to ``PITCHLINE_STORE``."""

    path: str | None = None
    timeout_seconds: float = 30.0


class StatsConfig(BaseModel):
    team_window_months: int = 18
    league_window_months: int = 12
    sample_size: int = 10
    max_age_hours: float = 24.0
    league_thresholds: Dict[int, Dict[str, float]] = Field(default_factory=dict)


class MarketModelConfig(BaseModel):
    alpha: float
    min_bound: float
    max_bound: float


class ProbabilityConfig(BaseModel):
    reference_sample: int = 5
    home_adjustment: float = 1.05
    away_adjustment: float = 0.95
    trusted_sample: int = 8
    disagreement_tolerance: float = 0.15
    markets: Dict[str, MarketModelConfig] = Field(default_factory=dict)


class OptimizerConfig(BaseModel):
    odds_min: float = 1.25
    odds_max: float = 5.0
    edge_weight: float = 0.65
    odds_weight: float = 0.25
    random_weight: float = 0.10
    target_leg_count: int = 3
    min_quality: str = "low"
    min_edge: float | None = None
    follow_line_rules: bool = False
    reshuffle_attempts: int = 5


class CalibrationConfig(BaseModel):
    lookback_days: int = 90
    prior_strength: float = 50
    prior_rate: float = 0.5
    weight_min: float = 0.7
    weight_max: float = 1.5
    min_sample_size: int = 10


class SettlementConfig(BaseModel):
    settle_delay_minutes: float = 120
    claim_ttl_seconds: float = 600
    batch_size: int = 500


class RetryConfig(BaseModel):
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 1.0
    timeout_seconds: float | None = 30.0


class IngestionConfig(BaseModel):
    """Result source selection plus pacing against the provider's rate limit."""

    source: str = "http"
    base_url: str | None = None
    api_key: str | None = None
    inter_call_delay: float = 0.5
    retry: RetryConfig = Field(default_factory=RetryConfig)


class MarketsConfig(BaseModel):
    fee_rate: float = 0.02
    min_fee: int = 1
    min_stake: int = 10
    starting_balance: int = 1000


class ScheduledJobConfig(BaseModel):
    job: str
    interval_seconds: float
    jitter_seconds: float = 0.0
    retries: int = 0
    enabled: bool = True
    options: Dict[str, Any] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    jobs: list[ScheduledJobConfig] = Field(default_factory=list)


class PitchlineConfig(BaseModel):
    """Aggregate configuration for the betting core."""

    environment: str = "default"
    store: StoreConfig = Field(default_factory=StoreConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    probability: ProbabilityConfig = Field(default_factory=ProbabilityConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    markets: MarketsConfig = Field(default_factory=MarketsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Configuration at {path} must be a mapping")
    return dict(data)


def _merge_layers(base: Dict[str, Any], layer: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in layer.items():
        if key in merged and isinstance(merged[key], Mapping) and isinstance(value, Mapping):
            merged[key] = _merge_layers(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _resolve_env_tokens(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda match: os.getenv(match.group(1), ""), value)
    if isinstance(value, Mapping):
        return {k: _resolve_env_tokens(v) for k, v in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_resolve_env_tokens(item) for item in value]
    return value


def _coerce_env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        lowered = raw.lower()
        if lowered in {"true", "false"}:
            return lowered == "true"
        return raw


def _set_nested(mapping: MutableMapping[str, Any], path: Iterable[str], value: Any) -> None:
    head, *tail = list(path)
    key = head.lower().replace("-", "_")
    if not tail:
        mapping[key] = value
        return
    child = mapping.get(key)
    child = dict(child) if isinstance(child, MutableMapping) else {}
    mapping[key] = child
    _set_nested(child, tail, value)


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    updated = dict(data)
    for key, raw_value in environ.items():
        if not key.startswith(ENV_OVERRIDE_PREFIX):
            continue
        path = [segment for segment in key[len(ENV_OVERRIDE_PREFIX) :].split("__") if segment]
        if path:
            _set_nested(updated, path, _coerce_env_value(raw_value))
    return updated


def load_config(
    *,
    base_path: str | os.PathLike[str] | None = None,
    environment: str | None = None,
    extra_paths: Sequence[str | os.PathLike[str]] | None = None,
    environ: Mapping[str, str] | None = None,
) -> PitchlineConfig:
    """Load layered configuration.

    ``config/pitchline.yaml`` (or ``PITCHLINE_CONFIG``) is merged with
    ``pitchline.<env>.yaml`` when present, then with extra override files,
    then with ``PITCHLINE__section__key`` environment overrides.  ``${VAR}``
    tokens are expanded last.  A missing base file yields the defaults.
    """

    env = os.environ if environ is None else environ
    config_path = Path(base_path or get_settings().config_path)
    data = _load_yaml(config_path) if config_path.exists() else {}

    env_name = environment or env.get(ENVIRONMENT_VARIABLE) or data.get("environment")
    if isinstance(env_name, str) and env_name:
        env_path = config_path.with_name(f"{config_path.stem}.{env_name}{config_path.suffix}")
        if env_path.exists():
            data = _merge_layers(data, _load_yaml(env_path))
        data["environment"] = env_name

    override_sources = [Path(path) for path in extra_paths or ()]
    extra = env.get(EXTRA_CONFIG_VARIABLE)
    if extra:
        override_sources.extend(Path(token) for token in extra.split(os.pathsep) if token)
    for override in override_sources:
        if override.exists():
            data = _merge_layers(data, _load_yaml(override))

    data = _apply_env_overrides(data, env)
    data = _resolve_env_tokens(data)
    return PitchlineConfig.model_validate(data)


def _check_bounds(errors: list[str], name: str, model: MarketModelConfig) -> None:
    if not 0 < model.alpha < 1:
        errors.append(f"probability.markets.{name}.alpha must be within (0, 1)")
    if not 0 < model.min_bound < model.max_bound < 1:
        errors.append(f"probability.markets.{name} bounds must satisfy 0 < min_bound < max_bound < 1")


def validate_config(config: PitchlineConfig) -> list[str]:
    """Return warnings; raise :class:`ConfigurationError` listing every fatal problem."""

    from .jobs import JOB_REGISTRY
    from .probability import DataQuality

    errors: list[str] = []
    warnings: list[str] = []

    stats = config.stats
    if stats.team_window_months <= 0 or stats.league_window_months <= 0:
        errors.append("stats windows must be greater than zero")
    if stats.sample_size <= 0:
        errors.append("stats.sample_size must be greater than zero")
    if stats.max_age_hours <= 0:
        errors.append("stats.max_age_hours must be greater than zero")

    probability = config.probability
    if probability.reference_sample <= 0:
        errors.append("probability.reference_sample must be greater than zero")
    if probability.trusted_sample <= 0:
        errors.append("probability.trusted_sample must be greater than zero")
    if not 0 <= probability.disagreement_tolerance <= 1:
        errors.append("probability.disagreement_tolerance must be within [0, 1]")
    for name, model in probability.markets.items():
        if name not in {kind.value for kind in MarketKind}:
            errors.append(f"probability.markets.{name} is not a known market kind")
            continue
        _check_bounds(errors, name, model)

    optimizer = config.optimizer
    if optimizer.odds_min <= 1.0:
        errors.append("optimizer.odds_min must exceed 1.0")
    if optimizer.odds_min > optimizer.odds_max:
        errors.append("optimizer odds band is inverted (odds_min > odds_max)")
    if optimizer.target_leg_count <= 0:
        errors.append("optimizer.target_leg_count must be greater than zero")
    if min(optimizer.edge_weight, optimizer.odds_weight, optimizer.random_weight) < 0:
        errors.append("optimizer weights must be non-negative")
    if optimizer.random_weight == 0:
        warnings.append("optimizer.random_weight is zero; tickets become deterministic for a given pool")
    if optimizer.min_quality not in {quality.value for quality in DataQuality}:
        errors.append(f"optimizer.min_quality must be one of {[q.value for q in DataQuality]}")

    calibration = config.calibration
    if calibration.lookback_days <= 0:
        errors.append("calibration.lookback_days must be greater than zero")
    if calibration.prior_strength <= 0:
        errors.append("calibration.prior_strength must be greater than zero")
    if not 0 < calibration.prior_rate < 1:
        errors.append("calibration.prior_rate must be within (0, 1)")
    if not 0 < calibration.weight_min <= calibration.weight_max:
        errors.append("calibration weight bounds must satisfy 0 < weight_min <= weight_max")
    if calibration.min_sample_size <= 0:
        errors.append("calibration.min_sample_size must be greater than zero")

    settlement = config.settlement
    if settlement.settle_delay_minutes < 0:
        errors.append("settlement.settle_delay_minutes must be non-negative")
    if settlement.claim_ttl_seconds <= 0:
        errors.append("settlement.claim_ttl_seconds must be greater than zero")
    if not 1 <= settlement.batch_size <= 1000:
        errors.append("settlement.batch_size must be within [1, 1000]")

    ingestion = config.ingestion
    if ingestion.source not in {"http", "static"}:
        errors.append(f"ingestion.source '{ingestion.source}' is not supported")
    if ingestion.source == "http" and not (ingestion.base_url or get_settings().api_base_url):
        warnings.append("ingestion.base_url is not set; results-refresh will fail until it is")
    if ingestion.inter_call_delay < 0:
        errors.append("ingestion.inter_call_delay must be non-negative")
    elif ingestion.inter_call_delay == 0:
        warnings.append("ingestion.inter_call_delay is zero; requests will burst against the provider")
    retry = ingestion.retry
    if retry.max_attempts < 1:
        errors.append("ingestion.retry.max_attempts must be at least 1")
    if min(retry.base_delay, retry.max_delay, retry.jitter) < 0:
        errors.append("ingestion.retry delays must be non-negative")
    if retry.timeout_seconds is not None and retry.timeout_seconds <= 0:
        errors.append("ingestion.retry.timeout_seconds must be greater than zero")

    markets = config.markets
    if markets.min_stake <= 0:
        errors.append("markets.min_stake must be greater than zero")
    if not 0 <= markets.fee_rate < 1:
        errors.append("markets.fee_rate must be within [0, 1)")
    if markets.min_fee < 0 or markets.min_fee >= markets.min_stake:
        errors.append("markets.min_fee must be non-negative and below min_stake")
    if markets.starting_balance < 0:
        errors.append("markets.starting_balance must be non-negative")

    for index, entry in enumerate(config.scheduler.jobs):
        if entry.job not in JOB_REGISTRY:
            errors.append(f"scheduler.jobs[{index}] names unknown job '{entry.job}'")
        if entry.interval_seconds <= 0:
            errors.append(f"scheduler.jobs[{index}].interval_seconds must be greater than zero")
        if entry.jitter_seconds < 0 or entry.retries < 0:
            errors.append(f"scheduler.jobs[{index}] jitter and retries must be non-negative")
        if 0 < entry.interval_seconds < 60 and entry.job == "results-refresh":
            warnings.append("results-refresh scheduled more often than once a minute")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError(f"Configuration validation failed:\n{bullet_list}")

    return warnings


# ----------------------------------------------------------------------
# factories
# ----------------------------------------------------------------------
def create_store(config: PitchlineConfig, *, path: str | os.PathLike[str] | None = None) -> "SQLiteStore":
    from .store import SQLiteStore

    target = path or config.store.path or get_settings().resolved_store_path()
    return SQLiteStore(
        target,
        timeout=config.store.timeout_seconds,
        starting_balance=config.markets.starting_balance,
    )


def create_aggregator(config: PitchlineConfig, store: "SQLiteStore", *, clock: Clock = utcnow) -> "StatsAggregator":
    from .stats import StatsAggregator

    stats = config.stats
    return StatsAggregator(
        store,
        clock=clock,
        team_window_months=stats.team_window_months,
        league_window_months=stats.league_window_months,
        max_sample=stats.sample_size,
        max_age=dt.timedelta(hours=stats.max_age_hours),
        threshold_overrides=stats.league_thresholds or None,
    )


def create_engine(config: PitchlineConfig) -> "ProbabilityEngine":
    from .probability import ProbabilityEngine

    probability = config.probability
    return ProbabilityEngine(
        market_models={
            MarketKind(name): MarketModel(model.alpha, model.min_bound, model.max_bound)
            for name, model in probability.markets.items()
        },
        reference_sample=probability.reference_sample,
        home_adjustment=probability.home_adjustment,
        away_adjustment=probability.away_adjustment,
        trusted_sample=probability.trusted_sample,
        disagreement_tolerance=probability.disagreement_tolerance,
    )


def create_candidate_builder(
    config: PitchlineConfig,
    *,
    engine: "ProbabilityEngine | None" = None,
    weights: "PerformanceWeights | None" = None,
) -> "CandidateBuilder":
    from .candidates import CandidateBuilder
    from .probability import DataQuality

    optimizer = config.optimizer
    return CandidateBuilder(
        engine or create_engine(config),
        weights=weights,
        odds_min=optimizer.odds_min,
        odds_max=optimizer.odds_max,
        min_quality=DataQuality(optimizer.min_quality),
        min_edge=optimizer.min_edge,
        follow_line_rules=optimizer.follow_line_rules,
    )


def create_optimizer(config: PitchlineConfig) -> "SelectionOptimizer":
    from .optimizer import SelectionOptimizer

    optimizer = config.optimizer
    return SelectionOptimizer(
        edge_weight=optimizer.edge_weight,
        odds_weight=optimizer.odds_weight,
        random_weight=optimizer.random_weight,
        odds_range=(optimizer.odds_min, optimizer.odds_max),
    )


def create_settlement_engine(
    config: PitchlineConfig, store: "SQLiteStore", *, clock: Clock = utcnow
) -> "SettlementEngine":
    from .settlement import SettlementEngine

    settlement = config.settlement
    return SettlementEngine(
        store,
        clock=clock,
        settle_delay=dt.timedelta(minutes=settlement.settle_delay_minutes),
        claim_ttl=dt.timedelta(seconds=settlement.claim_ttl_seconds),
        batch_size=settlement.batch_size,
    )


def create_market_service(
    config: PitchlineConfig, store: "SQLiteStore", *, clock: Clock = utcnow
) -> "PredictionMarketService":
    from .prediction_markets import PredictionMarketService

    markets = config.markets
    return PredictionMarketService(
        store,
        clock=clock,
        fee_rate=markets.fee_rate,
        min_fee=markets.min_fee,
        min_stake=markets.min_stake,
    )


def create_calibrator(
    config: PitchlineConfig, store: "SQLiteStore", *, clock: Clock = utcnow
) -> "WeightCalibrator":
    from .calibration import WeightCalibrator

    calibration = config.calibration
    return WeightCalibrator(
        store,
        clock=clock,
        lookback_days=calibration.lookback_days,
        prior_strength=calibration.prior_strength,
        prior_rate=calibration.prior_rate,
        weight_bounds=(calibration.weight_min, calibration.weight_max),
    )


def create_performance_weights(config: PitchlineConfig, store: "SQLiteStore") -> "PerformanceWeights":
    from .calibration import PerformanceWeights

    return PerformanceWeights.from_store(store, min_sample_size=config.calibration.min_sample_size)


def create_retry_policy(config: PitchlineConfig) -> "RetryPolicy":
    from .retry import RetryPolicy

    retry = config.ingestion.retry
    return RetryPolicy(
        max_attempts=retry.max_attempts,
        base_delay=retry.base_delay,
        max_delay=retry.max_delay,
        jitter=retry.jitter,
        timeout=retry.timeout_seconds,
    )


def create_result_source(config: PitchlineConfig) -> "ResultSource":
    from .sources import HTTPResultSource, StaticResultSource

    ingestion = config.ingestion
    retry = create_retry_policy(config)
    if ingestion.source == "static":
        return StaticResultSource(retry=retry)
    settings = get_settings()
    base_url = ingestion.base_url or settings.api_base_url
    if not base_url:
        raise ConfigurationError("ingestion.base_url (or PITCHLINE_API_BASE_URL) is required for the http source")
    return HTTPResultSource(
        base_url,
        api_key=ingestion.api_key or settings.api_key,
        retry=retry,
        timeout=float(settings.timeout),
        user_agent=settings.user_agent,
    )


def create_ingestion_service(
    config: PitchlineConfig,
    store: "SQLiteStore",
    *,
    source: "ResultSource | None" = None,
    clock: Clock = utcnow,
) -> "ResultIngestionService":
    from .ingestion import ResultIngestionService

    return ResultIngestionService(source or create_result_source(config), store, clock=clock)


def create_job_runner(
    config: PitchlineConfig,
    *,
    store: "SQLiteStore | None" = None,
    source: "ResultSource | None" = None,
    clock: Clock = utcnow,
) -> "JobRunner":
    """Wire every service into a :class:`JobRunner`.

    The ingestion service is built lazily from ``source`` or the configured
    source; a misconfigured HTTP source only fails ``results-refresh``.
    """

    from .jobs import JobContext, JobRunner

    store = store or create_store(config)
    ingestion = None
    source_ready = (
        source is not None
        or config.ingestion.source == "static"
        or bool(config.ingestion.base_url or get_settings().api_base_url)
    )
    if source_ready:
        ingestion = create_ingestion_service(config, store, source=source, clock=clock)
    context = JobContext(
        store=store,
        clock=clock,
        ingestion=ingestion,
        aggregator=create_aggregator(config, store, clock=clock),
        settlement=create_settlement_engine(config, store, clock=clock),
        markets=create_market_service(config, store, clock=clock),
        calibrator=create_calibrator(config, store, clock=clock),
        inter_call_delay=config.ingestion.inter_call_delay,
    )
    return JobRunner(context)


__all__ = [
    "CalibrationConfig",
    "ConfigurationError",
    "IngestionConfig",
    "MarketModelConfig",
    "MarketsConfig",
    "OptimizerConfig",
    "PitchlineConfig",
    "ProbabilityConfig",
    "RetryConfig",
    "ScheduledJobConfig",
    "SchedulerConfig",
    "SettlementConfig",
    "StatsConfig",
    "StoreConfig",
    "create_aggregator",
    "create_calibrator",
    "create_candidate_builder",
    "create_engine",
    "create_ingestion_service",
    "create_job_runner",
    "create_market_service",
    "create_optimizer",
    "create_performance_weights",
    "create_result_source",
    "create_retry_policy",
    "create_settlement_engine",
    "create_store",
    "load_config",
    "validate_config",
]
