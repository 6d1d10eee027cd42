"""
pitchline: rolling football statistics, market probabilities and settlement.

The package aggregates finished-match facts into team and league profiles,
turns them into bounded probabilities for betting markets, builds multi-leg
tickets from scored candidates and settles tickets and prediction markets
once results arrive.
"""

from importlib.metadata import PackageNotFoundError, version

try:  # pragma: no cover - exercised in packaging workflows
    __version__ = version("pitchline")
except PackageNotFoundError:  # pragma: no cover - local editable installs
    __version__ = "0.0.0"

_EXPORTS = {
    # Settings
    "get_settings": ".config",
    "update_settings": ".config",
    "reset_settings": ".config",
    # Core services
    "SQLiteStore": ".betting.store",
    "StatsAggregator": ".betting.stats",
    "ProbabilityEngine": ".betting.probability",
    "SelectionOptimizer": ".betting.optimizer",
    "SettlementEngine": ".betting.settlement",
    "PredictionMarketService": ".betting.prediction_markets",
    "WeightCalibrator": ".betting.calibration",
    "JobRunner": ".betting.jobs",
    # Date helpers
    "utcnow": ".utils_date",
    "lookback_start": ".utils_date",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> object:  # pragma: no cover - thin lazy importer
    from importlib import import_module

    target_module = _EXPORTS.get(name)
    if not target_module:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    module = import_module(target_module, __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(list(globals().keys()) + __all__)
