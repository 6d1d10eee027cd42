"""Football betting core: statistics, probabilities, tickets and settlement.

The pieces are deliberately small and wired together by
:mod:`pitchline.betting.configuration`: the stats aggregator turns stored
results into rolling profiles, the probability engine turns profiles into
bounded market probabilities, the candidate builder and optimizer assemble
tickets, and the settlement engine, prediction-market service and weight
calibrator close the loop once results arrive.  Batch entry points live in
:mod:`pitchline.betting.jobs`.
"""

from .calibration import PerformanceWeight, PerformanceWeights, WeightCalibrator
from .candidates import CandidateBuilder, CandidateSelection, OddsOffer
from .errors import (
    ConfigurationError,
    InsufficientCandidates,
    InvariantViolation,
    PermanentAPIError,
    PitchlineError,
    TransientAPIError,
    UnsupportedMarket,
)
from .ingestion import ResultIngestionService
from .jobs import JobOptions, JobReport, JobRunner
from .markets import MarketKind, MarketSpec, Side, parse_legacy_market_type, parse_market
from .models import Fixture, FixtureResult
from .optimizer import SelectionOptimizer, TicketDraft, ticket_hash
from .prediction_markets import PredictionMarketService
from .probability import DataQuality, ProbabilityEngine, ProbabilityEstimate
from .retry import RetryPolicy
from .scheduler import Scheduler
from .settlement import SettlementEngine, rollup_ticket, score_leg
from .stats import LeagueStatProfile, StatsAggregator, TeamStatProfile
from .store import SQLiteStore
from .tickets import LegStatus, Ticket, TicketLeg, TicketStatus

__all__ = [
    "CandidateBuilder",
    "CandidateSelection",
    "ConfigurationError",
    "DataQuality",
    "Fixture",
    "FixtureResult",
    "InsufficientCandidates",
    "InvariantViolation",
    "JobOptions",
    "JobReport",
    "JobRunner",
    "LeagueStatProfile",
    "LegStatus",
    "MarketKind",
    "MarketSpec",
    "OddsOffer",
    "PerformanceWeight",
    "PerformanceWeights",
    "PermanentAPIError",
    "PitchlineError",
    "PredictionMarketService",
    "ProbabilityEngine",
    "ProbabilityEstimate",
    "ResultIngestionService",
    "RetryPolicy",
    "SQLiteStore",
    "Scheduler",
    "SelectionOptimizer",
    "SettlementEngine",
    "Side",
    "StatsAggregator",
    "TeamStatProfile",
    "Ticket",
    "TicketDraft",
    "TicketLeg",
    "TicketStatus",
    "TransientAPIError",
    "UnsupportedMarket",
    "WeightCalibrator",
    "parse_legacy_market_type",
    "parse_market",
    "rollup_ticket",
    "score_leg",
    "ticket_hash",
]
