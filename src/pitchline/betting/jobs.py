"""Batch jobs with a uniform options, mutex and run-log contract.

Every job accepts a :class:`JobOptions` payload (unknown keys ignored),
runs under a named mutex so overlapping firings skip instead of racing, and
appends exactly one row to the run log whatever happens.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils_date import isoformat, utcnow
from .calibration import WeightCalibrator
from .errors import ConfigurationError
from .ingestion import IngestionBudget, ResultIngestionService
from .prediction_markets import PredictionMarketService
from .settlement import SettlementEngine
from .stats import StatsAggregator
from .store import SQLiteStore

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


class JobOptions(BaseModel):
    """Options recognised by the batch jobs; each job reads its own subset."""

    model_config = ConfigDict(extra="ignore")

    window_hours: float = Field(default=6, gt=0)
    force: bool = False
    batch_size: int = Field(default=500, ge=1, le=1000)
    league_whitelist: list[int] = Field(default_factory=list)
    max_api_calls: int | None = Field(default=None, ge=0)
    lookback_days: int = Field(default=90, ge=1)
    max_runtime_seconds: float = Field(default=50, gt=0)
    cursor: str | None = None


def parse_options(options: JobOptions | Mapping[str, Any] | None) -> JobOptions:
    if isinstance(options, JobOptions):
        return options
    try:
        return JobOptions.model_validate(dict(options or {}))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid job options: {exc}") from exc


@dataclasses.dataclass(slots=True)
class JobReport:
    job: str
    status: str = "ok"
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    started_at: dt.datetime | None = None
    finished_at: dt.datetime | None = None
    window_start: dt.datetime | None = None
    window_end: dt.datetime | None = None
    cursor: str | None = None
    errors: list[str] = dataclasses.field(default_factory=list)
    details: dict[str, Any] = dataclasses.field(default_factory=dict)

    def add_errors(self, messages: list[str]) -> None:
        room = MAX_REPORTED_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(messages[:room])

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        for key in ("started_at", "finished_at", "window_start", "window_end"):
            value = payload[key]
            payload[key] = isoformat(value) if value is not None else None
        return payload


@dataclasses.dataclass(slots=True)
class JobContext:
    """Services available to job bodies; a job needing a missing one fails."""

    store: SQLiteStore
    clock: Callable[[], dt.datetime] = utcnow
    ingestion: ResultIngestionService | None = None
    aggregator: StatsAggregator | None = None
    settlement: SettlementEngine | None = None
    markets: PredictionMarketService | None = None
    calibrator: WeightCalibrator | None = None
    inter_call_delay: float = 0.0

    def require(self, name: str) -> Any:
        service = getattr(self, name)
        if service is None:
            raise ConfigurationError(f"Job requires the {name} service, which is not configured")
        return service


JobBody = Callable[[JobContext, JobOptions, JobReport], Awaitable[None]]

JOB_REGISTRY: dict[str, JobBody] = {}


def job(name: str) -> Callable[[JobBody], JobBody]:
    def decorator(func: JobBody) -> JobBody:
        JOB_REGISTRY[name] = func
        return func

    return decorator


@job("results-refresh")
async def results_refresh(context: JobContext, options: JobOptions, report: JobReport) -> None:
    service: ResultIngestionService = context.require("ingestion")
    outcome = await service.refresh(
        window_hours=options.window_hours,
        league_ids=options.league_whitelist or None,
        batch_size=options.batch_size,
        budget=IngestionBudget(
            max_api_calls=options.max_api_calls,
            max_runtime_seconds=options.max_runtime_seconds,
            inter_call_delay=context.inter_call_delay,
        ),
        cursor=options.cursor,
    )
    report.scanned = outcome.scanned
    report.succeeded = outcome.stored
    report.failed = outcome.failed
    report.skipped = outcome.not_found
    report.window_start = outcome.window_start
    report.window_end = outcome.window_end
    report.cursor = outcome.cursor
    report.add_errors(outcome.errors)
    report.details.update(api_calls=outcome.api_calls, stopped_early=outcome.stopped_early)


@job("stats-refresh")
async def stats_refresh(context: JobContext, options: JobOptions, report: JobReport) -> None:
    """Refresh cached profiles for teams and leagues with upcoming fixtures."""

    aggregator: StatsAggregator = context.require("aggregator")
    now = context.clock()
    fixtures = context.store.upcoming_fixtures(
        now=now,
        horizon=dt.timedelta(hours=options.window_hours),
        league_ids=options.league_whitelist or None,
    )
    report.window_start = now
    report.window_end = now + dt.timedelta(hours=options.window_hours)
    teams: dict[tuple[int, int], None] = {}
    for fixture in fixtures:
        teams[(fixture.home_team_id, fixture.league_id)] = None
        teams[(fixture.away_team_id, fixture.league_id)] = None
    started = time.monotonic()
    leagues_done: set[int] = set()
    for team_id, league_id in list(teams)[: options.batch_size]:
        if time.monotonic() - started >= options.max_runtime_seconds:
            report.details["stopped_early"] = "max_runtime_seconds"
            break
        report.scanned += 1
        try:
            if league_id not in leagues_done:
                aggregator.refresh_league(league_id, force=options.force)
                leagues_done.add(league_id)
            _, refreshed = aggregator.refresh_team(team_id, league_id=league_id, force=options.force)
        except Exception as exc:
            logger.warning("Stats refresh failed for team %s: %s", team_id, exc)
            report.failed += 1
            report.add_errors([f"team {team_id}: {exc}"])
            continue
        if refreshed:
            report.succeeded += 1
        else:
            report.skipped += 1
    report.details["leagues"] = sorted(leagues_done)


@job("score-legs")
async def score_legs(context: JobContext, options: JobOptions, report: JobReport) -> None:
    engine: SettlementEngine = context.require("settlement")
    outcome = engine.run(options.batch_size)
    report.scanned = outcome.scanned
    report.succeeded = outcome.scored
    report.failed = outcome.failed
    report.skipped = outcome.pending + outcome.skipped
    report.add_errors(outcome.errors)
    report.details.update(
        run_id=outcome.run_id,
        tickets_updated=outcome.tickets_updated,
        diagnostics=outcome.diagnostics,
    )


@job("market-close-expired")
async def market_close_expired(context: JobContext, options: JobOptions, report: JobReport) -> None:
    service: PredictionMarketService = context.require("markets")
    closed = service.close_expired()
    report.scanned = len(closed)
    report.succeeded = len(closed)
    report.details["market_ids"] = [market.market_id for market in closed]


@job("market-auto-resolve")
async def market_auto_resolve(context: JobContext, options: JobOptions, report: JobReport) -> None:
    service: PredictionMarketService = context.require("markets")
    outcome = service.auto_resolve()
    report.scanned = outcome.scanned
    report.succeeded = outcome.resolved + outcome.voided
    report.failed = outcome.failed
    report.skipped = outcome.waiting
    report.add_errors(outcome.errors)
    report.details.update(resolved=outcome.resolved, voided=outcome.voided)


@job("update-performance-weights")
async def update_performance_weights(context: JobContext, options: JobOptions, report: JobReport) -> None:
    calibrator: WeightCalibrator = context.require("calibrator")
    now = context.clock()
    weights = calibrator.recalibrate(options.lookback_days)
    report.window_start = now - dt.timedelta(days=options.lookback_days)
    report.window_end = now
    report.scanned = sum(weight.sample_size for weight in weights if weight.is_global)
    report.succeeded = len(weights)
    report.details["global_keys"] = sum(1 for weight in weights if weight.is_global)


class JobRunner:
    """Execute registered jobs under the store's named mutex."""

    def __init__(
        self,
        context: JobContext,
        *,
        registry: Mapping[str, JobBody] | None = None,
        lock_ttl: dt.timedelta | None = None,
    ) -> None:
        self.context = context
        self.registry = dict(registry or JOB_REGISTRY)
        self.lock_ttl = lock_ttl

    @property
    def job_names(self) -> list[str]:
        return sorted(self.registry)

    def run(self, name: str, options: JobOptions | Mapping[str, Any] | None = None) -> JobReport:
        return asyncio.run(self.run_async(name, options))

    async def run_async(self, name: str, options: JobOptions | Mapping[str, Any] | None = None) -> JobReport:
        """Run ``name`` and return its report.

        Unknown jobs and invalid options raise :class:`ConfigurationError`
        before anything is locked or processed.  Failures inside the body
        are reported with status ``failed``, never raised.
        """

        body = self.registry.get(name)
        if body is None:
            raise ConfigurationError(f"Unknown job '{name}'. Known jobs: {', '.join(self.job_names)}")
        parsed = parse_options(options)
        store = self.context.store
        started_at = self.context.clock()
        started = time.perf_counter()
        report = JobReport(job=name, started_at=started_at)
        holder = uuid.uuid4().hex
        ttl = self.lock_ttl or dt.timedelta(seconds=max(60.0, parsed.max_runtime_seconds * 2))
        if not store.acquire_job_lock(name, holder, now=started_at, ttl=ttl):
            logger.info("Job %s is already running; skipping", name)
            report.status = "skipped"
            report.details["reason"] = "lock held by another run"
            return self._finish(report, started)
        try:
            await body(self.context, parsed, report)
        except ConfigurationError as exc:
            report.status = "failed"
            report.add_errors([str(exc)])
            self._finish(report, started)
            raise
        except Exception as exc:
            logger.exception("Job %s failed", name)
            report.status = "failed"
            report.add_errors([f"{type(exc).__name__}: {exc}"])
        else:
            report.status = "partial" if report.failed else "ok"
        finally:
            store.release_job_lock(name, holder)
        return self._finish(report, started)

    def _finish(self, report: JobReport, started: float) -> JobReport:
        report.finished_at = self.context.clock()
        report.duration_ms = int((time.perf_counter() - started) * 1000)
        record = report.to_dict()
        try:
            self.context.store.record_job_run(record)
        except Exception:
            logger.exception("Unable to append run log row for %s", report.job)
        logger.info(
            "Job %s %s: scanned=%d succeeded=%d failed=%d skipped=%d in %dms",
            report.job,
            report.status,
            report.scanned,
            report.succeeded,
            report.failed,
            report.skipped,
            report.duration_ms,
        )
        return report


__all__ = [
    "JOB_REGISTRY",
    "JobContext",
    "JobOptions",
    "JobReport",
    "JobRunner",
    "parse_options",
]
