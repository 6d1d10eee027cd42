"""Command line interface for the pitchline betting core."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import datetime as dt
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..config import get_settings
from ..utils_date import isoformat, utcnow
from .calibration import PerformanceWeight, export_weights
from .candidates import CandidateSelection, OddsOffer
from .configuration import (
    ConfigurationError,
    PitchlineConfig,
    create_aggregator,
    create_calibrator,
    create_candidate_builder,
    create_job_runner,
    create_market_service,
    create_optimizer,
    create_performance_weights,
    create_store,
    load_config,
    validate_config,
)
from .errors import InsufficientCandidates, InvariantViolation
from .jobs import JobRunner
from .logging import configure_logging
from .optimizer import TicketDraft
from .scheduler import Scheduler
from .store import SQLiteStore

logger = logging.getLogger(__name__)


@dataclasses.dataclass(slots=True)
class CommandContext:
    """Runtime objects shared across command handlers."""

    config: PitchlineConfig
    store: SQLiteStore
    runner: JobRunner


ContextHandler = Callable[[CommandContext, argparse.Namespace], Awaitable[int | None]]
ConfigHandler = Callable[[PitchlineConfig, argparse.Namespace], Awaitable[int | None]]


@dataclasses.dataclass(slots=True)
class Subcommand:
    """Container describing a CLI sub-command."""

    name: str
    help: str
    configure: Callable[[argparse.ArgumentParser], None]
    handler: ContextHandler | ConfigHandler
    requires_service: bool

    def add_to_parser(self, subparsers, parent: argparse.ArgumentParser) -> argparse.ArgumentParser:
        parser = subparsers.add_parser(self.name, parents=[parent], help=self.help)
        self.configure(parser)
        parser.set_defaults(
            handler=self.handler,
            command=self.name,
            requires_service=self.requires_service,
        )
        return parser


class SubcommandApp:
    """Registry that wires handlers into an :class:`argparse` parser."""

    def __init__(self, description: str | None = None) -> None:
        self._commands: list[Subcommand] = []
        self._description = description

    def command(
        self,
        name: str,
        *,
        help: str,
        configure: Callable[[argparse.ArgumentParser], None] | None = None,
        requires_service: bool = True,
    ) -> Callable[[Any], Any]:
        def _decorator(handler: Any) -> Any:
            self._commands.append(
                Subcommand(
                    name=name,
                    help=help,
                    configure=configure or (lambda parser: None),
                    handler=handler,
                    requires_service=requires_service,
                )
            )
            return handler

        return _decorator

    @property
    def commands(self) -> Sequence[Subcommand]:
        return tuple(self._commands)

    def build_parser(self) -> argparse.ArgumentParser:
        parent = argparse.ArgumentParser(add_help=False)
        parent.add_argument("--config", dest="config_file")
        parent.add_argument("--environment", dest="config_environment")
        parent.add_argument("--storage", help="SQLite store path (overrides configuration)")
        parent.add_argument("--log-level", default=None)

        parser = argparse.ArgumentParser(prog="pitchline", description=self._description)
        subparsers = parser.add_subparsers(dest="command", required=True)
        for command in self._commands:
            command.add_to_parser(subparsers, parent)
        return parser


APP = SubcommandApp(description=__doc__)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _json_argument(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    candidate = Path(raw)
    text = candidate.read_text(encoding="utf-8") if candidate.exists() else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"--options is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("--options must be a JSON object")
    return data


def _draft_payload(draft: TicketDraft) -> dict[str, Any]:
    return {
        "ticket_hash": draft.ticket_hash,
        "seed": draft.seed,
        "total_odds": round(draft.total_odds, 4),
        "estimated_win_probability": round(draft.estimated_win_probability, 6),
        "pool_size": draft.pool_size,
        "legs": [_candidate_payload(leg) for leg in draft.legs],
    }


def _candidate_payload(candidate: CandidateSelection) -> dict[str, Any]:
    return {
        "fixture_id": candidate.fixture_id,
        "league_id": candidate.league_id,
        "kickoff_at": isoformat(candidate.kickoff_at),
        "market": candidate.market.kind.value,
        "side": candidate.market.side.value,
        "line": candidate.market.line,
        "odds": candidate.odds,
        "model_probability": round(candidate.model_probability, 4),
        "edge": round(candidate.edge, 4),
        "data_quality": candidate.data_quality.value,
        "performance_weight": candidate.performance_weight,
        "bookmaker": candidate.bookmaker,
    }


def _load_offers(path: str) -> list[OddsOffer]:
    with open(path, "r", encoding="utf-8") as handle:
        rows = json.load(handle)
    if isinstance(rows, Mapping):
        rows = rows.get("offers", [])
    return [
        OddsOffer.from_raw(
            int(row["fixture_id"]),
            row["market"],
            row["side"],
            row.get("line"),
            row["odds"],
            row.get("bookmaker", ""),
        )
        for row in rows
    ]


# ----------------------------------------------------------------------
# parser configuration
# ----------------------------------------------------------------------
def _configure_run_job(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("name", help="Job name, e.g. results-refresh or score-legs")
    parser.add_argument("--options", help="JSON object (inline or a file path) of job options")


def _configure_build_ticket(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--offers", required=True, help="JSON file of odds offers")
    parser.add_argument("--legs", type=int, default=None, help="Target leg count")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--horizon-hours", type=float, default=48.0)
    parser.add_argument("--lock", type=int, action="append", default=[], help="Fixture id already on the ticket")
    parser.add_argument("--previous-hash", default=None, help="Reshuffle until the hash differs")
    parser.add_argument("--save", action="store_true", help="Persist the ticket to the store")


def _configure_resolve_market(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("market_id", type=int)
    parser.add_argument("outcome", choices=["yes", "no", "void"])
    parser.add_argument("--actor", default=None)


def _configure_close_market(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("market_id", type=int)
    parser.add_argument("--actor", default=None)


def _configure_recalibrate(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--lookback-days", type=int, default=None)


def _configure_export_weights(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("path", help="Destination .csv or .parquet file")


def _configure_schedule(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-runs", type=int, default=None, help="Stop each job after N runs")


# ----------------------------------------------------------------------
# commands
# ----------------------------------------------------------------------
@APP.command("validate-config", help="Validate layered configuration", requires_service=False)
async def _cmd_validate_config(config: PitchlineConfig, args: argparse.Namespace) -> int:
    try:
        warnings = validate_config(config)
    except ConfigurationError as exc:
        _emit({"ok": False, "environment": config.environment, "error": str(exc)})
        return 1
    _emit({"ok": True, "environment": config.environment, "warnings": warnings})
    return 0


@APP.command("run-job", help="Run one batch job and print its report", configure=_configure_run_job)
async def _cmd_run_job(context: CommandContext, args: argparse.Namespace) -> int:
    report = await context.runner.run_async(args.name, _json_argument(args.options))
    _emit(report.to_dict())
    return 1 if report.status == "failed" else 0


@APP.command("build-ticket", help="Build a multi-leg ticket from odds offers", configure=_configure_build_ticket)
async def _cmd_build_ticket(context: CommandContext, args: argparse.Namespace) -> int:
    config = context.config
    store = context.store
    now = utcnow()
    offers = _load_offers(args.offers)
    by_fixture: dict[int, list[OddsOffer]] = {}
    for offer in offers:
        by_fixture.setdefault(offer.fixture_id, []).append(offer)
    aggregator = create_aggregator(config, store)
    builder = create_candidate_builder(config, weights=create_performance_weights(config, store))
    candidates: list[CandidateSelection] = []
    for fixture in store.upcoming_fixtures(now=now, horizon=dt.timedelta(hours=args.horizon_hours)):
        fixture_offers = by_fixture.get(fixture.fixture_id)
        if not fixture_offers:
            continue
        candidates.extend(
            builder.build(
                fixture,
                fixture_offers,
                aggregator.team_profile(fixture.home_team_id, league_id=fixture.league_id),
                aggregator.team_profile(fixture.away_team_id, league_id=fixture.league_id),
                aggregator.league_profile(fixture.league_id),
            )
        )
    optimizer = create_optimizer(config)
    target = args.legs or config.optimizer.target_leg_count
    try:
        if args.previous_hash:
            draft = optimizer.reshuffle(
                candidates,
                args.previous_hash,
                args.lock,
                target,
                args.seed,
                max_attempts=config.optimizer.reshuffle_attempts,
            )
        else:
            draft = optimizer.build_ticket(candidates, args.lock, target, args.seed)
    except InsufficientCandidates as exc:
        _emit({"error": str(exc), "available": exc.available, "required": exc.required})
        return 2
    payload = _draft_payload(draft)
    if args.save:
        ticket = store.save_ticket(draft.to_ticket(created_at=now))
        payload["ticket_id"] = ticket.ticket_id
    _emit(payload)
    return 0


@APP.command("resolve-market", help="Resolve a prediction market", configure=_configure_resolve_market)
async def _cmd_resolve_market(context: CommandContext, args: argparse.Namespace) -> int:
    service = create_market_service(context.config, context.store)
    try:
        summary = service.resolve_market(args.market_id, args.outcome, actor=args.actor)
    except InvariantViolation as exc:
        _emit({"error": str(exc), "type": type(exc).__name__})
        return 1
    payload = dataclasses.asdict(summary)
    payload["winning_outcome"] = summary.winning_outcome.value if summary.winning_outcome else "void"
    payload["action"] = summary.action.value
    _emit(payload)
    return 0


@APP.command("close-markets", help="Close open markets past their closing time")
async def _cmd_close_markets(context: CommandContext, args: argparse.Namespace) -> int:
    closed = create_market_service(context.config, context.store).close_expired()
    _emit({"closed": [market.market_id for market in closed]})
    return 0


@APP.command("close-market", help="Close one open market before its deadline", configure=_configure_close_market)
async def _cmd_close_market(context: CommandContext, args: argparse.Namespace) -> int:
    service = create_market_service(context.config, context.store)
    try:
        market = service.close_market(args.market_id, actor=args.actor)
    except InvariantViolation as exc:
        _emit({"error": str(exc), "type": type(exc).__name__})
        return 1
    _emit({"closed": market.market_id, "status": market.status.value})
    return 0


@APP.command("recalibrate", help="Recompute performance weights", configure=_configure_recalibrate)
async def _cmd_recalibrate(context: CommandContext, args: argparse.Namespace) -> int:
    weights = create_calibrator(context.config, context.store).recalibrate(args.lookback_days)
    _emit({"weights": len(weights), "global": sum(1 for weight in weights if weight.is_global)})
    return 0


@APP.command("export-weights", help="Export stored weights to CSV or Parquet", configure=_configure_export_weights)
async def _cmd_export_weights(context: CommandContext, args: argparse.Namespace) -> int:
    weights = [PerformanceWeight.from_record(record) for record in context.store.load_performance_weights()]
    target = export_weights(weights, args.path)
    _emit({"path": str(target), "rows": len(weights)})
    return 0


@APP.command("schedule", help="Run the configured job schedule until interrupted", configure=_configure_schedule)
async def _cmd_schedule(context: CommandContext, args: argparse.Namespace) -> int:
    scheduler = Scheduler()
    for entry in context.config.scheduler.jobs:
        if not entry.enabled:
            continue
        scheduler.add_batch_job(
            context.runner,
            entry.job,
            options=entry.options,
            interval=entry.interval_seconds,
            jitter=entry.jitter_seconds,
            retries=entry.retries,
            max_runs=args.max_runs,
        )
    if not scheduler.jobs:
        _emit({"scheduled": []})
        return 0
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, scheduler.stop)
    logger.info("Scheduling %d jobs", len(scheduler.jobs))
    async with scheduler:
        await scheduler.run()
    _emit({"scheduled": [job.name for job in scheduler.jobs], "runs": {job.name: job.runs for job in scheduler.jobs}})
    return 0


def _build_parser() -> argparse.ArgumentParser:
    return APP.build_parser()


async def _dispatch(args: argparse.Namespace) -> int:
    config = load_config(base_path=args.config_file, environment=args.config_environment)
    if not args.requires_service:
        return await args.handler(config, args) or 0

    try:
        warnings = validate_config(config)
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc
    for message in warnings:
        logger.warning("[config-warning] %s", message)

    store = create_store(config, path=args.storage)
    context = CommandContext(config=config, store=store, runner=create_job_runner(config, store=store))
    try:
        return await args.handler(context, args) or 0
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or get_settings().log_level, handlers=[logging.StreamHandler(sys.stderr)])
    return asyncio.run(_dispatch(args))


__all__ = ["APP", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
