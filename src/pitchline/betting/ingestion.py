"""Result ingestion orchestration."""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import time
from typing import Any, Callable, Sequence

from ..utils_date import isoformat, parse_timestamp, utcnow
from .errors import PermanentAPIError, TransientAPIError
from .models import FixtureResult
from .sources.base import ResultSource
from .store import SQLiteStore

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


def encode_cursor(kickoff_at: dt.datetime, fixture_id: int) -> str:
    return f"{isoformat(kickoff_at)}|{fixture_id}"


def decode_cursor(cursor: str | None) -> tuple[dt.datetime, int] | None:
    if not cursor:
        return None
    stamp, _, fixture_id = cursor.rpartition("|")
    if not stamp:
        raise ValueError(f"malformed resume cursor: {cursor!r}")
    return parse_timestamp(stamp), int(fixture_id)


@dataclasses.dataclass(slots=True)
class IngestionBudget:
    """Ceilings that stop a refresh early; ``None`` means unlimited."""

    max_api_calls: int | None = None
    max_runtime_seconds: float | None = None
    inter_call_delay: float = 0.0


@dataclasses.dataclass(slots=True)
class IngestionReport:
    window_start: dt.datetime
    window_end: dt.datetime
    scanned: int = 0
    stored: int = 0
    not_found: int = 0
    failed: int = 0
    api_calls: int = 0
    stopped_early: str | None = None
    cursor: str | None = None
    errors: list[str] = dataclasses.field(default_factory=list)

    def record_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["window_start"] = isoformat(self.window_start)
        payload["window_end"] = isoformat(self.window_end)
        return payload


class ResultIngestionService:
    """Fill in results for recently kicked-off fixtures, within a budget."""

    def __init__(
        self,
        source: ResultSource,
        store: SQLiteStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.source = source
        self._store = store
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    async def refresh(
        self,
        *,
        window_hours: float = 6,
        league_ids: Sequence[int] | None = None,
        batch_size: int = 500,
        budget: IngestionBudget | None = None,
        cursor: str | None = None,
    ) -> IngestionReport:
        """Fetch results for fixtures in ``[now - window_hours, now]``.

        Fixtures are visited in ``(kickoff_at, fixture_id)`` order.  When a
        budget ceiling is hit the report's ``cursor`` names the last fixture
        handled, so the next call can pass it back and resume.
        """

        budget = budget or IngestionBudget()
        now = self._clock()
        report = IngestionReport(window_start=now - dt.timedelta(hours=window_hours), window_end=now)
        fixtures = self._store.fixtures_missing_results(
            since=report.window_start,
            until=now,
            league_ids=list(league_ids) if league_ids else None,
            limit=batch_size,
            after=decode_cursor(cursor),
        )
        started = self._monotonic()
        results: list[FixtureResult] = []
        for index, fixture in enumerate(fixtures):
            if budget.max_api_calls is not None and report.api_calls >= budget.max_api_calls:
                report.stopped_early = "max_api_calls"
                break
            if (
                budget.max_runtime_seconds is not None
                and self._monotonic() - started >= budget.max_runtime_seconds
            ):
                report.stopped_early = "max_runtime_seconds"
                break
            if index and budget.inter_call_delay > 0:
                await self._sleep(budget.inter_call_delay)
            report.scanned += 1
            calls_before = self.source.calls
            try:
                result = await self.source.fetch_result(fixture.fixture_id)
            except (TransientAPIError, PermanentAPIError) as exc:
                logger.warning("Result fetch for fixture %s failed: %s", fixture.fixture_id, exc)
                report.failed += 1
                report.record_error(f"fixture {fixture.fixture_id}: {exc}")
            except Exception as exc:
                logger.exception("Unexpected error fetching fixture %s", fixture.fixture_id)
                report.failed += 1
                report.record_error(f"fixture {fixture.fixture_id}: {exc}")
            else:
                if result is None:
                    report.not_found += 1
                else:
                    results.append(result)
            finally:
                report.api_calls += max(1, self.source.calls - calls_before)
            report.cursor = encode_cursor(fixture.kickoff_at, fixture.fixture_id)

        if results:
            report.stored = self._store.upsert_results(results, now=now)
        if report.stopped_early is None and len(fixtures) < batch_size:
            report.cursor = None
        logger.info(
            "Refreshed %d fixtures: %d stored, %d failed, %d api calls%s",
            report.scanned,
            report.stored,
            report.failed,
            report.api_calls,
            f" (stopped: {report.stopped_early})" if report.stopped_early else "",
        )
        return report


__all__ = [
    "IngestionBudget",
    "IngestionReport",
    "ResultIngestionService",
    "decode_cursor",
    "encode_cursor",
]
