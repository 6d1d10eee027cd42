"""Leg scoring and ticket roll-up.

Legs move ``PENDING -> WON | LOST | PUSHED | VOIDED`` exactly once.  The
engine claims legs through the store (lock-and-skip), scores them against
the stored result and applies each transition as a conditional update, so
overlapping runs never score the same leg twice.
"""

from __future__ import annotations

import collections
import dataclasses
import datetime as dt
import logging
import uuid
from typing import Any, Callable, Iterable, Sequence

from ..utils_date import utcnow
from .errors import UnsupportedMarket
from .markets import MarketKind, MarketSpec, Side, actual_value
from .models import FixtureResult
from .store import SQLiteStore
from .tickets import LegStatus, TicketStatus

logger = logging.getLogger(__name__)

SETTLE_DELAY = dt.timedelta(hours=2)
CLAIM_TTL = dt.timedelta(minutes=10)
DEFAULT_BATCH_SIZE = 500
MAX_BATCH_SIZE = 1000
MAX_REPORTED_ERRORS = 20


@dataclasses.dataclass(slots=True, frozen=True)
class LegScore:
    """Outcome of scoring one leg; ``status`` is ``None`` when unscorable."""

    status: LegStatus | None
    actual_value: float | None = None
    diagnostic: str | None = None


def _compare(actual: float, line: float, side: Side) -> LegStatus:
    if actual == line:
        return LegStatus.PUSHED
    over = actual > line
    if side is Side.OVER:
        return LegStatus.WON if over else LegStatus.LOST
    return LegStatus.LOST if over else LegStatus.WON


def score_leg(spec: MarketSpec, result: FixtureResult) -> LegScore:
    """Score ``spec`` against a finished (or cancelled) fixture result."""

    if result.is_cancelled:
        return LegScore(LegStatus.VOIDED, diagnostic=f"fixture status {result.status}")
    if not result.is_final:
        return LegScore(None, diagnostic=f"fixture status {result.status} is not final")
    actual = actual_value(spec, result)
    if actual is None:
        metric = spec.kind.value if spec.kind.is_total else "goals"
        return LegScore(None, diagnostic=f"missing {metric} data for fixture {result.fixture_id}")
    if spec.kind.is_total:
        assert spec.line is not None
        return LegScore(_compare(actual, spec.line, spec.side), actual)
    if spec.kind is MarketKind.BTTS:
        hit = actual >= 1.0
        won = hit if spec.side is Side.YES else not hit
        return LegScore(LegStatus.WON if won else LegStatus.LOST, actual)
    if actual > 0:
        winner = Side.HOME
    elif actual < 0:
        winner = Side.AWAY
    else:
        winner = Side.DRAW
    return LegScore(LegStatus.WON if spec.side is winner else LegStatus.LOST, actual)


def leg_counts(statuses: Iterable[LegStatus]) -> dict[str, int]:
    counter = collections.Counter(statuses)
    return {
        "won": counter[LegStatus.WON],
        "lost": counter[LegStatus.LOST],
        "pushed": counter[LegStatus.PUSHED],
        "voided": counter[LegStatus.VOIDED],
        "settled": sum(count for status, count in counter.items() if status.is_settled),
    }


def rollup_ticket(statuses: Sequence[LegStatus]) -> TicketStatus:
    """Ticket status as a pure function of its leg states."""

    if not statuses:
        return TicketStatus.PENDING
    if any(status is LegStatus.LOST for status in statuses):
        return TicketStatus.LOST
    settled = [status for status in statuses if status.is_settled]
    if len(settled) == len(statuses):
        if all(status is LegStatus.VOIDED for status in statuses):
            return TicketStatus.VOID
        return TicketStatus.WON
    if settled:
        return TicketStatus.PARTIAL
    return TicketStatus.PENDING


@dataclasses.dataclass(slots=True)
class SettlementReport:
    run_id: str
    scanned: int = 0
    scored: int = 0
    pending: int = 0
    failed: int = 0
    skipped: int = 0
    tickets_updated: int = 0
    diagnostics: list[str] = dataclasses.field(default_factory=list)
    errors: list[str] = dataclasses.field(default_factory=list)

    def note(self, message: str, *, error: bool = False) -> None:
        target = self.errors if error else self.diagnostics
        if len(target) < MAX_REPORTED_ERRORS:
            target.append(message)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class SettlementEngine:
    """Claim, score and roll up pending legs in bounded batches."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        settle_delay: dt.timedelta = SETTLE_DELAY,
        claim_ttl: dt.timedelta = CLAIM_TTL,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._clock = clock
        self.settle_delay = settle_delay
        self.claim_ttl = claim_ttl
        self.batch_size = batch_size

    def run(self, batch_size: int | None = None, *, run_id: str | None = None) -> SettlementReport:
        limit = max(1, min(batch_size or self.batch_size, MAX_BATCH_SIZE))
        now = self._clock()
        report = SettlementReport(run_id=run_id or uuid.uuid4().hex)
        claimed = self._store.claim_scorable_legs(
            report.run_id,
            now=now,
            kickoff_before=now - self.settle_delay,
            limit=limit,
            claim_ttl=self.claim_ttl,
        )
        report.scanned = len(claimed)
        touched: set[str] = set()
        for leg, result in claimed:
            try:
                score = score_leg(leg.spec(), result)
            except UnsupportedMarket as exc:
                score = LegScore(None, diagnostic=f"unsupported market: {exc}")
            try:
                if score.status is None:
                    report.pending += 1
                    report.note(f"leg {leg.leg_id}: {score.diagnostic}")
                    self._store.release_leg(leg.leg_id, report.run_id, diagnostic=score.diagnostic)
                    continue
                applied = self._store.settle_leg(
                    leg.leg_id,
                    report.run_id,
                    status=score.status,
                    actual_value=score.actual_value,
                    now=now,
                )
            except Exception as exc:
                logger.warning("Failed to settle leg %s: %s", leg.leg_id, exc)
                report.failed += 1
                report.note(f"leg {leg.leg_id}: {exc}", error=True)
                self._release_failed(leg.leg_id, report.run_id, str(exc))
                continue
            if applied:
                report.scored += 1
                touched.add(leg.ticket_id)
            else:
                report.skipped += 1
        for ticket_id in sorted(touched):
            self.refresh_ticket(ticket_id, now=now)
            report.tickets_updated += 1
        logger.info(
            "Settlement run %s scanned %d legs, scored %d, left %d pending",
            report.run_id,
            report.scanned,
            report.scored,
            report.pending,
        )
        return report

    def _release_failed(self, leg_id: int, run_id: str, diagnostic: str) -> None:
        # a failed leg goes back to the queue now instead of waiting out the claim ttl
        try:
            self._store.release_leg(leg_id, run_id, diagnostic=diagnostic)
        except Exception:
            logger.exception("Could not release claim on leg %s; it frees up when the claim expires", leg_id)

    def refresh_ticket(self, ticket_id: str, *, now: dt.datetime | None = None) -> TicketStatus:
        statuses = self._store.ticket_leg_statuses(ticket_id)
        status = rollup_ticket(statuses)
        self._store.update_ticket_rollup(
            ticket_id,
            status=status,
            counts=leg_counts(statuses),
            now=now or self._clock(),
        )
        return status


__all__ = [
    "LegScore",
    "SettlementEngine",
    "SettlementReport",
    "leg_counts",
    "rollup_ticket",
    "score_leg",
]
