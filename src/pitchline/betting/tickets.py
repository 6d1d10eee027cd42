"""Ticket and leg records."""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum

from .markets import MarketSpec, parse_market


class LegStatus(str, enum.Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"
    PUSHED = "PUSHED"
    VOIDED = "VOIDED"

    @property
    def is_settled(self) -> bool:
        return self is not LegStatus.PENDING


class TicketStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    WON = "WON"
    LOST = "LOST"
    VOID = "VOID"


@dataclasses.dataclass(slots=True)
class TicketLeg:
    """One stored leg.

    ``market``/``side`` hold the canonical enum values written at ticket
    creation; :meth:`spec` turns them back into a :class:`MarketSpec` and
    raises :class:`~pitchline.betting.errors.UnsupportedMarket` for rows
    written by something else.
    """

    leg_id: int
    ticket_id: str
    position: int
    fixture_id: int
    league_id: int | None
    kickoff_at: dt.datetime
    market: str
    side: str
    line: float | None
    odds: float
    model_probability: float | None = None
    status: LegStatus = LegStatus.PENDING
    actual_value: float | None = None
    settled_at: dt.datetime | None = None
    diagnostic: str | None = None

    def spec(self) -> MarketSpec:
        return parse_market(self.market, self.side, self.line)


@dataclasses.dataclass(slots=True)
class Ticket:
    ticket_id: str
    created_at: dt.datetime
    seed: int
    ticket_hash: str
    status: TicketStatus
    total_odds: float
    estimated_win_probability: float
    legs: list[TicketLeg] = dataclasses.field(default_factory=list)
    legs_won: int = 0
    legs_lost: int = 0
    legs_pushed: int = 0
    legs_voided: int = 0
    legs_settled: int = 0


__all__ = ["LegStatus", "Ticket", "TicketLeg", "TicketStatus"]
