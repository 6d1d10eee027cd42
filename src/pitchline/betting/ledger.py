"""Prediction-market records and pool arithmetic.

Everything here is pure: the store executes these rules inside a single
transaction and the service layer reuses them for previews.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import math

from .markets import MarketSpec

FEE_RATE = 0.02
MIN_FEE = 1
MIN_STAKE = 10
STARTING_BALANCE = 1000
MIN_POOL_ODDS = 1.1
EMPTY_SIDE_ODDS = 2.0


class Outcome(str, enum.Enum):
    YES = "yes"
    NO = "no"


class MarketStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    RESOLVED = "resolved"


class PositionStatus(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"


class ResolutionAction(str, enum.Enum):
    MANUAL = "manual_resolve"
    AUTO = "auto_resolve"
    VOID = "void"
    CLOSE = "admin_close"


@dataclasses.dataclass(slots=True)
class PredictionMarket:
    market_id: int
    title: str
    status: MarketStatus
    closes_at: dt.datetime
    spec: MarketSpec | None = None
    fixture_id: int | None = None
    odds_yes: float = EMPTY_SIDE_ODDS
    odds_no: float = EMPTY_SIDE_ODDS
    total_staked_yes: int = 0
    total_staked_no: int = 0
    winning_outcome: Outcome | None = None
    resolved_at: dt.datetime | None = None

    def odds_for(self, outcome: Outcome) -> float:
        return self.odds_yes if outcome is Outcome.YES else self.odds_no

    def accepts_bets(self, now: dt.datetime) -> bool:
        return self.status is MarketStatus.OPEN and self.closes_at > now


@dataclasses.dataclass(slots=True)
class MarketPosition:
    position_id: int
    market_id: int
    user_id: str
    outcome: Outcome
    stake: int
    fee_amount: int
    net_stake: int
    odds_at_placement: float
    potential_payout: int
    status: PositionStatus = PositionStatus.PENDING
    payout_amount: int = 0
    settled_at: dt.datetime | None = None


@dataclasses.dataclass(slots=True)
class BetQuote:
    stake: int
    fee_amount: int
    net_stake: int
    odds: float
    potential_payout: int


@dataclasses.dataclass(slots=True)
class ResolutionSummary:
    market_id: int
    winning_outcome: Outcome | None
    action: ResolutionAction
    positions_settled: int = 0
    won: int = 0
    lost: int = 0
    voided: int = 0
    total_paid: int = 0


def bet_fee(stake: int, *, rate: float = FEE_RATE, minimum: int = MIN_FEE) -> int:
    """House fee: ``rate`` of the stake rounded down, never below ``minimum``."""

    return max(minimum, math.floor(stake * rate))


def quote_bet(stake: int, odds: float, *, rate: float = FEE_RATE, minimum: int = MIN_FEE) -> BetQuote:
    fee = bet_fee(stake, rate=rate, minimum=minimum)
    net = stake - fee
    return BetQuote(
        stake=stake,
        fee_amount=fee,
        net_stake=net,
        odds=odds,
        potential_payout=math.floor(net * odds),
    )


def pool_odds(side_total: int, pool_total: int) -> float:
    """Parimutuel price for one side of the pool, floored at 1.1."""

    if side_total <= 0:
        return EMPTY_SIDE_ODDS
    return round(max(MIN_POOL_ODDS, pool_total / side_total), 2)


def settle_position(position: MarketPosition, winning_outcome: Outcome | None) -> tuple[PositionStatus, int]:
    """Terminal state and payout for a pending position.

    A void resolution refunds the full stake, a matching outcome pays the
    payout fixed at placement and anything else pays nothing.
    """

    if winning_outcome is None:
        return PositionStatus.VOID, position.stake
    if position.outcome is winning_outcome:
        return PositionStatus.WON, position.potential_payout
    return PositionStatus.LOST, 0


__all__ = [
    "BetQuote",
    "EMPTY_SIDE_ODDS",
    "FEE_RATE",
    "MIN_FEE",
    "MIN_POOL_ODDS",
    "MIN_STAKE",
    "MarketPosition",
    "MarketStatus",
    "Outcome",
    "PositionStatus",
    "PredictionMarket",
    "ResolutionAction",
    "ResolutionSummary",
    "STARTING_BALANCE",
    "bet_fee",
    "pool_odds",
    "quote_bet",
    "settle_position",
]
