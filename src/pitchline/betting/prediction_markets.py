"""Play-money prediction markets on fixtures."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Any, Callable

from ..utils_date import ensure_utc, utcnow
from .errors import InvariantViolation, MarketNotFound, ResultUnavailable
from .ledger import (
    FEE_RATE,
    MIN_FEE,
    MIN_STAKE,
    BetQuote,
    MarketPosition,
    MarketStatus,
    Outcome,
    PredictionMarket,
    ResolutionAction,
    ResolutionSummary,
    quote_bet,
)
from .markets import MarketSpec, parse_legacy_market_type
from .settlement import score_leg
from .store import SQLiteStore
from .tickets import LegStatus

logger = logging.getLogger(__name__)


def outcome_from_score(status: LegStatus | None) -> Outcome | None:
    """YES when the market's proposition won, NO when it lost, ``None`` (void) otherwise."""

    if status is LegStatus.WON:
        return Outcome.YES
    if status is LegStatus.LOST:
        return Outcome.NO
    return None


@dataclasses.dataclass(slots=True)
class AutoResolveReport:
    scanned: int = 0
    resolved: int = 0
    voided: int = 0
    waiting: int = 0
    failed: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)
    summaries: list[ResolutionSummary] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["summaries"] = [
            {
                "market_id": summary.market_id,
                "winning_outcome": summary.winning_outcome.value if summary.winning_outcome else "void",
                "positions_settled": summary.positions_settled,
                "total_paid": summary.total_paid,
            }
            for summary in self.summaries
        ]
        return payload


class PredictionMarketService:
    """Facade over the store's atomic market operations."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        fee_rate: float = FEE_RATE,
        min_fee: int = MIN_FEE,
        min_stake: int = MIN_STAKE,
    ) -> None:
        self._store = store
        self._clock = clock
        self.fee_rate = fee_rate
        self.min_fee = min_fee
        self.min_stake = min_stake

    def create_market(
        self,
        title: str,
        closes_at: dt.datetime,
        *,
        fixture_id: int | None = None,
        spec: MarketSpec | None = None,
        market_type: str | None = None,
    ) -> PredictionMarket:
        """Open a market; ``market_type`` accepts the legacy ``over_2.5`` style."""

        if spec is None and market_type:
            spec = parse_legacy_market_type(market_type)
        if spec is not None and fixture_id is None:
            raise ValueError("typed markets need a fixture_id to resolve against")
        market = self._store.create_market(
            title=title,
            closes_at=ensure_utc(closes_at),
            now=self._clock(),
            fixture_id=fixture_id,
            spec=spec,
        )
        logger.info("Opened market %s: %s", market.market_id, title)
        return market

    def quote(self, market_id: int, outcome: Outcome | str, stake: int) -> BetQuote:
        market = self._require(market_id)
        return quote_bet(stake, market.odds_for(Outcome(outcome)), rate=self.fee_rate, minimum=self.min_fee)

    def place_bet(self, user_id: str, market_id: int, outcome: Outcome | str, stake: int) -> MarketPosition:
        position = self._store.place_bet(
            user_id=user_id,
            market_id=market_id,
            outcome=Outcome(outcome),
            stake=int(stake),
            now=self._clock(),
            fee_rate=self.fee_rate,
            min_fee=self.min_fee,
            min_stake=self.min_stake,
        )
        logger.debug(
            "User %s staked %d on %s for market %s",
            user_id,
            stake,
            position.outcome.value,
            market_id,
        )
        return position

    def resolve_market(
        self,
        market_id: int,
        winning_outcome: Outcome | str | None,
        *,
        actor: str | None = None,
        action: ResolutionAction | None = None,
    ) -> ResolutionSummary:
        """Resolve with ``yes``/``no``; ``None`` or ``"void"`` refunds every stake."""

        outcome = None if winning_outcome in (None, "void") else Outcome(winning_outcome)
        if action is None:
            action = ResolutionAction.MANUAL if outcome is not None else ResolutionAction.VOID
        summary = self._store.resolve_market(
            market_id,
            winning_outcome=outcome,
            action=action,
            actor=actor,
            now=self._clock(),
        )
        logger.info(
            "Resolved market %s as %s: %d positions, %d paid",
            market_id,
            outcome.value if outcome else "void",
            summary.positions_settled,
            summary.total_paid,
        )
        return summary

    def close_market(self, market_id: int, *, actor: str | None = None) -> PredictionMarket:
        """Stop betting on an open market before its deadline (admin action)."""

        market = self._store.close_market(market_id, actor=actor, now=self._clock())
        logger.info("Market %s closed by %s", market_id, actor or "unknown actor")
        return market

    def close_expired(self) -> list[PredictionMarket]:
        closed = self._store.close_expired_markets(self._clock())
        if closed:
            logger.info("Closed %d expired markets", len(closed))
        return closed

    def resolve_from_result(self, market_id: int, *, actor: str | None = "auto") -> ResolutionSummary:
        """Resolve a typed market from its fixture's stored result.

        Raises :class:`ResultUnavailable` when the fixture has no final or
        cancelled result yet.
        """

        market = self._require(market_id)
        if market.spec is None or market.fixture_id is None:
            raise InvariantViolation(f"market {market_id} is not linked to a fixture market")
        result = self._store.get_result(market.fixture_id)
        if result is None or not (result.is_final or result.is_cancelled):
            raise ResultUnavailable(f"fixture {market.fixture_id} has no final result")
        score = score_leg(market.spec, result)
        if score.status is None:
            raise ResultUnavailable(score.diagnostic or f"fixture {market.fixture_id} cannot be scored")
        outcome = outcome_from_score(score.status)
        action = ResolutionAction.AUTO if outcome is not None else ResolutionAction.VOID
        return self.resolve_market(market_id, outcome, actor=actor, action=action)

    def auto_resolve(self) -> AutoResolveReport:
        report = AutoResolveReport()
        markets = [
            market
            for status in (MarketStatus.OPEN, MarketStatus.CLOSED)
            for market in self._store.list_markets(status)
            if market.spec is not None and market.fixture_id is not None
        ]
        for market in markets:
            report.scanned += 1
            try:
                summary = self.resolve_from_result(market.market_id)
            except ResultUnavailable as exc:
                report.waiting += 1
                logger.debug("Market %s waiting: %s", market.market_id, exc)
                continue
            except InvariantViolation as exc:
                logger.warning("Auto-resolve of market %s rejected: %s", market.market_id, exc)
                report.failed += 1
                if len(report.errors) < 20:
                    report.errors.append(f"market {market.market_id}: {exc}")
                continue
            report.summaries.append(summary)
            if summary.winning_outcome is None:
                report.voided += 1
            else:
                report.resolved += 1
        return report

    def balance(self, user_id: str) -> dict[str, int]:
        record = self._store.get_balance(user_id)
        if record is None:
            return {
                "balance": self._store.starting_balance,
                "total_wagered": 0,
                "total_won": 0,
                "total_fees_paid": 0,
            }
        return record

    def _require(self, market_id: int) -> PredictionMarket:
        market = self._store.get_market(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} does not exist")
        return market


__all__ = ["AutoResolveReport", "PredictionMarketService", "outcome_from_score"]
