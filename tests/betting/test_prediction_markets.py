from __future__ import annotations

import datetime as dt

import pytest

from pitchline.betting.errors import (
    InsufficientBalance,
    InvalidStake,
    InvariantViolation,
    MarketAlreadyResolved,
    MarketClosed,
    MarketNotFound,
)
from pitchline.betting.ledger import (
    MarketStatus,
    Outcome,
    PositionStatus,
    ResolutionAction,
    bet_fee,
    pool_odds,
    quote_bet,
)
from pitchline.betting.markets import MarketKind, MarketSpec, Side
from pitchline.betting.prediction_markets import PredictionMarketService


@pytest.fixture()
def service(store, clock) -> PredictionMarketService:
    return PredictionMarketService(store, clock=clock)


@pytest.fixture()
def market(service, now):
    return service.create_market("Derby over 2.5?", now + dt.timedelta(days=1))


class TestLedgerArithmetic:
    def test_fee_has_a_floor(self) -> None:
        assert bet_fee(100) == 2
        assert bet_fee(10) == 1
        assert bet_fee(149) == 2

    def test_quote_rounds_payout_down(self) -> None:
        quote = quote_bet(100, 1.55)
        assert (quote.fee_amount, quote.net_stake, quote.potential_payout) == (2, 98, 151)

    def test_pool_odds(self) -> None:
        assert pool_odds(0, 0) == 2.0
        assert pool_odds(98, 98) == 1.1
        assert pool_odds(98, 147) == 1.5
        assert pool_odds(49, 147) == 3.0


def test_bets_debit_balance_and_reprice_the_pool(service, store, market) -> None:
    alice = service.place_bet("alice", market.market_id, "yes", 100)
    assert (alice.fee_amount, alice.net_stake, alice.odds_at_placement, alice.potential_payout) == (2, 98, 2.0, 196)
    assert service.balance("alice") == {
        "balance": 900,
        "total_wagered": 100,
        "total_won": 0,
        "total_fees_paid": 2,
    }

    repriced = store.get_market(market.market_id)
    assert (repriced.odds_yes, repriced.odds_no) == (1.1, 2.0)

    bob = service.place_bet("bob", market.market_id, Outcome.NO, 50)
    assert (bob.fee_amount, bob.net_stake, bob.potential_payout) == (1, 49, 98)
    repriced = store.get_market(market.market_id)
    assert (repriced.total_staked_yes, repriced.total_staked_no) == (98, 49)
    assert (repriced.odds_yes, repriced.odds_no) == (1.5, 3.0)

    quote = service.quote(market.market_id, "no", 20)
    assert quote.odds == 3.0
    assert quote.potential_payout == 57


def test_resolution_pays_winners_once(service, store, market) -> None:
    service.place_bet("alice", market.market_id, "yes", 100)
    service.place_bet("bob", market.market_id, "no", 50)

    summary = service.resolve_market(market.market_id, "yes", actor="admin")

    assert (summary.won, summary.lost, summary.total_paid) == (1, 1, 196)
    assert summary.action is ResolutionAction.MANUAL
    assert service.balance("alice")["balance"] == 1096
    assert service.balance("alice")["total_won"] == 196
    assert service.balance("bob")["balance"] == 950
    statuses = {position.user_id: position.status for position in store.positions_for_market(market.market_id)}
    assert statuses == {"alice": PositionStatus.WON, "bob": PositionStatus.LOST}
    resolved = store.get_market(market.market_id)
    assert resolved.status is MarketStatus.RESOLVED
    assert resolved.winning_outcome is Outcome.YES

    with pytest.raises(MarketAlreadyResolved):
        service.resolve_market(market.market_id, "no")
    assert service.balance("alice")["balance"] == 1096
    log = store.market_audit_log(market.market_id)
    assert len(log) == 1
    assert (log[0]["action"], log[0]["actor"], log[0]["total_paid"]) == ("manual_resolve", "admin", 196)


def test_void_refunds_full_stakes(service, store, market) -> None:
    service.place_bet("alice", market.market_id, "yes", 100)
    service.place_bet("bob", market.market_id, "no", 50)

    summary = service.resolve_market(market.market_id, "void")

    assert summary.winning_outcome is None
    assert summary.voided == 2
    assert summary.total_paid == 150
    assert service.balance("alice")["balance"] == 1000
    assert service.balance("bob")["balance"] == 1000
    assert service.balance("alice")["total_won"] == 0
    assert store.market_audit_log(market.market_id)[0]["action"] == "void"


def test_bet_validation(service, store, market) -> None:
    with pytest.raises(InvalidStake):
        service.place_bet("alice", market.market_id, "yes", 5)
    with pytest.raises(InsufficientBalance):
        service.place_bet("alice", market.market_id, "yes", 5000)
    with pytest.raises(MarketNotFound):
        service.place_bet("alice", 999, "yes", 50)
    with pytest.raises(MarketNotFound):
        service.quote(999, "yes", 50)
    with pytest.raises(ValueError):
        service.place_bet("alice", market.market_id, "maybe", 50)

    assert store.get_balance("alice") is None
    assert service.balance("alice")["balance"] == 1000
    assert store.positions_for_market(market.market_id) == []


def test_close_expired_stops_betting(service, clock, now) -> None:
    soon = service.create_market("Soon", now + dt.timedelta(hours=1))
    later = service.create_market("Later", now + dt.timedelta(days=3))

    clock.advance(hours=2)
    closed = service.close_expired()

    assert [item.market_id for item in closed] == [soon.market_id]
    assert closed[0].status is MarketStatus.CLOSED
    assert service.close_expired() == []
    with pytest.raises(MarketClosed):
        service.place_bet("alice", soon.market_id, "yes", 50)
    service.place_bet("alice", later.market_id, "yes", 50)


def test_admin_close_stops_betting_before_the_deadline(service, store, market) -> None:
    service.place_bet("alice", market.market_id, "yes", 50)

    closed = service.close_market(market.market_id, actor="ops")

    assert closed.status is MarketStatus.CLOSED
    assert store.get_market(market.market_id).status is MarketStatus.CLOSED
    log = store.market_audit_log(market.market_id)
    assert [(row["action"], row["actor"]) for row in log] == [(ResolutionAction.CLOSE.value, "ops")]
    with pytest.raises(MarketClosed):
        service.place_bet("bob", market.market_id, "no", 50)
    with pytest.raises(MarketClosed):
        service.close_market(market.market_id, actor="ops")
    assert len(store.market_audit_log(market.market_id)) == 1

    summary = service.resolve_market(market.market_id, "yes", actor="ops")
    assert summary.positions_settled == 1
    with pytest.raises(MarketAlreadyResolved):
        service.close_market(market.market_id)
    with pytest.raises(MarketNotFound):
        service.close_market(999)


def test_betting_closes_at_deadline_even_before_the_sweep(service, clock, now) -> None:
    market = service.create_market("Deadline", now + dt.timedelta(minutes=30))
    clock.advance(minutes=31)
    with pytest.raises(MarketClosed):
        service.place_bet("alice", market.market_id, "yes", 50)


def test_typed_markets_need_a_fixture(service, now) -> None:
    with pytest.raises(ValueError):
        service.create_market("Goals?", now, spec=MarketSpec(MarketKind.GOALS, Side.OVER, 2.5))

    legacy = service.create_market("Goals?", now + dt.timedelta(days=1), fixture_id=1, market_type="over_2.5")
    assert legacy.spec == MarketSpec(MarketKind.GOALS, Side.OVER, 2.5)
    assert legacy.fixture_id == 1


def test_auto_resolve_from_results(service, store, now, make_result) -> None:
    closes = now + dt.timedelta(days=1)
    over = service.create_market("Over 2.5", closes, fixture_id=1, spec=MarketSpec(MarketKind.GOALS, Side.OVER, 2.5))
    push = service.create_market("Over 3", closes, fixture_id=2, spec=MarketSpec(MarketKind.GOALS, Side.OVER, 3.0))
    cancelled = service.create_market("Home win", closes, fixture_id=3, spec=MarketSpec(MarketKind.RESULT, Side.HOME))
    waiting = service.create_market("BTTS", closes, fixture_id=4, spec=MarketSpec(MarketKind.BTTS, Side.YES))
    service.create_market("Free text", closes)

    service.place_bet("alice", over.market_id, "yes", 100)
    service.place_bet("bob", push.market_id, "no", 40)
    store.upsert_results(
        [
            make_result(1, kickoff_at=now, goals=(2, 1)),
            make_result(2, kickoff_at=now, goals=(2, 1)),
            make_result(3, kickoff_at=now, status="ABD", goals=None),
            make_result(4, kickoff_at=now, status="1H"),
        ],
        now=now,
    )

    report = service.auto_resolve()

    assert (report.scanned, report.resolved, report.voided, report.waiting, report.failed) == (4, 1, 2, 1, 0)
    assert store.get_market(over.market_id).winning_outcome is Outcome.YES
    assert store.get_market(push.market_id).winning_outcome is None
    assert store.get_market(cancelled.market_id).status is MarketStatus.RESOLVED
    assert store.get_market(waiting.market_id).status is MarketStatus.OPEN
    assert service.balance("alice")["balance"] == 900 + 196
    assert service.balance("bob")["balance"] == 1000
    assert store.market_audit_log(over.market_id)[0]["action"] == "auto_resolve"
    assert store.market_audit_log(push.market_id)[0]["actor"] == "auto"

    second = service.auto_resolve()
    assert (second.scanned, second.waiting) == (1, 1)
    assert report.to_dict()["summaries"][1]["winning_outcome"] == "void"


def test_resolve_from_result_requires_a_typed_market(service, market) -> None:
    with pytest.raises(InvariantViolation):
        service.resolve_from_result(market.market_id)
