from __future__ import annotations

import datetime as dt
import sqlite3

import pytest

from pitchline.betting.markets import MarketKind, MarketSpec, Side
from pitchline.betting.settlement import SettlementEngine, leg_counts, rollup_ticket, score_leg
from pitchline.betting.store import SQLiteStore
from pitchline.betting.tickets import LegStatus, TicketStatus

OVER_25 = MarketSpec(MarketKind.GOALS, Side.OVER, 2.5)
BTTS_YES = MarketSpec(MarketKind.BTTS, Side.YES)
CORNERS_OVER = MarketSpec(MarketKind.CORNERS, Side.OVER, 9.5)


class TestScoreLeg:
    def test_totals(self, make_result, now) -> None:
        result = make_result(1, kickoff_at=now, goals=(2, 1))
        assert score_leg(OVER_25, result).status is LegStatus.WON
        assert score_leg(OVER_25.opposite(), result).status is LegStatus.LOST
        assert score_leg(OVER_25, result).actual_value == 3.0

    def test_whole_line_pushes(self, make_result, now) -> None:
        result = make_result(1, kickoff_at=now, goals=(2, 1))
        assert score_leg(MarketSpec(MarketKind.GOALS, Side.OVER, 3.0), result).status is LegStatus.PUSHED

    def test_btts_and_result(self, make_result, now) -> None:
        goalless = make_result(1, kickoff_at=now, goals=(0, 0))
        assert score_leg(BTTS_YES, goalless).status is LegStatus.LOST
        assert score_leg(MarketSpec(MarketKind.BTTS, Side.NO), goalless).status is LegStatus.WON
        assert score_leg(MarketSpec(MarketKind.RESULT, Side.DRAW), goalless).status is LegStatus.WON
        assert score_leg(MarketSpec(MarketKind.RESULT, Side.HOME), goalless).status is LegStatus.LOST

    def test_cancelled_fixture_voids(self, make_result, now) -> None:
        result = make_result(1, kickoff_at=now, status="ABD", goals=None)
        assert score_leg(OVER_25, result).status is LegStatus.VOIDED

    @pytest.mark.parametrize("status", ["AWD", "WO"])
    def test_awarded_scores_void_even_with_goals(self, make_result, now, status) -> None:
        result = make_result(1, kickoff_at=now, status=status, goals=(3, 0))
        assert score_leg(OVER_25, result).status is LegStatus.VOIDED
        assert score_leg(MarketSpec(MarketKind.RESULT, Side.HOME), result).status is LegStatus.VOIDED

    def test_unscorable_results_stay_pending(self, make_result, now) -> None:
        live = make_result(1, kickoff_at=now, status="2H")
        score = score_leg(OVER_25, live)
        assert score.status is None
        assert score.diagnostic == "fixture status 2H is not final"

        missing = make_result(2, kickoff_at=now, corners=None)
        score = score_leg(CORNERS_OVER, missing)
        assert score.status is None
        assert score.diagnostic == "missing corners data for fixture 2"


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([], TicketStatus.PENDING),
        ([LegStatus.PENDING, LegStatus.PENDING], TicketStatus.PENDING),
        ([LegStatus.WON, LegStatus.PENDING], TicketStatus.PARTIAL),
        ([LegStatus.LOST, LegStatus.PENDING], TicketStatus.LOST),
        ([LegStatus.WON, LegStatus.PUSHED], TicketStatus.WON),
        ([LegStatus.PUSHED, LegStatus.PUSHED], TicketStatus.WON),
        ([LegStatus.VOIDED, LegStatus.VOIDED], TicketStatus.VOID),
        ([LegStatus.VOIDED, LegStatus.WON], TicketStatus.WON),
    ],
)
def test_rollup_ticket(statuses, expected) -> None:
    assert rollup_ticket(statuses) is expected


def test_leg_counts() -> None:
    counts = leg_counts([LegStatus.WON, LegStatus.PUSHED, LegStatus.PENDING, LegStatus.WON])
    assert counts == {"won": 2, "lost": 0, "pushed": 1, "voided": 0, "settled": 3}


def test_settlement_walks_a_ticket_to_its_final_state(store, clock, now, make_result, save_ticket) -> None:
    kickoff = now - dt.timedelta(hours=3)
    ticket = save_ticket([(1, kickoff, OVER_25), (2, kickoff, BTTS_YES), (3, kickoff, CORNERS_OVER)])
    store.upsert_results(
        [
            make_result(1, kickoff_at=kickoff, goals=(2, 1)),
            make_result(3, kickoff_at=kickoff, corners=None),
        ],
        now=now,
    )
    engine = SettlementEngine(store, clock=clock)

    first = engine.run(run_id="run-1")
    assert (first.scanned, first.scored, first.pending, first.tickets_updated) == (2, 1, 1, 1)
    assert first.diagnostics == [f"leg {ticket.legs[2].leg_id}: missing corners data for fixture 3"]
    stored = store.get_ticket(ticket.ticket_id)
    assert stored.status is TicketStatus.PARTIAL
    assert (stored.legs_won, stored.legs_settled) == (1, 1)
    assert stored.legs[0].actual_value == 3.0
    assert stored.legs[2].status is LegStatus.PENDING
    assert stored.legs[2].diagnostic == "missing corners data for fixture 3"

    store.upsert_results([make_result(2, kickoff_at=kickoff, goals=(0, 0))], now=now)
    second = engine.run(run_id="run-2")
    assert (second.scanned, second.scored, second.pending) == (2, 1, 1)
    assert store.get_ticket(ticket.ticket_id).status is TicketStatus.LOST

    store.upsert_results([make_result(3, kickoff_at=kickoff, corners=(6, 5))], now=now)
    third = engine.run(run_id="run-3")
    assert (third.scanned, third.scored) == (1, 1)
    stored = store.get_ticket(ticket.ticket_id)
    assert stored.status is TicketStatus.LOST
    assert (stored.legs_won, stored.legs_lost, stored.legs_settled) == (2, 1, 3)
    assert stored.legs[2].diagnostic is None

    idle = engine.run(run_id="run-4")
    assert idle.scanned == 0
    assert idle.tickets_updated == 0


def test_recent_kickoffs_wait_for_the_settle_delay(store, clock, now, make_result, save_ticket) -> None:
    kickoff = now - dt.timedelta(hours=1)
    save_ticket([(1, kickoff, OVER_25)])
    store.upsert_results([make_result(1, kickoff_at=kickoff)], now=now)
    engine = SettlementEngine(store, clock=clock)

    assert engine.run().scanned == 0

    clock.advance(hours=1, minutes=1)
    report = engine.run()
    assert report.scanned == 1
    assert report.scored == 1


def test_cancelled_fixture_voids_the_whole_ticket(store, clock, now, make_result, save_ticket) -> None:
    kickoff = now - dt.timedelta(hours=5)
    ticket = save_ticket([(1, kickoff, OVER_25)])
    store.upsert_results([make_result(1, kickoff_at=kickoff, status="CANC", goals=None)], now=now)

    SettlementEngine(store, clock=clock).run()

    stored = store.get_ticket(ticket.ticket_id)
    assert stored.status is TicketStatus.VOID
    assert stored.legs_voided == 1


def test_claimed_legs_are_skipped_until_the_claim_expires(store, clock, now, make_result, save_ticket) -> None:
    kickoff = now - dt.timedelta(hours=3)
    ticket = save_ticket([(1, kickoff, OVER_25)])
    store.upsert_results([make_result(1, kickoff_at=kickoff, goals=(3, 0))], now=now)
    claimed = store.claim_scorable_legs(
        "other-run",
        now=now,
        kickoff_before=now,
        limit=10,
        claim_ttl=dt.timedelta(minutes=10),
    )
    assert len(claimed) == 1
    engine = SettlementEngine(store, clock=clock)

    assert engine.run(run_id="mine").scanned == 0
    assert not store.settle_leg(
        ticket.legs[0].leg_id, "mine", status=LegStatus.WON, actual_value=3.0, now=now
    )

    clock.advance(minutes=11)
    report = engine.run(run_id="mine")
    assert report.scored == 1
    assert store.get_ticket(ticket.ticket_id).status is TicketStatus.WON


def test_batch_size_bounds_each_run(store, clock, now, make_result, save_ticket) -> None:
    kickoff = now - dt.timedelta(hours=4)
    for fixture_id in range(1, 6):
        save_ticket([(fixture_id, kickoff, OVER_25)])
    store.upsert_results([make_result(fixture_id, kickoff_at=kickoff) for fixture_id in range(1, 6)], now=now)
    engine = SettlementEngine(store, clock=clock, batch_size=2)

    assert engine.run().scanned == 2
    assert engine.run(batch_size=10).scanned == 3
    assert engine.run().scanned == 0


class FlakyStore(SQLiteStore):
    """Store whose ``settle_leg`` fails for selected legs."""

    def __init__(self, path, failing: set[int]) -> None:
        super().__init__(path)
        self.failing = failing

    def settle_leg(self, leg_id, run_id, **kwargs) -> bool:
        if leg_id in self.failing:
            raise sqlite3.OperationalError("disk I/O error")
        return super().settle_leg(leg_id, run_id, **kwargs)


def test_a_failing_leg_is_released_and_does_not_block_the_batch(
    tmp_path, clock, now, make_result, save_ticket, store
) -> None:
    kickoff = now - dt.timedelta(hours=3)
    broken = save_ticket([(1, kickoff, OVER_25)])
    healthy = save_ticket([(2, kickoff, OVER_25)])
    store.upsert_results([make_result(fixture_id, kickoff_at=kickoff, goals=(2, 1)) for fixture_id in (1, 2)], now=now)
    broken_leg = broken.legs[0].leg_id
    flaky = FlakyStore(tmp_path / "pitchline.sqlite3", {broken_leg})

    report = SettlementEngine(flaky, clock=clock).run(run_id="run-1")

    assert (report.scanned, report.scored, report.failed) == (2, 1, 1)
    assert report.errors == [f"leg {broken_leg}: disk I/O error"]
    assert store.get_ticket(healthy.ticket_id).status is TicketStatus.WON
    leg = store.get_ticket(broken.ticket_id).legs[0]
    assert leg.status is LegStatus.PENDING
    assert leg.diagnostic == "disk I/O error"

    # released at once, so the next run takes it without waiting for the claim to expire
    retry = SettlementEngine(store, clock=clock).run(run_id="run-2")
    assert (retry.scanned, retry.scored) == (1, 1)
    assert store.get_ticket(broken.ticket_id).status is TicketStatus.WON
