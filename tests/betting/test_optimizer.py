from __future__ import annotations

import datetime as dt
import random

import pytest

from pitchline.betting.candidates import CandidateSelection
from pitchline.betting.errors import InsufficientCandidates
from pitchline.betting.markets import MarketKind, MarketSpec, Side
from pitchline.betting.optimizer import SelectionOptimizer, ticket_hash
from pitchline.betting.tickets import LegStatus, TicketStatus


@pytest.fixture()
def make_candidate(now):
    def _make(fixture_id: int, *, line: float = 2.5, odds: float = 2.0, edge: float = 0.05, weight: float = 1.0):
        return CandidateSelection(
            fixture_id=fixture_id,
            market=MarketSpec(MarketKind.GOALS, Side.OVER, line),
            odds=odds,
            model_probability=0.55,
            edge=edge,
            kickoff_at=now + dt.timedelta(hours=fixture_id),
            league_id=39,
            performance_weight=weight,
        )

    return _make


def test_ticket_hash_is_order_independent(make_candidate) -> None:
    legs = [make_candidate(3), make_candidate(1, line=1.5), make_candidate(2)]
    assert ticket_hash(legs) == ticket_hash(list(reversed(legs)))
    assert ticket_hash(legs) == "1-goals-over-1.5|2-goals-over-2.5|3-goals-over-2.5"


def test_composite_weight() -> None:
    optimizer = SelectionOptimizer(random_weight=0.0)
    rng = random.Random(0)
    now = dt.datetime(2024, 9, 1, tzinfo=dt.timezone.utc)
    base = dict(
        fixture_id=1,
        market=MarketSpec(MarketKind.BTTS, Side.YES),
        odds=2.0,
        model_probability=0.6,
        kickoff_at=now,
    )

    assert optimizer.composite_weight(CandidateSelection(edge=0.1, **base), rng) == pytest.approx(0.115)
    assert optimizer.composite_weight(
        CandidateSelection(edge=0.1, performance_weight=2.0, **base), rng
    ) == pytest.approx(0.23)
    assert optimizer.composite_weight(CandidateSelection(edge=-0.2, **base), rng) == pytest.approx(0.05)
    assert optimizer.composite_weight(CandidateSelection(edge=0.1, performance_weight=0.0, **base), rng) == 0.0


def test_build_ticket_picks_unique_fixtures(make_candidate) -> None:
    pool = [make_candidate(fixture_id, line=line) for fixture_id in range(1, 6) for line in (1.5, 2.5)]
    draft = SelectionOptimizer().build_ticket(pool, target_leg_count=3, rng_seed=42)

    assert len(draft.legs) == 3
    assert len(set(draft.fixture_ids)) == 3
    assert draft.seed == 42
    assert draft.pool_size == 10
    assert draft.total_odds == pytest.approx(8.0)
    assert draft.estimated_win_probability == pytest.approx(0.55**3)


def test_same_seed_same_ticket(make_candidate) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 10)]
    optimizer = SelectionOptimizer()

    first = optimizer.build_ticket(pool, target_leg_count=4, rng_seed=7)
    second = optimizer.build_ticket(pool, target_leg_count=4, rng_seed=7)

    assert first.ticket_hash == second.ticket_hash
    assert [leg.identity for leg in first.legs] == [leg.identity for leg in second.legs]


def test_insufficient_candidates(make_candidate) -> None:
    pool = [make_candidate(1), make_candidate(1, line=1.5), make_candidate(2)]
    with pytest.raises(InsufficientCandidates) as excinfo:
        SelectionOptimizer().build_ticket(pool, target_leg_count=3, rng_seed=1)
    assert excinfo.value.available == 2
    assert excinfo.value.required == 3


def test_odds_range_filters_pool(make_candidate) -> None:
    pool = [make_candidate(1, odds=1.1), make_candidate(2, odds=2.0), make_candidate(3, odds=6.0)]
    optimizer = SelectionOptimizer(odds_range=(1.25, 5.0))

    draft = optimizer.build_ticket(pool, target_leg_count=1, rng_seed=3)
    assert draft.fixture_ids == [2]

    with pytest.raises(InsufficientCandidates):
        optimizer.build_ticket(pool, target_leg_count=2, rng_seed=3)


def test_locked_legs_are_kept_and_excluded_from_draw(make_candidate) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 7)]
    locked = make_candidate(2, line=3.5)

    draft = SelectionOptimizer().build_ticket(
        pool,
        locked_fixture_ids=[5],
        target_leg_count=4,
        rng_seed=11,
        locked_legs=[locked],
    )

    assert draft.legs[0] is locked
    assert draft.locked_count == 2
    assert len(draft.legs) == 3
    assert 5 not in draft.fixture_ids
    assert draft.fixture_ids.count(2) == 1


def test_too_many_locks_rejected(make_candidate) -> None:
    with pytest.raises(ValueError):
        SelectionOptimizer().build_ticket([make_candidate(1)], locked_fixture_ids=[1, 2], target_leg_count=1)
    with pytest.raises(ValueError):
        SelectionOptimizer().build_ticket([make_candidate(1)], target_leg_count=0)


def test_reshuffle_with_unknown_hash_matches_plain_build(make_candidate) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 7)]
    optimizer = SelectionOptimizer()

    built = optimizer.build_ticket(pool, target_leg_count=3, rng_seed=5)
    reshuffled = optimizer.reshuffle(pool, "nope", target_leg_count=3, rng_seed=5)

    assert reshuffled.ticket_hash == built.ticket_hash
    assert reshuffled.seed == 5


def test_reshuffle_avoids_previous_ticket(make_candidate) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 7)]
    optimizer = SelectionOptimizer(random_weight=0.0)
    previous = optimizer.build_ticket(pool, target_leg_count=3, rng_seed=5)

    reshuffled = optimizer.reshuffle(pool, previous.ticket_hash, target_leg_count=3, rng_seed=5)

    assert reshuffled.ticket_hash != previous.ticket_hash
    assert reshuffled.seed > 5


def test_reshuffle_gives_up_on_a_single_possible_ticket(make_candidate) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 4)]
    optimizer = SelectionOptimizer()
    previous = optimizer.build_ticket(pool, target_leg_count=3, rng_seed=9)

    reshuffled = optimizer.reshuffle(pool, previous.ticket_hash, target_leg_count=3, rng_seed=9)

    assert reshuffled.ticket_hash == previous.ticket_hash
    assert reshuffled.seed == 9 + 4


def test_draft_to_ticket(make_candidate, now) -> None:
    pool = [make_candidate(fixture_id) for fixture_id in range(1, 4)]
    draft = SelectionOptimizer().build_ticket(pool, target_leg_count=2, rng_seed=1)

    ticket = draft.to_ticket(created_at=now, ticket_id="abc")

    assert ticket.ticket_id == "abc"
    assert ticket.status is TicketStatus.PENDING
    assert ticket.ticket_hash == draft.ticket_hash
    assert [leg.position for leg in ticket.legs] == [0, 1]
    assert all(leg.status is LegStatus.PENDING and leg.ticket_id == "abc" for leg in ticket.legs)
    assert ticket.legs[0].spec() == draft.legs[0].market
