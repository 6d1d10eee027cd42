from __future__ import annotations

import datetime as dt
from typing import Callable, Sequence

import pytest

from pitchline.betting.markets import MarketSpec
from pitchline.betting.models import Fixture, FixtureResult
from pitchline.betting.sources import StaticResultSource
from pitchline.betting.store import SQLiteStore
from pitchline.betting.tickets import LegStatus, Ticket, TicketLeg, TicketStatus

UTC = dt.timezone.utc

Pair = tuple[int, int] | None


class FrozenClock:
    """Injectable ``now`` that tests move forward explicitly."""

    def __init__(self, moment: dt.datetime) -> None:
        self.moment = moment

    def __call__(self) -> dt.datetime:
        return self.moment

    def advance(self, **kwargs: float) -> dt.datetime:
        self.moment = self.moment + dt.timedelta(**kwargs)
        return self.moment


class FakeMonotonic:
    """Monotonic clock that advances a fixed step per reading."""

    def __init__(self, step: float = 0.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


@pytest.fixture()
def now() -> dt.datetime:
    return dt.datetime(2024, 9, 1, 12, tzinfo=UTC)


@pytest.fixture()
def clock(now: dt.datetime) -> FrozenClock:
    return FrozenClock(now)


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture()
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "pitchline.sqlite3")


@pytest.fixture()
def make_result() -> Callable[..., FixtureResult]:
    def _make(
        fixture_id: int,
        *,
        kickoff_at: dt.datetime,
        home: int = 10,
        away: int = 20,
        league_id: int = 39,
        status: str = "FT",
        goals: Pair = (1, 1),
        corners: Pair = (5, 4),
        cards: Pair = (2, 1),
        fouls: Pair = (12, 11),
        offsides: Pair = (2, 1),
    ) -> FixtureResult:
        stats: dict[str, int | None] = {}
        for metric, pair in (
            ("goals", goals),
            ("corners", corners),
            ("cards", cards),
            ("fouls", fouls),
            ("offsides", offsides),
        ):
            stats[f"{metric}_home"] = pair[0] if pair else None
            stats[f"{metric}_away"] = pair[1] if pair else None
        return FixtureResult(
            fixture_id=fixture_id,
            league_id=league_id,
            kickoff_at=kickoff_at,
            status=status,
            home_team_id=home,
            away_team_id=away,
            **stats,
        )

    return _make


@pytest.fixture()
def make_fixture() -> Callable[..., Fixture]:
    def _make(
        fixture_id: int,
        *,
        kickoff_at: dt.datetime,
        home: int = 10,
        away: int = 20,
        league_id: int = 39,
    ) -> Fixture:
        return Fixture(
            fixture_id=fixture_id,
            league_id=league_id,
            kickoff_at=kickoff_at,
            home_team_id=home,
            away_team_id=away,
        )

    return _make


@pytest.fixture()
def save_ticket(store: SQLiteStore, now: dt.datetime) -> Callable[..., Ticket]:
    """Persist a ticket from ``(fixture_id, kickoff_at, spec)`` leg tuples."""

    counter = {"value": 0}

    def _save(legs: Sequence[tuple[int, dt.datetime, MarketSpec]], *, odds: float = 1.9) -> Ticket:
        counter["value"] += 1
        ticket_id = f"ticket-{counter['value']}"
        ticket = Ticket(
            ticket_id=ticket_id,
            created_at=now,
            seed=counter["value"],
            ticket_hash=ticket_id,
            status=TicketStatus.PENDING,
            total_odds=odds ** len(legs),
            estimated_win_probability=0.5 ** len(legs),
            legs=[
                TicketLeg(
                    leg_id=0,
                    ticket_id=ticket_id,
                    position=index,
                    fixture_id=fixture_id,
                    league_id=39,
                    kickoff_at=kickoff_at,
                    market=spec.kind.value,
                    side=spec.side.value,
                    line=spec.line,
                    odds=odds,
                    model_probability=0.5,
                    status=LegStatus.PENDING,
                )
                for index, (fixture_id, kickoff_at, spec) in enumerate(legs)
            ],
        )
        return store.save_ticket(ticket)

    return _save


@pytest.fixture()
def static_source() -> StaticResultSource:
    return StaticResultSource()
