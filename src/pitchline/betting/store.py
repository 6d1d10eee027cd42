"""SQLite-backed result store.

The store is the single durable collaborator of the betting core: finished
match facts, cached profiles, tickets, prediction markets, calibration
weights, job locks and the run log all live here.  Multi-step state changes
run inside ``BEGIN IMMEDIATE`` transactions, which take SQLite's write lock
up front so concurrent invocations serialise instead of interleaving.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol, Sequence

from ..utils_date import isoformat, parse_timestamp
from .errors import (
    InsufficientBalance,
    InvalidStake,
    MarketAlreadyResolved,
    MarketClosed,
    MarketNotFound,
    PositionAlreadySettled,
)
from .ledger import (
    FEE_RATE,
    MIN_FEE,
    MIN_STAKE,
    STARTING_BALANCE,
    MarketPosition,
    MarketStatus,
    Outcome,
    PositionStatus,
    PredictionMarket,
    ResolutionAction,
    ResolutionSummary,
    pool_odds,
    quote_bet,
    settle_position,
)
from .markets import MarketSpec, parse_market
from .models import CANCELLED_STATUSES, FINAL_STATUSES, METRICS, Fixture, FixtureResult
from .tickets import LegStatus, Ticket, TicketLeg, TicketStatus

logger = logging.getLogger(__name__)

GLOBAL_LEAGUE_KEY = -1

_STAT_COLUMNS = tuple(f"{metric}_{side}" for metric in METRICS for side in ("home", "away"))
_RESULT_COLUMNS = (
    "fixture_id",
    "league_id",
    "kickoff_at",
    "status",
    "home_team_id",
    "away_team_id",
    *_STAT_COLUMNS,
)
_SETTLEABLE_STATUSES = tuple(sorted(FINAL_STATUSES | CANCELLED_STATUSES))


class ResultStore(Protocol):
    """Operations the betting core needs from its durable store."""

    def upsert_results(self, results: Iterable[FixtureResult]) -> int: ...

    def get_result(self, fixture_id: int) -> FixtureResult | None: ...

    def results_for_team(
        self,
        team_id: int,
        *,
        since: dt.datetime,
        until: dt.datetime,
        league_id: int | None = None,
    ) -> list[FixtureResult]: ...

    def results_for_league(
        self, league_id: int, *, since: dt.datetime, until: dt.datetime
    ) -> list[FixtureResult]: ...


@contextlib.contextmanager
def _closing(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    try:
        yield conn
    finally:
        conn.close()


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _optional_timestamp(value: str | None) -> dt.datetime | None:
    return parse_timestamp(value) if value else None


class SQLiteStore:
    """Concrete :class:`ResultStore` persisted to a single SQLite file."""

    def __init__(
        self,
        path: str | os.PathLike[str] = "pitchline.sqlite3",
        *,
        timeout: float = 30.0,
        starting_balance: int = STARTING_BALANCE,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._starting_balance = starting_balance
        self._init_db()

    @property
    def starting_balance(self) -> int:
        return self._starting_balance

    # ------------------------------------------------------------------
    # connections
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextlib.contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with _closing(self._connect()) as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction; roll back on any error."""

        with _closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        stat_columns = ",\n".join(f"                    {name} INTEGER" for name in _STAT_COLUMNS)
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fixtures (
                    fixture_id INTEGER PRIMARY KEY,
                    league_id INTEGER NOT NULL,
                    season INTEGER,
                    kickoff_at TEXT NOT NULL,
                    home_team_id INTEGER NOT NULL,
                    away_team_id INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'NS'
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS fixture_results (
                    fixture_id INTEGER PRIMARY KEY,
                    league_id INTEGER NOT NULL,
                    kickoff_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    home_team_id INTEGER NOT NULL,
                    away_team_id INTEGER NOT NULL,
{stat_columns},
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_results_league_kickoff "
                "ON fixture_results(league_id, kickoff_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS team_profiles (
                    team_id INTEGER NOT NULL,
                    league_key INTEGER NOT NULL,
                    computed_at TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (team_id, league_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS league_profiles (
                    league_id INTEGER PRIMARY KEY,
                    computed_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tickets (
                    ticket_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    seed INTEGER NOT NULL,
                    ticket_hash TEXT NOT NULL,
                    status TEXT NOT NULL,
                    total_odds REAL NOT NULL,
                    estimated_win_probability REAL NOT NULL,
                    legs_total INTEGER NOT NULL DEFAULT 0,
                    legs_settled INTEGER NOT NULL DEFAULT 0,
                    legs_won INTEGER NOT NULL DEFAULT 0,
                    legs_lost INTEGER NOT NULL DEFAULT 0,
                    legs_pushed INTEGER NOT NULL DEFAULT 0,
                    legs_voided INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ticket_legs (
                    leg_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticket_id TEXT NOT NULL REFERENCES tickets(ticket_id),
                    position INTEGER NOT NULL,
                    fixture_id INTEGER NOT NULL,
                    league_id INTEGER,
                    kickoff_at TEXT NOT NULL,
                    market TEXT NOT NULL,
                    side TEXT NOT NULL,
                    line REAL,
                    odds REAL NOT NULL,
                    model_probability REAL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    actual_value REAL,
                    settled_at TEXT,
                    claim_token TEXT,
                    claimed_at TEXT,
                    diagnostic TEXT,
                    UNIQUE (ticket_id, fixture_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_legs_status ON ticket_legs(status, kickoff_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS prediction_markets (
                    market_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    fixture_id INTEGER,
                    market_kind TEXT,
                    market_side TEXT,
                    market_line REAL,
                    status TEXT NOT NULL DEFAULT 'open',
                    closes_at TEXT NOT NULL,
                    odds_yes REAL NOT NULL DEFAULT 2.0,
                    odds_no REAL NOT NULL DEFAULT 2.0,
                    total_staked_yes INTEGER NOT NULL DEFAULT 0,
                    total_staked_no INTEGER NOT NULL DEFAULT 0,
                    winning_outcome TEXT,
                    resolved_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS market_positions (
                    position_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    market_id INTEGER NOT NULL REFERENCES prediction_markets(market_id),
                    user_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    stake INTEGER NOT NULL,
                    fee_amount INTEGER NOT NULL,
                    net_stake INTEGER NOT NULL,
                    odds_at_placement REAL NOT NULL,
                    potential_payout INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    payout_amount INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    settled_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_balances (
                    user_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL,
                    total_wagered INTEGER NOT NULL DEFAULT 0,
                    total_won INTEGER NOT NULL DEFAULT 0,
                    total_fees_paid INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS market_audit_log (
                    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    market_id INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT,
                    winning_outcome TEXT,
                    positions_settled INTEGER NOT NULL,
                    total_paid INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS performance_weights (
                    market TEXT NOT NULL,
                    side TEXT NOT NULL,
                    line REAL NOT NULL,
                    league_key INTEGER NOT NULL,
                    wins INTEGER NOT NULL,
                    losses INTEGER NOT NULL,
                    pushes INTEGER NOT NULL,
                    sample_size INTEGER NOT NULL,
                    raw_win_rate REAL NOT NULL,
                    roi REAL NOT NULL,
                    bayes_win_rate REAL NOT NULL,
                    weight REAL NOT NULL,
                    lookback_days INTEGER NOT NULL,
                    computed_at TEXT NOT NULL,
                    PRIMARY KEY (market, side, line, league_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_locks (
                    job_name TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    window_start TEXT,
                    window_end TEXT,
                    scanned INTEGER NOT NULL,
                    succeeded INTEGER NOT NULL,
                    failed INTEGER NOT NULL,
                    skipped INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    cursor TEXT,
                    errors TEXT,
                    details TEXT
                )
                """
            )

    # ------------------------------------------------------------------
    # fixtures and results
    # ------------------------------------------------------------------
    def upsert_fixtures(self, fixtures: Iterable[Fixture]) -> int:
        payload = [
            (
                fixture.fixture_id,
                fixture.league_id,
                fixture.season,
                isoformat(fixture.kickoff_at),
                fixture.home_team_id,
                fixture.away_team_id,
                fixture.status,
            )
            for fixture in fixtures
        ]
        if not payload:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO fixtures(
                    fixture_id, league_id, season, kickoff_at,
                    home_team_id, away_team_id, status
                ) VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fixture_id) DO UPDATE SET
                    league_id=excluded.league_id,
                    season=excluded.season,
                    kickoff_at=excluded.kickoff_at,
                    home_team_id=excluded.home_team_id,
                    away_team_id=excluded.away_team_id,
                    status=excluded.status
                """,
                payload,
            )
        return len(payload)

    def get_fixture(self, fixture_id: int) -> Fixture | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM fixtures WHERE fixture_id = ?", (fixture_id,)
            ).fetchone()
        return _row_to_fixture(row) if row else None

    def fixtures_missing_results(
        self,
        *,
        since: dt.datetime,
        until: dt.datetime,
        league_ids: Sequence[int] | None = None,
        limit: int | None = None,
        after: tuple[dt.datetime, int] | None = None,
    ) -> list[Fixture]:
        """Fixtures kicked off in ``[since, until]`` without a final result.

        ``after`` is a ``(kickoff_at, fixture_id)`` cursor returned by a
        previous, budget-limited pass.
        """

        query = (
            "SELECT f.* FROM fixtures f "
            "LEFT JOIN fixture_results r ON r.fixture_id = f.fixture_id "
            "WHERE f.kickoff_at >= ? AND f.kickoff_at <= ? "
            f"AND (r.fixture_id IS NULL OR r.status NOT IN ({_placeholders(len(_SETTLEABLE_STATUSES))}))"
        )
        params: list[object] = [isoformat(since), isoformat(until), *_SETTLEABLE_STATUSES]
        if league_ids:
            query += f" AND f.league_id IN ({_placeholders(len(league_ids))})"
            params.extend(league_ids)
        if after is not None:
            cursor_at = isoformat(after[0])
            query += " AND (f.kickoff_at > ? OR (f.kickoff_at = ? AND f.fixture_id > ?))"
            params.extend([cursor_at, cursor_at, after[1]])
        query += " ORDER BY f.kickoff_at, f.fixture_id"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_fixture(row) for row in rows]

    def upcoming_fixtures(
        self,
        *,
        now: dt.datetime,
        horizon: dt.timedelta,
        league_ids: Sequence[int] | None = None,
    ) -> list[Fixture]:
        query = "SELECT * FROM fixtures WHERE kickoff_at > ? AND kickoff_at <= ?"
        params: list[object] = [isoformat(now), isoformat(now + horizon)]
        if league_ids:
            query += f" AND league_id IN ({_placeholders(len(league_ids))})"
            params.extend(league_ids)
        query += " ORDER BY kickoff_at, fixture_id"
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_fixture(row) for row in rows]

    def upsert_results(self, results: Iterable[FixtureResult], *, now: dt.datetime | None = None) -> int:
        stamp = isoformat(now or dt.datetime.now(dt.timezone.utc))
        payload = [
            (
                result.fixture_id,
                result.league_id,
                isoformat(result.kickoff_at),
                result.status,
                result.home_team_id,
                result.away_team_id,
                *(getattr(result, column) for column in _STAT_COLUMNS),
                stamp,
            )
            for result in results
        ]
        if not payload:
            return 0
        columns = ", ".join((*_RESULT_COLUMNS, "updated_at"))
        updates = ",\n".join(
            f"{column}=excluded.{column}" for column in (*_RESULT_COLUMNS[1:], "updated_at")
        )
        with self.transaction() as conn:
            conn.executemany(
                f"""
                INSERT INTO fixture_results({columns})
                VALUES({_placeholders(len(_RESULT_COLUMNS) + 1)})
                ON CONFLICT(fixture_id) DO UPDATE SET
                {updates}
                """,
                payload,
            )
            conn.executemany(
                "UPDATE fixtures SET status = ? WHERE fixture_id = ?",
                [(row[3], row[0]) for row in payload],
            )
        return len(payload)

    def get_result(self, fixture_id: int) -> FixtureResult | None:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_RESULT_COLUMNS)} FROM fixture_results WHERE fixture_id = ?",
                (fixture_id,),
            ).fetchone()
        return _row_to_result(row) if row else None

    def results_for_team(
        self,
        team_id: int,
        *,
        since: dt.datetime,
        until: dt.datetime,
        league_id: int | None = None,
    ) -> list[FixtureResult]:
        """Final results involving ``team_id``, newest first."""

        query = (
            f"SELECT {', '.join(_RESULT_COLUMNS)} FROM fixture_results "
            "WHERE (home_team_id = ? OR away_team_id = ?) "
            "AND kickoff_at >= ? AND kickoff_at <= ? "
            f"AND status IN ({_placeholders(len(FINAL_STATUSES))})"
        )
        params: list[object] = [team_id, team_id, isoformat(since), isoformat(until), *sorted(FINAL_STATUSES)]
        if league_id is not None:
            query += " AND league_id = ?"
            params.append(league_id)
        query += " ORDER BY kickoff_at DESC, fixture_id DESC"
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_result(row) for row in rows]

    def results_for_league(
        self, league_id: int, *, since: dt.datetime, until: dt.datetime
    ) -> list[FixtureResult]:
        query = (
            f"SELECT {', '.join(_RESULT_COLUMNS)} FROM fixture_results "
            "WHERE league_id = ? AND kickoff_at >= ? AND kickoff_at <= ? "
            f"AND status IN ({_placeholders(len(FINAL_STATUSES))}) "
            "ORDER BY kickoff_at DESC, fixture_id DESC"
        )
        params = (league_id, isoformat(since), isoformat(until), *sorted(FINAL_STATUSES))
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_result(row) for row in rows]

    def league_ids_with_results(self, *, since: dt.datetime) -> list[int]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT DISTINCT league_id FROM fixture_results WHERE kickoff_at >= ? ORDER BY league_id",
                (isoformat(since),),
            ).fetchall()
        return [int(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # cached profiles
    # ------------------------------------------------------------------
    def save_team_profile(
        self,
        team_id: int,
        league_key: int,
        computed_at: dt.datetime,
        payload: Mapping[str, Any],
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO team_profiles(team_id, league_key, computed_at, payload)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(team_id, league_key) DO UPDATE SET
                    computed_at=excluded.computed_at,
                    payload=excluded.payload
                """,
                (team_id, league_key, isoformat(computed_at), json.dumps(payload, sort_keys=True)),
            )

    def load_team_profile(self, team_id: int, league_key: int) -> tuple[dt.datetime, dict[str, Any]] | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT computed_at, payload FROM team_profiles WHERE team_id = ? AND league_key = ?",
                (team_id, league_key),
            ).fetchone()
        if row is None:
            return None
        return parse_timestamp(row["computed_at"]), json.loads(row["payload"])

    def save_league_profile(
        self, league_id: int, computed_at: dt.datetime, payload: Mapping[str, Any]
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO league_profiles(league_id, computed_at, payload)
                VALUES(?, ?, ?)
                ON CONFLICT(league_id) DO UPDATE SET
                    computed_at=excluded.computed_at,
                    payload=excluded.payload
                """,
                (league_id, isoformat(computed_at), json.dumps(payload, sort_keys=True)),
            )

    def load_league_profile(self, league_id: int) -> tuple[dt.datetime, dict[str, Any]] | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT computed_at, payload FROM league_profiles WHERE league_id = ?",
                (league_id,),
            ).fetchone()
        if row is None:
            return None
        return parse_timestamp(row["computed_at"]), json.loads(row["payload"])

    # ------------------------------------------------------------------
    # tickets
    # ------------------------------------------------------------------
    def save_ticket(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket and its legs; returns it with leg ids filled."""

        stamp = isoformat(ticket.created_at)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO tickets(
                    ticket_id, created_at, seed, ticket_hash, status, total_odds,
                    estimated_win_probability, legs_total, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.ticket_id,
                    stamp,
                    ticket.seed,
                    ticket.ticket_hash,
                    ticket.status.value,
                    ticket.total_odds,
                    ticket.estimated_win_probability,
                    len(ticket.legs),
                    stamp,
                ),
            )
            for leg in ticket.legs:
                cursor = conn.execute(
                    """
                    INSERT INTO ticket_legs(
                        ticket_id, position, fixture_id, league_id, kickoff_at,
                        market, side, line, odds, model_probability, status
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ticket.ticket_id,
                        leg.position,
                        leg.fixture_id,
                        leg.league_id,
                        isoformat(leg.kickoff_at),
                        leg.market,
                        leg.side,
                        leg.line,
                        leg.odds,
                        leg.model_probability,
                        leg.status.value,
                    ),
                )
                leg.leg_id = int(cursor.lastrowid or 0)
                leg.ticket_id = ticket.ticket_id
        return ticket

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM tickets WHERE ticket_id = ?", (ticket_id,)).fetchone()
            if row is None:
                return None
            legs = conn.execute(
                "SELECT * FROM ticket_legs WHERE ticket_id = ? ORDER BY position", (ticket_id,)
            ).fetchall()
        return Ticket(
            ticket_id=row["ticket_id"],
            created_at=parse_timestamp(row["created_at"]),
            seed=int(row["seed"]),
            ticket_hash=row["ticket_hash"],
            status=TicketStatus(row["status"]),
            total_odds=float(row["total_odds"]),
            estimated_win_probability=float(row["estimated_win_probability"]),
            legs=[_row_to_leg(leg) for leg in legs],
            legs_won=int(row["legs_won"]),
            legs_lost=int(row["legs_lost"]),
            legs_pushed=int(row["legs_pushed"]),
            legs_voided=int(row["legs_voided"]),
            legs_settled=int(row["legs_settled"]),
        )

    def ticket_leg_statuses(self, ticket_id: str) -> list[LegStatus]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT status FROM ticket_legs WHERE ticket_id = ? ORDER BY position",
                (ticket_id,),
            ).fetchall()
        return [LegStatus(row[0]) for row in rows]

    def claim_scorable_legs(
        self,
        run_id: str,
        *,
        now: dt.datetime,
        kickoff_before: dt.datetime,
        limit: int,
        claim_ttl: dt.timedelta,
    ) -> list[tuple[TicketLeg, FixtureResult]]:
        """Claim pending legs whose fixture has a settleable result.

        Legs claimed by another live run are skipped rather than waited on;
        claims older than ``claim_ttl`` are considered abandoned.
        """

        stale_before = isoformat(now - claim_ttl)
        result_columns = ", ".join(f"r.{column} AS r_{column}" for column in _RESULT_COLUMNS)
        with self.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT l.*, {result_columns}
                FROM ticket_legs l
                JOIN fixture_results r ON r.fixture_id = l.fixture_id
                WHERE l.status = 'PENDING'
                  AND l.kickoff_at <= ?
                  AND r.status IN ({_placeholders(len(_SETTLEABLE_STATUSES))})
                  AND (l.claim_token IS NULL OR l.claimed_at < ?)
                ORDER BY l.kickoff_at, l.leg_id
                LIMIT ?
                """,
                (isoformat(kickoff_before), *_SETTLEABLE_STATUSES, stale_before, limit),
            ).fetchall()
            claimed: list[tuple[TicketLeg, FixtureResult]] = []
            for row in rows:
                cursor = conn.execute(
                    """
                    UPDATE ticket_legs SET claim_token = ?, claimed_at = ?
                    WHERE leg_id = ? AND status = 'PENDING'
                      AND (claim_token IS NULL OR claimed_at < ?)
                    """,
                    (run_id, isoformat(now), row["leg_id"], stale_before),
                )
                if cursor.rowcount != 1:
                    continue
                result = FixtureResult(
                    **{column: row[f"r_{column}"] for column in _RESULT_COLUMNS if column != "kickoff_at"},
                    kickoff_at=parse_timestamp(row["r_kickoff_at"]),
                )
                claimed.append((_row_to_leg(row), result))
        return claimed

    def settle_leg(
        self,
        leg_id: int,
        run_id: str,
        *,
        status: LegStatus,
        actual_value: float | None,
        now: dt.datetime,
    ) -> bool:
        """Move a claimed leg from PENDING to ``status``; False if it was not ours to move."""

        if status is LegStatus.PENDING:
            raise ValueError("settle_leg requires a terminal status")
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE ticket_legs
                SET status = ?, actual_value = ?, settled_at = ?,
                    claim_token = NULL, claimed_at = NULL, diagnostic = NULL
                WHERE leg_id = ? AND status = 'PENDING' AND claim_token = ?
                """,
                (status.value, actual_value, isoformat(now), leg_id, run_id),
            )
            applied = cursor.rowcount == 1
        return applied

    def release_leg(self, leg_id: int, run_id: str, *, diagnostic: str | None = None) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE ticket_legs SET claim_token = NULL, claimed_at = NULL, diagnostic = ?
                WHERE leg_id = ? AND claim_token = ?
                """,
                (diagnostic, leg_id, run_id),
            )

    def update_ticket_rollup(
        self,
        ticket_id: str,
        *,
        status: TicketStatus,
        counts: Mapping[str, int],
        now: dt.datetime,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE tickets SET status = ?, legs_settled = ?, legs_won = ?,
                    legs_lost = ?, legs_pushed = ?, legs_voided = ?, updated_at = ?
                WHERE ticket_id = ?
                """,
                (
                    status.value,
                    counts.get("settled", 0),
                    counts.get("won", 0),
                    counts.get("lost", 0),
                    counts.get("pushed", 0),
                    counts.get("voided", 0),
                    isoformat(now),
                    ticket_id,
                ),
            )

    def settled_legs_since(self, since: dt.datetime) -> list[dict[str, Any]]:
        """Decided and pushed legs settled after ``since`` for calibration."""

        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT market, side, line, league_id, odds, status
                FROM ticket_legs
                WHERE status IN ('WON', 'LOST', 'PUSHED') AND settled_at >= ?
                """,
                (isoformat(since),),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # prediction markets
    # ------------------------------------------------------------------
    def create_market(
        self,
        *,
        title: str,
        closes_at: dt.datetime,
        now: dt.datetime,
        fixture_id: int | None = None,
        spec: MarketSpec | None = None,
    ) -> PredictionMarket:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO prediction_markets(
                    title, fixture_id, market_kind, market_side, market_line,
                    status, closes_at, created_at
                ) VALUES(?, ?, ?, ?, ?, 'open', ?, ?)
                """,
                (
                    title,
                    fixture_id,
                    spec.kind.value if spec else None,
                    spec.side.value if spec else None,
                    spec.line if spec else None,
                    isoformat(closes_at),
                    isoformat(now),
                ),
            )
            market_id = int(cursor.lastrowid or 0)
        market = self.get_market(market_id)
        assert market is not None
        return market

    def get_market(self, market_id: int) -> PredictionMarket | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM prediction_markets WHERE market_id = ?", (market_id,)
            ).fetchone()
        return _row_to_market(row) if row else None

    def list_markets(self, status: MarketStatus | None = None) -> list[PredictionMarket]:
        query = "SELECT * FROM prediction_markets"
        params: tuple[object, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY market_id"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_market(row) for row in rows]

    def positions_for_market(self, market_id: int) -> list[MarketPosition]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM market_positions WHERE market_id = ? ORDER BY position_id",
                (market_id,),
            ).fetchall()
        return [_row_to_position(row) for row in rows]

    def get_balance(self, user_id: str) -> dict[str, int] | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT balance, total_wagered, total_won, total_fees_paid FROM user_balances WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def grant_coins(self, user_id: str, amount: int, *, now: dt.datetime) -> int:
        """Create the balance row if needed and add ``amount``; returns the new balance."""

        with self.transaction() as conn:
            self._ensure_balance(conn, user_id, now)
            conn.execute(
                "UPDATE user_balances SET balance = balance + ?, updated_at = ? WHERE user_id = ?",
                (amount, isoformat(now), user_id),
            )
            row = conn.execute(
                "SELECT balance FROM user_balances WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row[0])

    def _ensure_balance(self, conn: sqlite3.Connection, user_id: str, now: dt.datetime) -> None:
        conn.execute(
            """
            INSERT INTO user_balances(user_id, balance, updated_at) VALUES(?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, self._starting_balance, isoformat(now)),
        )

    def place_bet(
        self,
        *,
        user_id: str,
        market_id: int,
        outcome: Outcome,
        stake: int,
        now: dt.datetime,
        fee_rate: float = FEE_RATE,
        min_fee: int = MIN_FEE,
        min_stake: int = MIN_STAKE,
    ) -> MarketPosition:
        """Debit, insert the position and reprice the pool in one transaction."""

        if stake < min_stake:
            raise InvalidStake(f"minimum stake is {min_stake}")
        stamp = isoformat(now)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM prediction_markets WHERE market_id = ?", (market_id,)
            ).fetchone()
            if row is None:
                raise MarketNotFound(f"market {market_id} does not exist")
            market = _row_to_market(row)
            if not market.accepts_bets(now):
                raise MarketClosed(f"market {market_id} is {market.status.value} and not accepting bets")
            self._ensure_balance(conn, user_id, now)
            quote = quote_bet(stake, market.odds_for(outcome), rate=fee_rate, minimum=min_fee)
            debit = conn.execute(
                """
                UPDATE user_balances
                SET balance = balance - ?, total_wagered = total_wagered + ?,
                    total_fees_paid = total_fees_paid + ?, updated_at = ?
                WHERE user_id = ? AND balance >= ?
                """,
                (stake, stake, quote.fee_amount, stamp, user_id, stake),
            )
            if debit.rowcount != 1:
                raise InsufficientBalance(f"user {user_id} cannot cover a stake of {stake}")
            cursor = conn.execute(
                """
                INSERT INTO market_positions(
                    market_id, user_id, outcome, stake, fee_amount, net_stake,
                    odds_at_placement, potential_payout, status, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    market_id,
                    user_id,
                    outcome.value,
                    stake,
                    quote.fee_amount,
                    quote.net_stake,
                    quote.odds,
                    quote.potential_payout,
                    stamp,
                ),
            )
            position_id = int(cursor.lastrowid or 0)
            total_yes = market.total_staked_yes + (quote.net_stake if outcome is Outcome.YES else 0)
            total_no = market.total_staked_no + (quote.net_stake if outcome is Outcome.NO else 0)
            pool = total_yes + total_no
            conn.execute(
                """
                UPDATE prediction_markets
                SET total_staked_yes = ?, total_staked_no = ?, odds_yes = ?, odds_no = ?
                WHERE market_id = ?
                """,
                (total_yes, total_no, pool_odds(total_yes, pool), pool_odds(total_no, pool), market_id),
            )
        return MarketPosition(
            position_id=position_id,
            market_id=market_id,
            user_id=user_id,
            outcome=outcome,
            stake=stake,
            fee_amount=quote.fee_amount,
            net_stake=quote.net_stake,
            odds_at_placement=quote.odds,
            potential_payout=quote.potential_payout,
        )

    def resolve_market(
        self,
        market_id: int,
        *,
        winning_outcome: Outcome | None,
        action: ResolutionAction,
        actor: str | None,
        now: dt.datetime,
    ) -> ResolutionSummary:
        """Settle every pending position and mark the market resolved, atomically."""

        stamp = isoformat(now)
        summary = ResolutionSummary(market_id=market_id, winning_outcome=winning_outcome, action=action)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM prediction_markets WHERE market_id = ?", (market_id,)
            ).fetchone()
            if row is None:
                raise MarketNotFound(f"market {market_id} does not exist")
            if row["status"] == MarketStatus.RESOLVED.value:
                raise MarketAlreadyResolved(f"market {market_id} is already resolved")
            positions = [
                _row_to_position(position)
                for position in conn.execute(
                    "SELECT * FROM market_positions WHERE market_id = ? AND status = 'pending'",
                    (market_id,),
                ).fetchall()
            ]
            for position in positions:
                status, payout = settle_position(position, winning_outcome)
                cursor = conn.execute(
                    """
                    UPDATE market_positions SET status = ?, payout_amount = ?, settled_at = ?
                    WHERE position_id = ? AND status = 'pending'
                    """,
                    (status.value, payout, stamp, position.position_id),
                )
                if cursor.rowcount != 1:
                    raise PositionAlreadySettled(f"position {position.position_id} changed during resolution")
                if payout:
                    conn.execute(
                        """
                        UPDATE user_balances
                        SET balance = balance + ?, total_won = total_won + ?, updated_at = ?
                        WHERE user_id = ?
                        """,
                        (payout, payout if status is PositionStatus.WON else 0, stamp, position.user_id),
                    )
                summary.positions_settled += 1
                summary.total_paid += payout
                if status is PositionStatus.WON:
                    summary.won += 1
                elif status is PositionStatus.LOST:
                    summary.lost += 1
                else:
                    summary.voided += 1
            cursor = conn.execute(
                """
                UPDATE prediction_markets
                SET status = 'resolved', winning_outcome = ?, resolved_at = ?
                WHERE market_id = ? AND status != 'resolved'
                """,
                (winning_outcome.value if winning_outcome else None, stamp, market_id),
            )
            if cursor.rowcount != 1:
                raise MarketAlreadyResolved(f"market {market_id} is already resolved")
            conn.execute(
                """
                INSERT INTO market_audit_log(
                    market_id, action, actor, winning_outcome, positions_settled, total_paid, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    market_id,
                    action.value,
                    actor,
                    winning_outcome.value if winning_outcome else None,
                    summary.positions_settled,
                    summary.total_paid,
                    stamp,
                ),
            )
        return summary

    def close_expired_markets(self, now: dt.datetime) -> list[PredictionMarket]:
        stamp = isoformat(now)
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM prediction_markets WHERE status = 'open' AND closes_at < ? ORDER BY market_id",
                (stamp,),
            ).fetchall()
            closed: list[PredictionMarket] = []
            for row in rows:
                cursor = conn.execute(
                    "UPDATE prediction_markets SET status = 'closed' WHERE market_id = ? AND status = 'open'",
                    (row["market_id"],),
                )
                if cursor.rowcount == 1:
                    market = _row_to_market(row)
                    market.status = MarketStatus.CLOSED
                    closed.append(market)
        return closed

    def close_market(self, market_id: int, *, actor: str | None, now: dt.datetime) -> PredictionMarket:
        """Close one open market ahead of its deadline and log who did it."""

        stamp = isoformat(now)
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM prediction_markets WHERE market_id = ?", (market_id,)).fetchone()
            if row is None:
                raise MarketNotFound(f"market {market_id} does not exist")
            cursor = conn.execute(
                "UPDATE prediction_markets SET status = 'closed' WHERE market_id = ? AND status = 'open'",
                (market_id,),
            )
            if cursor.rowcount != 1:
                if row["status"] == MarketStatus.RESOLVED.value:
                    raise MarketAlreadyResolved(f"market {market_id} is already resolved")
                raise MarketClosed(f"market {market_id} is {row['status']} and cannot be closed")
            conn.execute(
                """
                INSERT INTO market_audit_log(
                    market_id, action, actor, winning_outcome, positions_settled, total_paid, created_at
                ) VALUES(?, ?, ?, NULL, 0, 0, ?)
                """,
                (market_id, ResolutionAction.CLOSE.value, actor, stamp),
            )
        market = _row_to_market(row)
        market.status = MarketStatus.CLOSED
        return market

    def market_audit_log(self, market_id: int) -> list[dict[str, Any]]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM market_audit_log WHERE market_id = ? ORDER BY row_id", (market_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # calibration weights
    # ------------------------------------------------------------------
    def replace_performance_weights(self, records: Sequence[Mapping[str, Any]]) -> int:
        """Replace the whole weight table with ``records`` in one transaction."""

        columns = (
            "market",
            "side",
            "line",
            "league_key",
            "wins",
            "losses",
            "pushes",
            "sample_size",
            "raw_win_rate",
            "roi",
            "bayes_win_rate",
            "weight",
            "lookback_days",
            "computed_at",
        )
        payload = [tuple(record[column] for column in columns) for record in records]
        with self.transaction() as conn:
            conn.execute("DELETE FROM performance_weights")
            conn.executemany(
                f"""
                INSERT INTO performance_weights({', '.join(columns)})
                VALUES({_placeholders(len(columns))})
                """,
                payload,
            )
        return len(payload)

    def load_performance_weights(self) -> list[dict[str, Any]]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM performance_weights ORDER BY market, side, line, league_key"
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # job coordination
    # ------------------------------------------------------------------
    def acquire_job_lock(self, job_name: str, holder: str, *, now: dt.datetime, ttl: dt.timedelta) -> bool:
        """Take the named mutex unless a live holder already owns it."""

        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO job_locks(job_name, holder, acquired_at, expires_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    holder=excluded.holder,
                    acquired_at=excluded.acquired_at,
                    expires_at=excluded.expires_at
                WHERE job_locks.expires_at <= excluded.acquired_at
                """,
                (job_name, holder, isoformat(now), isoformat(now + ttl)),
            )
            acquired = cursor.rowcount == 1
        return acquired

    def release_job_lock(self, job_name: str, holder: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM job_locks WHERE job_name = ? AND holder = ?", (job_name, holder)
            )
            released = cursor.rowcount == 1
        return released

    def record_job_run(self, record: Mapping[str, Any]) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO job_runs(
                    job, status, started_at, finished_at, window_start, window_end,
                    scanned, succeeded, failed, skipped, duration_ms, cursor, errors, details
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["job"],
                    record["status"],
                    record["started_at"],
                    record["finished_at"],
                    record.get("window_start"),
                    record.get("window_end"),
                    record.get("scanned", 0),
                    record.get("succeeded", 0),
                    record.get("failed", 0),
                    record.get("skipped", 0),
                    record.get("duration_ms", 0),
                    record.get("cursor"),
                    json.dumps(list(record.get("errors") or [])),
                    json.dumps(dict(record.get("details") or {}), sort_keys=True, default=str),
                ),
            )

    def job_runs(self, job: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM job_runs"
        params: list[object] = []
        if job:
            query += " WHERE job = ?"
            params.append(job)
        query += " ORDER BY row_id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        records = []
        for row in rows:
            record = dict(row)
            record["errors"] = json.loads(record["errors"] or "[]")
            record["details"] = json.loads(record["details"] or "{}")
            records.append(record)
        return records


def _row_to_fixture(row: sqlite3.Row) -> Fixture:
    return Fixture(
        fixture_id=int(row["fixture_id"]),
        league_id=int(row["league_id"]),
        kickoff_at=parse_timestamp(row["kickoff_at"]),
        home_team_id=int(row["home_team_id"]),
        away_team_id=int(row["away_team_id"]),
        season=row["season"],
        status=row["status"],
    )


def _row_to_result(row: sqlite3.Row) -> FixtureResult:
    values = {column: row[column] for column in _RESULT_COLUMNS}
    values["kickoff_at"] = parse_timestamp(values["kickoff_at"])
    return FixtureResult(**values)


def _row_to_leg(row: sqlite3.Row) -> TicketLeg:
    return TicketLeg(
        leg_id=int(row["leg_id"]),
        ticket_id=row["ticket_id"],
        position=int(row["position"]),
        fixture_id=int(row["fixture_id"]),
        league_id=row["league_id"],
        kickoff_at=parse_timestamp(row["kickoff_at"]),
        market=row["market"],
        side=row["side"],
        line=float(row["line"]) if row["line"] is not None else None,
        odds=float(row["odds"]),
        model_probability=row["model_probability"],
        status=LegStatus(row["status"]),
        actual_value=row["actual_value"],
        settled_at=_optional_timestamp(row["settled_at"]),
        diagnostic=row["diagnostic"],
    )


def _row_to_market(row: sqlite3.Row) -> PredictionMarket:
    spec = None
    if row["market_kind"]:
        spec = parse_market(row["market_kind"], row["market_side"], row["market_line"])
    winning = row["winning_outcome"]
    return PredictionMarket(
        market_id=int(row["market_id"]),
        title=row["title"],
        status=MarketStatus(row["status"]),
        closes_at=parse_timestamp(row["closes_at"]),
        spec=spec,
        fixture_id=row["fixture_id"],
        odds_yes=float(row["odds_yes"]),
        odds_no=float(row["odds_no"]),
        total_staked_yes=int(row["total_staked_yes"]),
        total_staked_no=int(row["total_staked_no"]),
        winning_outcome=Outcome(winning) if winning else None,
        resolved_at=_optional_timestamp(row["resolved_at"]),
    )


def _row_to_position(row: sqlite3.Row) -> MarketPosition:
    return MarketPosition(
        position_id=int(row["position_id"]),
        market_id=int(row["market_id"]),
        user_id=row["user_id"],
        outcome=Outcome(row["outcome"]),
        stake=int(row["stake"]),
        fee_amount=int(row["fee_amount"]),
        net_stake=int(row["net_stake"]),
        odds_at_placement=float(row["odds_at_placement"]),
        potential_payout=int(row["potential_payout"]),
        status=PositionStatus(row["status"]),
        payout_amount=int(row["payout_amount"]),
        settled_at=_optional_timestamp(row["settled_at"]),
    )


__all__ = ["GLOBAL_LEAGUE_KEY", "ResultStore", "SQLiteStore"]
