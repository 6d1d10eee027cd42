"""Core record types shared by the store, the aggregator and settlement."""

from __future__ import annotations

import dataclasses
import datetime as dt
from typing import Any, Mapping

from ..utils_date import ensure_utc, parse_timestamp

FINAL_STATUSES = frozenset({"FT", "AET", "PEN"})
# Awarded (AWD) and walkover (WO) scores are set administratively, not played, so the
# recorded stats say nothing about the markets and legs on them void like a cancellation.
CANCELLED_STATUSES = frozenset({"CANC", "ABD", "AWD", "WO"})

# Count metrics tracked per side; ``goals`` drives BTTS and 1X2 as well.
METRICS: tuple[str, ...] = ("goals", "corners", "cards", "fouls", "offsides")


@dataclasses.dataclass(slots=True)
class Fixture:
    """A scheduled match known to the system, with or without a result."""

    fixture_id: int
    league_id: int
    kickoff_at: dt.datetime
    home_team_id: int
    away_team_id: int
    season: int | None = None
    status: str = "NS"

    def __post_init__(self) -> None:
        self.kickoff_at = ensure_utc(self.kickoff_at)


@dataclasses.dataclass(slots=True)
class FixtureResult:
    """One match's observed facts.

    Every stat pair is independently optional: providers routinely omit
    corners or fouls for lower leagues, and a missing value must never be
    read as zero.
    """

    fixture_id: int
    league_id: int
    kickoff_at: dt.datetime
    status: str
    home_team_id: int
    away_team_id: int
    goals_home: int | None = None
    goals_away: int | None = None
    corners_home: int | None = None
    corners_away: int | None = None
    cards_home: int | None = None
    cards_away: int | None = None
    fouls_home: int | None = None
    fouls_away: int | None = None
    offsides_home: int | None = None
    offsides_away: int | None = None

    def __post_init__(self) -> None:
        self.kickoff_at = ensure_utc(self.kickoff_at)
        self.status = self.status.upper()

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status in CANCELLED_STATUSES

    def pair(self, metric: str) -> tuple[int | None, int | None]:
        """Return the ``(home, away)`` values for ``metric``."""

        if metric not in METRICS:
            raise KeyError(metric)
        return getattr(self, f"{metric}_home"), getattr(self, f"{metric}_away")

    def total(self, metric: str) -> int | None:
        """Combined value, or ``None`` when either side is missing."""

        home, away = self.pair(metric)
        if home is None or away is None:
            return None
        return home + away

    def involves(self, team_id: int) -> bool:
        return team_id in (self.home_team_id, self.away_team_id)

    def perspective(self, team_id: int, metric: str) -> tuple[int | None, int | None]:
        """Return ``(for, against)`` values for ``team_id``."""

        home, away = self.pair(metric)
        if team_id == self.home_team_id:
            return home, away
        if team_id == self.away_team_id:
            return away, home
        raise ValueError(f"team {team_id} did not play fixture {self.fixture_id}")

    def to_record(self) -> dict[str, Any]:
        record = dataclasses.asdict(self)
        record["kickoff_at"] = self.kickoff_at.isoformat()
        return record

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FixtureResult":
        """Build a result from a flat mapping, tolerating absent stat keys."""

        def _optional_int(key: str) -> int | None:
            value = payload.get(key)
            if value is None or value == "":
                return None
            return int(value)

        stats = {
            f"{metric}_{side}": _optional_int(f"{metric}_{side}")
            for metric in METRICS
            for side in ("home", "away")
        }
        return cls(
            fixture_id=int(payload["fixture_id"]),
            league_id=int(payload["league_id"]),
            kickoff_at=parse_timestamp(payload["kickoff_at"]),
            status=str(payload.get("status") or "NS"),
            home_team_id=int(payload["home_team_id"]),
            away_team_id=int(payload["away_team_id"]),
            **stats,
        )


__all__ = [
    "CANCELLED_STATUSES",
    "FINAL_STATUSES",
    "METRICS",
    "Fixture",
    "FixtureResult",
]
