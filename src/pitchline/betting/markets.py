"""Typed market descriptors.

Markets arrive from odds feeds and legacy prediction-market rows as loose
strings (``"Over/Under"``, ``"over_2.5"``).  They are parsed exactly once,
into a :class:`MarketSpec`, and every later stage (probability estimation,
ticket hashing, settlement) dispatches on the enum rather than on text.
"""

from __future__ import annotations

import dataclasses
import enum
import math
import re

from .errors import UnsupportedMarket
from .models import FixtureResult


class MarketKind(str, enum.Enum):
    GOALS = "goals"
    CORNERS = "corners"
    CARDS = "cards"
    FOULS = "fouls"
    OFFSIDES = "offsides"
    BTTS = "btts"
    RESULT = "result"

    @property
    def is_total(self) -> bool:
        return self in TOTAL_KINDS


class Side(str, enum.Enum):
    OVER = "over"
    UNDER = "under"
    YES = "yes"
    NO = "no"
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


TOTAL_KINDS = frozenset(
    {
        MarketKind.GOALS,
        MarketKind.CORNERS,
        MarketKind.CARDS,
        MarketKind.FOULS,
        MarketKind.OFFSIDES,
    }
)

_SIDES_BY_KIND: dict[MarketKind, frozenset[Side]] = {
    **{kind: frozenset({Side.OVER, Side.UNDER}) for kind in TOTAL_KINDS},
    MarketKind.BTTS: frozenset({Side.YES, Side.NO}),
    MarketKind.RESULT: frozenset({Side.HOME, Side.DRAW, Side.AWAY}),
}

_KIND_ALIASES: dict[str, MarketKind] = {
    "goals": MarketKind.GOALS,
    "total_goals": MarketKind.GOALS,
    "over_under": MarketKind.GOALS,
    "totals": MarketKind.GOALS,
    "corners": MarketKind.CORNERS,
    "total_corners": MarketKind.CORNERS,
    "cards": MarketKind.CARDS,
    "bookings": MarketKind.CARDS,
    "total_cards": MarketKind.CARDS,
    "fouls": MarketKind.FOULS,
    "total_fouls": MarketKind.FOULS,
    "offsides": MarketKind.OFFSIDES,
    "total_offsides": MarketKind.OFFSIDES,
    "btts": MarketKind.BTTS,
    "both_teams_to_score": MarketKind.BTTS,
    "both_teams_score": MarketKind.BTTS,
    "result": MarketKind.RESULT,
    "1x2": MarketKind.RESULT,
    "match_result": MarketKind.RESULT,
    "match_winner": MarketKind.RESULT,
}

_SIDE_ALIASES: dict[str, Side] = {
    "over": Side.OVER,
    "o": Side.OVER,
    "under": Side.UNDER,
    "u": Side.UNDER,
    "yes": Side.YES,
    "y": Side.YES,
    "no": Side.NO,
    "n": Side.NO,
    "home": Side.HOME,
    "1": Side.HOME,
    "draw": Side.DRAW,
    "x": Side.DRAW,
    "away": Side.AWAY,
    "2": Side.AWAY,
}

_LEGACY_TOTAL = re.compile(r"^(over|under)_(\d+(?:\.\d+)?)$")


def _normalise_token(value: str) -> str:
    return re.sub(r"[\s/\-]+", "_", value.strip().lower())


@dataclasses.dataclass(frozen=True, slots=True)
class MarketSpec:
    """A market kind, the side being backed and the line for totals."""

    kind: MarketKind
    side: Side
    line: float | None = None

    def __post_init__(self) -> None:
        allowed = _SIDES_BY_KIND[self.kind]
        if self.side not in allowed:
            raise UnsupportedMarket(f"side '{self.side.value}' is not valid for {self.kind.value}")
        if self.kind.is_total:
            if self.line is None or not math.isfinite(self.line) or self.line < 0:
                raise UnsupportedMarket(f"{self.kind.value} markets need a non-negative line")
        elif self.line is not None:
            raise UnsupportedMarket(f"{self.kind.value} markets do not take a line")

    @property
    def key(self) -> str:
        return f"{self.kind.value}|{self.side.value}|{format_line(self.line)}"

    @property
    def line_key(self) -> float:
        """Line used in keyed storage; ``-1`` stands for markets without a line."""

        return -1.0 if self.line is None else float(self.line)

    def label(self) -> str:
        if self.kind.is_total:
            return f"{self.kind.value} {self.side.value} {format_line(self.line)}"
        return f"{self.kind.value} {self.side.value}"

    def opposite(self) -> "MarketSpec | None":
        """Complementary side for two-way markets."""

        mirror = {
            Side.OVER: Side.UNDER,
            Side.UNDER: Side.OVER,
            Side.YES: Side.NO,
            Side.NO: Side.YES,
        }
        if self.side not in mirror:
            return None
        return MarketSpec(self.kind, mirror[self.side], self.line)


def format_line(line: float | None) -> str:
    if line is None:
        return ""
    return f"{float(line):g}"


def parse_market(market: str | MarketKind, side: str | Side, line: float | str | None = None) -> MarketSpec:
    """Map loose market/side strings to a :class:`MarketSpec`."""

    kind = market if isinstance(market, MarketKind) else _KIND_ALIASES.get(_normalise_token(market))
    if kind is None:
        raise UnsupportedMarket(f"unknown market '{market}'")
    resolved_side = side if isinstance(side, Side) else _SIDE_ALIASES.get(_normalise_token(side))
    if resolved_side is None:
        raise UnsupportedMarket(f"unknown side '{side}'")
    parsed_line: float | None = None
    if kind.is_total and line is not None and line != "":
        try:
            parsed_line = float(line)
        except (TypeError, ValueError) as exc:
            raise UnsupportedMarket(f"invalid line '{line}'") from exc
    return MarketSpec(kind, resolved_side, parsed_line)


def parse_legacy_market_type(market_type: str) -> MarketSpec:
    """Map legacy prediction-market type strings onto typed markets.

    ``over_2.5``/``under_1.5`` become goals totals, ``btts`` is BTTS yes and
    ``home_win``/``draw``/``away_win`` are 1X2 sides.
    """

    token = _normalise_token(market_type)
    match = _LEGACY_TOTAL.match(token)
    if match:
        return MarketSpec(MarketKind.GOALS, Side(match.group(1)), float(match.group(2)))
    legacy = {
        "btts": MarketSpec(MarketKind.BTTS, Side.YES),
        "btts_no": MarketSpec(MarketKind.BTTS, Side.NO),
        "home_win": MarketSpec(MarketKind.RESULT, Side.HOME),
        "draw": MarketSpec(MarketKind.RESULT, Side.DRAW),
        "away_win": MarketSpec(MarketKind.RESULT, Side.AWAY),
    }
    try:
        return legacy[token]
    except KeyError as exc:
        raise UnsupportedMarket(f"unknown market type '{market_type}'") from exc


def actual_value(spec: MarketSpec, result: FixtureResult) -> float | None:
    """Observed value that settles ``spec``.

    Totals return the combined count, BTTS returns 1/0 and 1X2 returns the
    goal difference (home minus away).  ``None`` means a component stat is
    missing and the market cannot be scored.
    """

    if spec.kind.is_total:
        total = result.total(spec.kind.value)
        return None if total is None else float(total)
    home, away = result.pair("goals")
    if home is None or away is None:
        return None
    if spec.kind is MarketKind.BTTS:
        return 1.0 if home > 0 and away > 0 else 0.0
    return float(home - away)


__all__ = [
    "MarketKind",
    "MarketSpec",
    "Side",
    "TOTAL_KINDS",
    "actual_value",
    "format_line",
    "parse_legacy_market_type",
    "parse_market",
]
