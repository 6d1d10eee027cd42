from __future__ import annotations

import pytest

from pitchline.betting.errors import UnsupportedMarket
from pitchline.betting.markets import (
    MarketKind,
    MarketSpec,
    Side,
    actual_value,
    parse_legacy_market_type,
    parse_market,
)


@pytest.mark.parametrize(
    ("market", "side", "line", "expected"),
    [
        ("Over/Under", "Over", "2.5", MarketSpec(MarketKind.GOALS, Side.OVER, 2.5)),
        ("total_corners", "u", 9.5, MarketSpec(MarketKind.CORNERS, Side.UNDER, 9.5)),
        ("Both Teams To Score", "Yes", None, MarketSpec(MarketKind.BTTS, Side.YES)),
        ("1X2", "x", None, MarketSpec(MarketKind.RESULT, Side.DRAW)),
        ("bookings", "over", 4.5, MarketSpec(MarketKind.CARDS, Side.OVER, 4.5)),
    ],
)
def test_parse_market_aliases(market, side, line, expected) -> None:
    assert parse_market(market, side, line) == expected


def test_parse_market_ignores_line_for_non_totals() -> None:
    spec = parse_market("btts", "no", 2.5)
    assert spec.line is None


@pytest.mark.parametrize(
    ("market", "side", "line"),
    [
        ("handicap", "over", 1.5),
        ("goals", "home", 2.5),
        ("goals", "over", None),
        ("goals", "over", "abc"),
        ("result", "over", None),
    ],
)
def test_parse_market_rejects_unknown_shapes(market, side, line) -> None:
    with pytest.raises(UnsupportedMarket):
        parse_market(market, side, line)


def test_market_spec_validation() -> None:
    with pytest.raises(UnsupportedMarket):
        MarketSpec(MarketKind.GOALS, Side.OVER, -1.0)
    with pytest.raises(UnsupportedMarket):
        MarketSpec(MarketKind.BTTS, Side.YES, 0.5)


def test_market_keys_and_opposites() -> None:
    over = MarketSpec(MarketKind.GOALS, Side.OVER, 2.5)
    assert over.key == "goals|over|2.5"
    assert over.label() == "goals over 2.5"
    assert over.line_key == 2.5
    assert over.opposite() == MarketSpec(MarketKind.GOALS, Side.UNDER, 2.5)

    btts = MarketSpec(MarketKind.BTTS, Side.YES)
    assert btts.key == "btts|yes|"
    assert btts.line_key == -1.0
    assert btts.opposite() == MarketSpec(MarketKind.BTTS, Side.NO)

    assert MarketSpec(MarketKind.RESULT, Side.HOME).opposite() is None


@pytest.mark.parametrize(
    ("legacy", "expected"),
    [
        ("over_2.5", MarketSpec(MarketKind.GOALS, Side.OVER, 2.5)),
        ("under_1.5", MarketSpec(MarketKind.GOALS, Side.UNDER, 1.5)),
        ("btts", MarketSpec(MarketKind.BTTS, Side.YES)),
        ("Home Win", MarketSpec(MarketKind.RESULT, Side.HOME)),
        ("draw", MarketSpec(MarketKind.RESULT, Side.DRAW)),
        ("away_win", MarketSpec(MarketKind.RESULT, Side.AWAY)),
    ],
)
def test_parse_legacy_market_type(legacy, expected) -> None:
    assert parse_legacy_market_type(legacy) == expected


def test_parse_legacy_market_type_rejects_free_text() -> None:
    with pytest.raises(UnsupportedMarket):
        parse_legacy_market_type("Will there be a red card?")


def test_actual_value_per_kind(make_result, now) -> None:
    result = make_result(1, kickoff_at=now, goals=(2, 1), corners=(5, 4))
    assert actual_value(MarketSpec(MarketKind.GOALS, Side.OVER, 2.5), result) == 3.0
    assert actual_value(MarketSpec(MarketKind.CORNERS, Side.UNDER, 9.5), result) == 9.0
    assert actual_value(MarketSpec(MarketKind.BTTS, Side.YES), result) == 1.0
    assert actual_value(MarketSpec(MarketKind.RESULT, Side.HOME), result) == 1.0

    clean_sheet = make_result(2, kickoff_at=now, goals=(0, 2))
    assert actual_value(MarketSpec(MarketKind.BTTS, Side.YES), clean_sheet) == 0.0
    assert actual_value(MarketSpec(MarketKind.RESULT, Side.AWAY), clean_sheet) == -2.0


def test_actual_value_missing_component(make_result, now) -> None:
    result = make_result(1, kickoff_at=now, corners=None)
    assert actual_value(MarketSpec(MarketKind.CORNERS, Side.OVER, 9.5), result) is None
    assert actual_value(MarketSpec(MarketKind.GOALS, Side.OVER, 1.5), result) == 2.0
