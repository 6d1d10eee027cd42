"""Reusable odds and probability helpers."""

from __future__ import annotations

import math
from typing import Iterable

OddsValue = int | float | str

__all__ = [
    "OddsValue",
    "clamp",
    "combined_odds",
    "edge_from_decimal",
    "implied_probability_from_decimal",
    "normalise_decimal_odds",
    "product_probability",
]


def clamp(value: float, lower: float, upper: float) -> float:
    """Bound ``value`` to ``[lower, upper]``."""

    if lower > upper:
        raise ValueError("lower bound exceeds upper bound")
    return max(lower, min(upper, value))


def normalise_decimal_odds(value: OddsValue) -> float:
    """Coerce a decimal price (``"2.10"``, ``2.1``) into a float above 1.0."""

    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValueError("Empty odds value")
        value = float(stripped)
    price = float(value)
    if not math.isfinite(price) or price <= 1.0:
        raise ValueError("Decimal odds must exceed 1.0")
    return price


def implied_probability_from_decimal(decimal_odds: OddsValue) -> float:
    """Return the bookmaker-implied probability ``1/odds``."""

    return 1.0 / normalise_decimal_odds(decimal_odds)


def edge_from_decimal(probability: float, decimal_odds: OddsValue) -> float:
    """Model probability minus the implied probability of ``decimal_odds``."""

    return probability - implied_probability_from_decimal(decimal_odds)


def combined_odds(prices: Iterable[float]) -> float:
    """Accumulator price of independent legs."""

    total = 1.0
    for price in prices:
        total *= normalise_decimal_odds(price)
    return total


def product_probability(probabilities: Iterable[float]) -> float:
    """Joint probability of independent legs."""

    total = 1.0
    for probability in probabilities:
        total *= probability
    return total
