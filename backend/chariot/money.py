# Overview: Integer-cents money helpers shared by pricing, rollup and ledger code.

"""
Money helpers.

All currency values are integer cents. Percentages are integer basis points
(825 = 8.25%). Decimal input from API payloads is parsed through
decimal.Decimal and converted to integers at the boundary; nothing in here
touches float arithmetic.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Sequence

BPS_PER_UNIT = 10_000  # 100.00%
HUNDREDTHS = 100


class MoneyError(ValueError):
    """Raised when a monetary or percentage value cannot be represented exactly."""


def divide_round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounding half away from zero."""
    if denominator <= 0:
        raise MoneyError("denominator must be positive")
    if numerator < 0:
        return -divide_round_half_up(-numerator, denominator)
    quotient, remainder = divmod(numerator, denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return quotient


def apply_percent(base_cents: int, bps: int) -> int:
    """
    Return `bps` basis points of `base_cents`, rounded half-up to the cent.

    apply_percent(10000, 800) == 800
    apply_percent(1, 5000) == 1
    """
    if not bps or not base_cents:
        return 0
    return divide_round_half_up(base_cents * bps, BPS_PER_UNIT)


def allocate(total_cents: int, weights: Sequence[int]) -> list[int]:
    """
    Split `total_cents` proportionally to `weights`.

    Parts always sum to `total_cents`. Each share is floored first and the
    leftover cents go one each to the first weighted items, in order.
    With all-zero weights the total is split evenly the same way.
    """
    if total_cents < 0:
        raise MoneyError("cannot allocate a negative amount")
    if any(w < 0 for w in weights):
        raise MoneyError("allocation weights must be non-negative")
    if not weights:
        if total_cents:
            raise MoneyError("cannot allocate a non-zero amount across no parts")
        return []

    weight_sum = sum(weights)
    if weight_sum == 0:
        weights = [1] * len(weights)
        weight_sum = len(weights)

    shares = [total_cents * w // weight_sum for w in weights]
    remainder = total_cents - sum(shares)
    for idx, weight in enumerate(weights):
        if remainder == 0:
            break
        if weight:
            shares[idx] += 1
            remainder -= 1
    return shares


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, bool):
        raise MoneyError(f"{field} must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (str, float)):
        try:
            # str() keeps the literal the client sent (0.1 -> "0.1")
            return Decimal(str(value).strip())
        except InvalidOperation:
            raise MoneyError(f"{field} must be a number")
    raise MoneyError(f"{field} must be a number")


def _scale_exact(value, factor: int, field: str) -> int:
    number = _to_decimal(value, field)
    if not number.is_finite():
        raise MoneyError(f"{field} must be finite")
    scaled = number * factor
    if scaled != scaled.to_integral_value():
        raise MoneyError(f"{field} supports at most two decimal places")
    return int(scaled)


def percent_to_bps(value, field: str = "percent") -> int:
    """Parse a percent ("8.25", 8, Decimal("8.25")) into basis points (825)."""
    if value is None:
        return 0
    return _scale_exact(value, 100, field)


def bps_to_percent(bps: int | None) -> str:
    """Render basis points as a two-decimal percent string (825 -> "8.25")."""
    bps = bps or 0
    sign = "-" if bps < 0 else ""
    whole, frac = divmod(abs(bps), 100)
    return f"{sign}{whole}.{frac:02d}"


def hundredths(value, field: str = "quantity") -> int:
    """Parse a quantity with up to two decimals into integer hundredths (1.5 -> 150)."""
    if value is None:
        return 0
    return _scale_exact(value, HUNDREDTHS, field)


def from_hundredths(value: int) -> Decimal:
    """Inverse of hundredths(): 150 -> Decimal("1.50")."""
    return (Decimal(value) / HUNDREDTHS).quantize(Decimal("0.01"))
