"""Monetary helpers.

Rounding rules:
- Amounts are rounded to 2 decimals with ROUND_HALF_UP
- Rounding happens once per component, after its final computation
- Intermediate arithmetic keeps full Decimal precision
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    """Round amount to 2 decimal places (cents)."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """Convert a configuration or input value to Decimal.

    Floats go through ``str`` so that 0.1 stays 0.1. Booleans are rejected
    because they are almost always a configuration mistake.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError(f"Boolean {value!r} is not a monetary value")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as e:
            raise TypeError(f"{value!r} is not a number") from e
    raise TypeError(f"{value!r} is not a number")


def optional_decimal(value: Any) -> Decimal | None:
    """Convert to Decimal, keeping None."""
    if value is None:
        return None
    return to_decimal(value)


def percent_of(base: Decimal, rate_percentage: Decimal) -> Decimal:
    """``base * rate / 100`` without rounding."""
    return base * rate_percentage / HUNDRED
