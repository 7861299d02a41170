"""Decimal helpers for monetary amounts.

Amounts are persisted as floats, but every calculation converts through
``str`` into ``Decimal`` first so that binary rounding never leaks into a
total. Rounding to cents happens once, when a final figure is produced.
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_float(value) -> float:
    """Quantize and convert for storage in a protean Float field."""
    return float(quantize(value))


def same_amount(left, right) -> bool:
    return quantize(left) == quantize(right)
