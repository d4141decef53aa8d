"""
utils/money.py - Decimal helpers for cash amounts

All money is carried as ``Decimal`` quantized to 2 places (ROUND_HALF_UP).
Floats only appear at the JSON boundary.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without rounding (floats go through str)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOperation(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value.strip())
    raise InvalidOperation(f"Cannot convert {type(value).__name__} to Decimal")


def quantize(value: Optional[Number]) -> Decimal:
    """Round to cents. ``None`` counts as zero."""
    if value is None:
        return ZERO
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_change(order_total: Number, collected_amount: Number) -> Decimal:
    """Change owed to the customer; never negative."""
    change = quantize(to_decimal(collected_amount) - to_decimal(order_total))
    return max(ZERO, change)


def as_float(value: Optional[Number]) -> Optional[float]:
    """JSON-friendly float, rounded to cents first."""
    if value is None:
        return None
    return float(quantize(value))
