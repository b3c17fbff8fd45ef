"""Decimal helpers for token and price amounts (two decimal places)."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_amount(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def as_float(value: Optional[Decimal]) -> Optional[float]:
    if value is None:
        return None
    return float(value)
