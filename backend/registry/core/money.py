"""Decimal helpers for monetary amounts (two-place precision)."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from registry.core.errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Normalize a stored or computed amount to a cent-quantized Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal:
    """Validate a client-supplied contribution amount.

    Accepts ints, floats, Decimals and numeric strings. Rejects booleans,
    non-finite values, non-positive values and sub-cent precision.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(value) from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(value)
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation:
        raise InvalidAmount(value, reason="Amount is too large") from None
    if amount != quantized:
        raise InvalidAmount(value, reason="Amount must have at most two decimal places")
    return quantized
