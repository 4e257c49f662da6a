"""
Fixed-point money helpers.

Amounts travel through the API and the fee engine as Decimal quantized to
cents and are persisted as integer minor units.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from app.core.exceptions import InvalidAmount

CENT = Decimal("0.01")

# Largest amount any single operation may carry
MAX_AMOUNT = Decimal("1000000000.00")

Number = Union[Decimal, int, str]


def quantize(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Number) -> Decimal:
    """
    Parse a caller-supplied amount.

    Floats are rejected outright; strings and ints are converted exactly.
    More than two decimal places is an error, not a rounding opportunity,
    and so is anything beyond MAX_AMOUNT.
    """
    if isinstance(value, float):
        raise InvalidAmount("Amounts must be decimal values, not floats")
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidAmount(amount=str(value))
        if abs(amount) > MAX_AMOUNT:
            raise InvalidAmount(f"Amounts cannot exceed ${MAX_AMOUNT}", amount=str(value))
        cents = amount.quantize(CENT)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(amount=str(value))
    if amount != cents:
        raise InvalidAmount("Amounts cannot have more than two decimal places", amount=amount)
    return cents


def to_cents(amount: Decimal) -> int:
    return int(quantize(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
