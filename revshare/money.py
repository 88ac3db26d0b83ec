from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("1")


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_cents(value: Union[int, float, str, Decimal]) -> int:
    """Round a fractional cent amount to whole cents, half away from zero."""
    return int(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def percent_of(base_cents: int, pct: Union[float, str, Decimal]) -> int:
    return round_cents(Decimal(base_cents) * to_decimal(pct))
