"""
Money helpers.

Amounts inside the engine are `Decimal` in the major unit (naira),
always rounded to two places with ROUND_HALF_UP. The payment gateway
and the SQL store both work in integer minor units (kobo); conversion
happens only at those two boundaries.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Union

from pydantic import AfterValidator

TWO_PLACES = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100


def round_money(amount: Union[Decimal, int, float, str]) -> Decimal:
    """Round to two decimal places (ROUND_HALF_UP)."""
    return Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Union[Decimal, int, str]) -> int:
    """Major unit -> integer minor unit, e.g. Decimal('1500.50') -> 150050."""
    return int((round_money(amount) * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def to_major_units(amount_minor: int) -> Decimal:
    """Integer minor unit -> major unit, e.g. 150050 -> Decimal('1500.50')."""
    return round_money(Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR)


Money = Annotated[Decimal, AfterValidator(round_money)]
