"""
Monetary Amounts

Amounts travel through the engine as integer minor units so sums are exact;
Decimal with two places is used at the edges.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENTS = Decimal("0.01")
MINOR_PER_MAJOR = 100


def to_minor_units(value: Union[Decimal, int, float, str]) -> int:
    """Convert a major-unit amount (e.g. Decimal('12.34')) to minor units (1234)"""
    amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return int(amount * MINOR_PER_MAJOR)


def from_minor_units(value: int) -> Decimal:
    """Convert minor units back to a two-place Decimal"""
    return (Decimal(int(value)) / MINOR_PER_MAJOR).quantize(CENTS)


def average_minor_units(total: int, count: int) -> int:
    """Average in minor units, rounded half up; 0 when there is nothing to average"""
    if count <= 0:
        return 0
    quotient = (Decimal(int(total)) / Decimal(int(count))).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(quotient)
