from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from .exceptions import ValidationError
from .models import CommissionSplit, ZERO


MINOR_UNIT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Round to currency minor units, halves away from zero."""
    return Decimal(str(value)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def normalize_rate(rate: Number) -> Decimal:
    """Accept 0.65 or 65 for a 65% rate."""
    value = Decimal(str(rate))
    if value < 0:
        raise ValidationError(f"Commission rate cannot be negative: {rate}")
    if value > 1:
        value = value / Decimal("100")
    if value > 1:
        raise ValidationError(f"Commission rate cannot exceed 100%: {rate}")
    return value


def compute_commission(purchase_amount: Number, rate: Number) -> Decimal:
    amount = Decimal(str(purchase_amount))
    if amount <= 0:
        return to_money(ZERO)
    return to_money(amount * normalize_rate(rate))


def compute_commissions(purchase_amount: Number, tier1_rate: Number, tier2_rate: Number) -> CommissionSplit:
    """
    Split a purchase into the direct referrer's and the second-tier referrer's commission.

    A zero or negative purchase yields zero commissions rather than an error.
    """
    return CommissionSplit(
        tier1=compute_commission(purchase_amount, tier1_rate),
        tier2=compute_commission(purchase_amount, tier2_rate),
    )
