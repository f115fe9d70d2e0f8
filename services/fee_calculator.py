"""
Fee Calculator

Pure functions that split a gross amount into platform fee, processing fee
and the net amount credited to a campaign.

Rounding policy: every fee is rounded to the currency minor unit (2 decimal
places) with ROUND_HALF_UP. The net amount is the exact remainder
(gross - processing - platform), so the three parts always add back up to
the gross amount.

Example (default Stripe schedule, 5% platform, 2.9% + 0.30 processing):
    calculate_fees(Decimal("50.00"), schedule)
    -> processing_fee 1.75, platform_fee 2.50, net_amount 45.75
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from services.exceptions import InvalidAmount, InvalidFeeSchedule

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert user input to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so 0.1 stays 0.1 instead of 0.1000000000000000055...
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Amount {value!r} is not a number")


def to_money(value: Number) -> Decimal:
    """Round to the currency minor unit (ROUND_HALF_UP)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Amount in minor units, as the payment processor expects it."""
    return int((to_money(value) * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / HUNDRED).quantize(CENT)


@dataclass(frozen=True)
class FeeSchedule:
    """Percentages are whole-number percent (5.0 means 5%)."""

    platform_fee_percent: Decimal
    processing_fee_percent: Decimal
    processing_fee_fixed: Decimal = Decimal("0")

    def __post_init__(self):
        for name in ("platform_fee_percent", "processing_fee_percent", "processing_fee_fixed"):
            raw = getattr(self, name)
            try:
                value = to_decimal(raw)
            except InvalidAmount:
                raise InvalidFeeSchedule(f"{name} must be a number, got {raw!r}")
            if not value.is_finite() or value < 0:
                raise InvalidFeeSchedule(f"{name} must be a non-negative number, got {raw!r}")
            # frozen dataclass: normalize through object.__setattr__
            object.__setattr__(self, name, value)

    def as_dict(self) -> dict:
        return {
            "platform_fee_percent": self.platform_fee_percent,
            "processing_fee_percent": self.processing_fee_percent,
            "processing_fee_fixed": self.processing_fee_fixed,
        }


@dataclass(frozen=True)
class FeeBreakdown:
    gross: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal

    @property
    def total_fees(self) -> Decimal:
        return self.platform_fee + self.processing_fee


def validate_amount(amount: Number) -> Decimal:
    """
    Check that amount is a positive, currency-scale number.

    Raises:
        InvalidAmount: not a number, <= 0, or more than 2 decimal places
    """
    value = to_decimal(amount)
    if not value.is_finite():
        raise InvalidAmount(f"Amount {amount!r} is not a finite number")
    if value <= 0:
        raise InvalidAmount(f"Amount must be greater than 0, got {value}")
    if value != value.quantize(CENT):
        raise InvalidAmount(f"Amount {value} has more than 2 decimal places")
    return value.quantize(CENT)


def calculate_fees(amount: Number, schedule: FeeSchedule) -> FeeBreakdown:
    """
    Split a gross amount according to a fee schedule.

    Args:
        amount: Gross amount in currency units (e.g. Decimal("50.00"))
        schedule: Validated FeeSchedule

    Returns:
        FeeBreakdown with platform_fee + processing_fee + net_amount == gross

    Raises:
        InvalidAmount: amount <= 0, not currency-scale, or smaller than its own fees
    """
    gross = validate_amount(amount)

    processing_fee = to_money(
        gross * schedule.processing_fee_percent / HUNDRED + schedule.processing_fee_fixed
    )
    platform_fee = to_money(gross * schedule.platform_fee_percent / HUNDRED)
    net_amount = gross - processing_fee - platform_fee

    if net_amount < 0:
        raise InvalidAmount(
            f"Amount {gross} does not cover fees ({processing_fee} processing + {platform_fee} platform)"
        )

    return FeeBreakdown(
        gross=gross,
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        net_amount=net_amount,
    )
