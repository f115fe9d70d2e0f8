"""
Platform Settings Service

Fee schedule and payout policy.

Sources (later wins):
1. Built-in defaults
2. Environment variables (loaded from .env by main.py)
3. Rows in the platform_settings table

Settings are validated when loaded. main.py loads them once at startup so a
bad value stops the service before it takes any money.
"""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import PlatformSetting, MANUAL_PAYOUT_METHODS
from services.exceptions import ConfigurationError, InvalidAmount, InvalidFeeSchedule
from services.fee_calculator import FeeSchedule, to_decimal, to_money

logger = logging.getLogger(__name__)

# setting key -> (environment variable, default)
SETTING_SOURCES = {
    "platform_fee_percentage": ("PLATFORM_FEE_PERCENTAGE", "5.0"),
    "stripe_processing_fee_percentage": ("STRIPE_PROCESSING_FEE_PERCENTAGE", "2.9"),
    "stripe_processing_fee_fixed": ("STRIPE_PROCESSING_FEE_FIXED", "0.30"),
    "payout_fee_percentage": ("PAYOUT_FEE_PERCENTAGE", "5.0"),
    "manual_payout_processing_fee_percentage": ("MANUAL_PAYOUT_PROCESSING_FEE_PERCENTAGE", "3.0"),
    "minimum_payout_amount": ("MINIMUM_PAYOUT_AMOUNT", "25.00"),
    "payout_holding_period_days": ("PAYOUT_HOLDING_PERIOD_DAYS", "7"),
    "auto_payout_enabled": ("AUTO_PAYOUT_ENABLED", "false"),
    "default_currency": ("DEFAULT_CURRENCY", "USD"),
}

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(frozen=True)
class PlatformSettings:
    platform_fee_percent: Decimal
    processing_fee_percent: Decimal
    processing_fee_fixed: Decimal
    payout_fee_percent: Decimal
    manual_processing_fee_percent: Decimal
    minimum_payout_amount: Decimal
    payout_holding_period_days: int
    auto_payout_enabled: bool
    currency: str = "USD"

    def donation_fee_schedule(self) -> FeeSchedule:
        """Schedule applied to incoming card donations."""
        return FeeSchedule(
            platform_fee_percent=self.platform_fee_percent,
            processing_fee_percent=self.processing_fee_percent,
            processing_fee_fixed=self.processing_fee_fixed,
        )

    def payout_fee_schedule(self, payment_method: str = "stripe_connect") -> FeeSchedule:
        """
        Schedule applied to a withdrawal.

        Stripe Connect transfers carry no processing fee; manual methods
        (bank transfer, PayPal, check) add the manual processing percentage.
        """
        processing = (
            self.manual_processing_fee_percent
            if payment_method in MANUAL_PAYOUT_METHODS
            else Decimal("0")
        )
        return FeeSchedule(
            platform_fee_percent=self.payout_fee_percent,
            processing_fee_percent=processing,
        )

    def public_dict(self) -> Dict:
        return {
            "platform_fee_percentage": str(self.platform_fee_percent),
            "stripe_processing_fee_percentage": str(self.processing_fee_percent),
            "stripe_processing_fee_fixed": str(self.processing_fee_fixed),
            "payout_fee_percentage": str(self.payout_fee_percent),
            "manual_payout_processing_fee_percentage": str(self.manual_processing_fee_percent),
            "minimum_payout_amount": str(self.minimum_payout_amount),
            "payout_holding_period_days": self.payout_holding_period_days,
            "auto_payout_enabled": self.auto_payout_enabled,
            "currency": self.currency,
        }


def _read_overrides(db: Session) -> Dict[str, str]:
    try:
        rows = db.query(PlatformSetting).filter(
            PlatformSetting.key.in_(list(SETTING_SOURCES))
        ).all()
    except SQLAlchemyError as e:
        # Table missing (fresh database) is not fatal: environment still applies
        logger.warning(f"Could not read platform_settings overrides: {e}")
        db.rollback()
        return {}
    return {row.key: row.value for row in rows}


def _non_negative(key: str, raw: str) -> Decimal:
    try:
        value = to_decimal(raw)
    except InvalidAmount:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", key=key)
    if not value.is_finite() or value < 0:
        raise ConfigurationError(f"{key} must be a non-negative number, got {raw!r}", key=key)
    return value


def _boolean(key: str, raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be true or false, got {raw!r}", key=key)


def load_settings(db: Optional[Session] = None) -> PlatformSettings:
    """
    Build validated PlatformSettings.

    Args:
        db: Optional session; when given, platform_settings rows override
            the environment

    Raises:
        ConfigurationError: any value missing, non-numeric or negative
    """
    raw = {key: os.getenv(env, default) for key, (env, default) in SETTING_SOURCES.items()}
    if db is not None:
        overrides = _read_overrides(db)
        if overrides:
            logger.info(f"Platform settings overridden from database: {sorted(overrides)}")
        raw.update(overrides)

    for key, value in raw.items():
        if value is None or str(value).strip() == "":
            raise ConfigurationError(f"Setting {key} is empty", key=key)

    holding_days = _non_negative("payout_holding_period_days", raw["payout_holding_period_days"])
    if holding_days != holding_days.to_integral_value():
        raise ConfigurationError(
            f"payout_holding_period_days must be a whole number, got {raw['payout_holding_period_days']!r}",
            key="payout_holding_period_days",
        )

    currency = raw["default_currency"].strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ConfigurationError(f"default_currency must be a 3-letter code, got {currency!r}", key="default_currency")

    settings = PlatformSettings(
        platform_fee_percent=_non_negative("platform_fee_percentage", raw["platform_fee_percentage"]),
        processing_fee_percent=_non_negative("stripe_processing_fee_percentage", raw["stripe_processing_fee_percentage"]),
        processing_fee_fixed=_non_negative("stripe_processing_fee_fixed", raw["stripe_processing_fee_fixed"]),
        payout_fee_percent=_non_negative("payout_fee_percentage", raw["payout_fee_percentage"]),
        manual_processing_fee_percent=_non_negative(
            "manual_payout_processing_fee_percentage", raw["manual_payout_processing_fee_percentage"]
        ),
        minimum_payout_amount=to_money(_non_negative("minimum_payout_amount", raw["minimum_payout_amount"])),
        payout_holding_period_days=int(holding_days),
        auto_payout_enabled=_boolean("auto_payout_enabled", raw["auto_payout_enabled"]),
        currency=currency,
    )

    # Build both schedules once so an unusable combination fails here
    try:
        settings.donation_fee_schedule()
        settings.payout_fee_schedule()
    except InvalidFeeSchedule as e:
        raise ConfigurationError(str(e))

    return settings
