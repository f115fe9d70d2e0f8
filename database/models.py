"""
FundRaise Database Models

This module defines all SQLAlchemy models for the FundRaise platform.

Architecture:
- Users: Campaign owners and platform admins
- Campaigns: Fundraising projects with their ledger balance fields
- Donations: Individual card contributions linked to campaigns
- Payouts: Withdrawals FROM platform TO campaign owners
- Transactions: Immutable audit trail of every balance-affecting event
- Platform Settings: Database overrides for the fee schedule
- Webhook Events: Processed Stripe event ids (duplicate delivery guard)

Money is stored as Numeric(12, 2) and handled as decimal.Decimal.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime,
    Text, ForeignKey, JSON, CheckConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
from decimal import Decimal
import enum
import uuid

Base = declarative_base()

MONEY = Numeric(12, 2)
ZERO = Decimal("0.00")

# Status vocabularies (stored as plain strings)
DONATION_STATUSES = ("pending", "completed", "failed", "refunded")
PAYOUT_STATUSES = ("pending", "approved", "processing", "completed", "failed")
PAYOUT_METHODS = ("stripe_connect", "bank_transfer", "paypal", "check")
MANUAL_PAYOUT_METHODS = ("bank_transfer", "paypal", "check")
TRANSACTION_TYPES = ("donation", "payout", "refund", "chargeback", "platform_fee")
TRANSACTION_STATUSES = ("completed", "processing", "failed")


def _uuid_str() -> str:
    return str(uuid.uuid4())


class UserRole(enum.Enum):
    """User roles for access control."""
    SUPER_ADMIN = "super_admin"        # Platform admins (review all payouts)
    CAMPAIGN_OWNER = "campaign_owner"  # Runs campaigns, requests payouts
    VIEWER = "viewer"                  # Read-only access


class User(Base):
    """
    Platform user.

    Authentication itself lives outside this service; the API only needs
    the id from the bearer token, the email for notifications and the role
    for admin-only payout review.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    role = Column(SQLEnum(UserRole), default=UserRole.CAMPAIGN_OWNER, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    campaigns = relationship("Campaign", back_populates="owner")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN


class Campaign(Base):
    """
    Fundraising campaign and its ledger balance.

    Balance fields:
    - current_amount: cumulative GROSS donations (never decreases)
    - available_balance: net-of-fee funds not yet paid out (never negative)
    - paid_out: cumulative net amount successfully transferred out

    available_balance + paid_out <= current_amount - fees taken so far.
    Only services.ledger.BalanceLedger writes these three columns.
    """
    __tablename__ = "campaigns"
    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_campaigns_available_balance_non_negative"),
        CheckConstraint("paid_out >= 0", name="ck_campaigns_paid_out_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Basic Info
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    goal_amount = Column(MONEY, nullable=False)

    # Ledger
    current_amount = Column(MONEY, nullable=False, default=ZERO)
    available_balance = Column(MONEY, nullable=False, default=ZERO)
    paid_out = Column(MONEY, nullable=False, default=ZERO)
    currency = Column(String(3), nullable=False, default="USD")

    # Payout destination (Stripe Connect account, acct_...)
    stripe_connect_account_id = Column(String(100))

    # Status
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="campaigns")
    donations = relationship("Donation", back_populates="campaign", cascade="all, delete-orphan")
    payouts = relationship("Payout", back_populates="campaign", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="campaign", cascade="all, delete-orphan")


class Donation(Base):
    """
    Individual card donation.

    Lifecycle:
    1. pending: PaymentIntent created, waiting for the donor to pay
    2. completed: Payment confirmed and credited to the campaign ledger
    3. failed: Payment declined or canceled
    4. refunded: Donor refunded (recorded, not re-credited)

    The id is a UUID string so clients (and retried webhooks) can supply it
    as an idempotency key.
    """
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Donor
    donor_name = Column(String(100))
    donor_email = Column(String(255))
    message = Column(Text)
    is_anonymous = Column(Boolean, default=False, nullable=False)

    # Payment
    payment_method = Column(String(20), nullable=False, default="card")
    payment_intent_id = Column(String(255), unique=True)
    status = Column(String(20), nullable=False, default="pending")

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    # Relationships
    campaign = relationship("Campaign", back_populates="donations")


class Payout(Base):
    """
    One payout request FROM the platform TO a campaign owner.

    Supported payment methods:
    - stripe_connect: Instant Stripe Transfer to the campaign's connected account
    - bank_transfer / paypal / check: Manual disbursement, reviewed by an admin

    Status flow:
    - pending: Created, balance already reserved
    - approved: Cleared for disbursement
    - processing: External transfer initiated (or outcome unknown)
    - completed: Processor confirmed the transfer, paid_out increased
    - failed: Rejected or transfer failed, balance restored
    """
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Amounts (amount = balance reserved at request time)
    amount = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False, default=ZERO)
    processing_fee = Column(MONEY, nullable=False, default=ZERO)
    net_amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    payment_method = Column(String(20), nullable=False, default="stripe_connect")
    destination = Column(String(100))  # Connected account id for stripe_connect
    account_details = Column(JSON)  # Bank / PayPal / mailing details for manual methods

    # External processor
    external_transfer_id = Column(String(100))

    # Status tracking
    status = Column(String(20), nullable=False, default="pending")
    status_message = Column(Text)
    failure_reason = Column(Text)
    # Set when the processor reports money moved for a payout already failed here
    needs_reconciliation = Column(Boolean, default=False, nullable=False)

    # Admin review
    approved_by = Column(Integer, ForeignKey("users.id"))

    # Timestamps
    requested_at = Column(DateTime, default=datetime.utcnow)
    approved_at = Column(DateTime)
    processed_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    campaign = relationship("Campaign", back_populates="payouts")
    requester = relationship("User", foreign_keys=[user_id])
    approver = relationship("User", foreign_keys=[approved_by])

    def __repr__(self):
        return f"<Payout(id={self.id}, amount={self.amount} {self.currency}, status={self.status})>"


class Transaction(Base):
    """
    Immutable ledger entry for every balance-affecting event.

    Exactly one of donation_id / payout_id is set. Rows are never deleted;
    only payout-linked rows change status (processing -> completed | failed)
    as the external transfer resolves.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "(donation_id IS NULL) <> (payout_id IS NULL)",
            name="ck_transactions_single_origin",
        ),
    )

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    donation_id = Column(String(36), ForeignKey("donations.id", ondelete="CASCADE"), unique=True)
    payout_id = Column(Integer, ForeignKey("payouts.id", ondelete="CASCADE"), unique=True)

    type = Column(String(20), nullable=False)  # donation, payout, refund, chargeback, platform_fee
    amount = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False, default=ZERO)
    processing_fee = Column(MONEY, nullable=False, default=ZERO)
    net_amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False)  # completed, processing, failed
    description = Column(Text)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    campaign = relationship("Campaign", back_populates="transactions")
    payout = relationship("Payout")
    donation = relationship("Donation")


class PlatformSetting(Base):
    """
    Key/value overrides for the fee schedule.

    Keys: platform_fee_percentage, stripe_processing_fee_percentage,
    stripe_processing_fee_fixed, payout_fee_percentage,
    manual_payout_processing_fee_percentage, minimum_payout_amount,
    payout_holding_period_days, auto_payout_enabled
    """
    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WebhookEvent(Base):
    """Stripe events already handled (Stripe retries deliveries)."""
    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    type = Column(String(100), nullable=False)
    payload = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
