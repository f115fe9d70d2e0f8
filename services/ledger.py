"""
Balance Ledger

Per-campaign credits, debits, reversals and settlements.

Every balance change:
- takes the campaign row lock (SELECT ... FOR UPDATE) and re-reads the row
- does the Decimal read-modify-write in Python under that lock
- writes its audit row (Transaction) in the same unit of work

so concurrent donations and payouts on one campaign are serialized and a
balance change never commits without its Transaction (or vice versa).

Balance fields on Campaign:
- available_balance: net funds not yet paid out (reserved on debit)
- paid_out: net amount confirmed transferred (moved on settle)
- current_amount: gross donations received
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from database.db import atomic
from database.models import Campaign, Payout, Transaction
from services.exceptions import CampaignNotFound, InsufficientBalance, InvalidPayoutState
from services.fee_calculator import FeeSchedule, calculate_fees, to_money, validate_amount

logger = logging.getLogger(__name__)

OPEN_PAYOUT_STATUSES = ("pending", "approved", "processing")
RECENT_TRANSACTIONS_LIMIT = 50


@dataclass(frozen=True)
class CreditResult:
    net_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    duplicate: bool = False


def campaign_for_update(campaign_id: int):
    """SELECT ... FOR UPDATE on one campaign row, refreshing the identity-map copy."""
    return (
        select(Campaign)
        .where(Campaign.id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def transaction_to_dict(txn: Transaction) -> Dict:
    return {
        "id": txn.id,
        "type": txn.type,
        "status": txn.status,
        "amount": to_money(txn.amount),
        "platform_fee": to_money(txn.platform_fee or 0),
        "processing_fee": to_money(txn.processing_fee or 0),
        "net_amount": to_money(txn.net_amount),
        "currency": txn.currency,
        "description": txn.description,
        "donation_id": txn.donation_id,
        "payout_id": txn.payout_id,
        "metadata": txn.details or {},
        "created_at": txn.created_at,
    }


class BalanceLedger:
    """Campaign balance ledger bound to one session and one fee schedule."""

    def __init__(self, db: Session, fee_schedule: FeeSchedule):
        self.db = db
        self.fee_schedule = fee_schedule

    # ------------------------------------------------------------------
    # Locking and lookups
    # ------------------------------------------------------------------

    def lock_campaign(self, campaign_id: int) -> Campaign:
        """
        Lock the campaign row for the rest of the unit of work.

        Raises:
            CampaignNotFound
        """
        campaign = self.db.execute(campaign_for_update(campaign_id)).scalars().first()
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        return campaign

    def _get_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        return campaign

    def payout_transaction(self, payout_id: int) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.payout_id == payout_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalars().first()

    # ------------------------------------------------------------------
    # Balance changes
    # ------------------------------------------------------------------

    def credit(
        self,
        campaign_id: int,
        gross_amount,
        donation_id: str,
        currency: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditResult:
        """
        Credit a confirmed donation to the campaign.

        available_balance grows by the net amount, current_amount by the
        gross amount, and a completed 'donation' Transaction is appended.
        Crediting the same donation_id again changes nothing and returns the
        original figures with duplicate=True.

        Raises:
            CampaignNotFound, InvalidAmount, PersistenceError
        """
        with atomic(self.db):
            campaign = self.lock_campaign(campaign_id)

            existing = self.db.execute(
                select(Transaction).where(Transaction.donation_id == donation_id)
            ).scalars().first()
            if existing is not None:
                logger.warning(f"Duplicate credit ignored: donation {donation_id} already on campaign {campaign_id}")
                return CreditResult(
                    net_amount=to_money(existing.net_amount),
                    platform_fee=to_money(existing.platform_fee),
                    processing_fee=to_money(existing.processing_fee),
                    duplicate=True,
                )

            fees = calculate_fees(gross_amount, self.fee_schedule)

            campaign.available_balance = to_money(campaign.available_balance or 0) + fees.net_amount
            campaign.current_amount = to_money(campaign.current_amount or 0) + fees.gross

            self.db.add(Transaction(
                campaign_id=campaign.id,
                donation_id=donation_id,
                type="donation",
                amount=fees.gross,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                net_amount=fees.net_amount,
                currency=currency or campaign.currency,
                status="completed",
                description=description or f"Donation to {campaign.title}",
                details={"fee_schedule": {k: str(v) for k, v in self.fee_schedule.as_dict().items()}},
            ))
            self.db.flush()

        logger.info(
            f"Credited campaign {campaign_id}: gross {fees.gross}, net {fees.net_amount} "
            f"(donation {donation_id})"
        )
        return CreditResult(
            net_amount=fees.net_amount,
            platform_fee=fees.platform_fee,
            processing_fee=fees.processing_fee,
        )

    def debit(self, campaign_id: int, amount, payout: Payout) -> Transaction:
        """
        Reserve `amount` of the available balance for a payout.

        Appends the payout's Transaction with status 'processing'. paid_out
        is untouched until settle().

        Raises:
            CampaignNotFound, InvalidAmount, InsufficientBalance
        """
        with atomic(self.db):
            campaign = self.lock_campaign(campaign_id)
            amount = validate_amount(amount)
            available = to_money(campaign.available_balance or 0)

            if amount > available:
                raise InsufficientBalance(
                    f"Insufficient balance: requested {amount}, available {available}",
                    available_balance=str(available),
                    requested_amount=str(amount),
                )

            campaign.available_balance = available - amount

            if payout.id is None:
                self.db.add(payout)
                self.db.flush()

            txn = Transaction(
                campaign_id=campaign.id,
                payout_id=payout.id,
                type="payout",
                amount=amount,
                platform_fee=payout.platform_fee,
                processing_fee=payout.processing_fee,
                net_amount=payout.net_amount,
                currency=payout.currency or campaign.currency,
                status="processing",
                description=f"Payout via {payout.payment_method}",
                details={"payment_method": payout.payment_method},
            )
            self.db.add(txn)
            self.db.flush()

        logger.info(f"Reserved {amount} on campaign {campaign_id} for payout {payout.id}")
        return txn

    def reverse(self, payout: Payout, reason: str) -> bool:
        """
        Give a payout's reservation back to the campaign.

        Returns:
            True when the balance was restored, False when it already was
            (or nothing was ever reserved)

        Raises:
            InvalidPayoutState: the payout was already settled
        """
        with atomic(self.db):
            campaign = self.lock_campaign(payout.campaign_id)
            txn = self.payout_transaction(payout.id)

            if txn is None:
                logger.warning(f"Reverse skipped: payout {payout.id} has no reservation")
                return False
            if txn.status == "failed":
                logger.warning(f"Reverse skipped: payout {payout.id} already reversed")
                return False
            if txn.status == "completed":
                raise InvalidPayoutState(
                    f"Payout {payout.id} is already settled and cannot be reversed",
                    payout_id=payout.id,
                )

            campaign.available_balance = to_money(campaign.available_balance or 0) + to_money(txn.amount)
            txn.status = "failed"
            txn.details = {**(txn.details or {}), "failure_reason": reason}
            self.db.flush()

        logger.info(f"Reversed payout {payout.id}: {txn.amount} restored to campaign {payout.campaign_id}")
        return True

    def settle(self, payout: Payout) -> bool:
        """
        Confirm a payout left the platform: paid_out += net amount.

        Returns:
            True when settled now, False when it was already settled

        Raises:
            InvalidPayoutState: the payout was reversed or never reserved
        """
        with atomic(self.db):
            campaign = self.lock_campaign(payout.campaign_id)
            txn = self.payout_transaction(payout.id)

            if txn is None:
                raise InvalidPayoutState(f"Payout {payout.id} has no reservation to settle", payout_id=payout.id)
            if txn.status == "completed":
                logger.warning(f"Settle skipped: payout {payout.id} already settled")
                return False
            if txn.status == "failed":
                raise InvalidPayoutState(
                    f"Payout {payout.id} was reversed and cannot be settled",
                    payout_id=payout.id,
                )

            campaign.paid_out = to_money(campaign.paid_out or 0) + to_money(txn.net_amount)
            txn.status = "completed"
            if payout.external_transfer_id:
                txn.details = {**(txn.details or {}), "transfer_id": payout.external_transfer_id}
            self.db.flush()

        logger.info(f"Settled payout {payout.id}: {txn.net_amount} paid out from campaign {payout.campaign_id}")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, campaign_id: int, minimum_payout_amount) -> Dict:
        campaign = self._get_campaign(campaign_id)
        available = to_money(campaign.available_balance or 0)
        minimum = to_money(minimum_payout_amount)
        return {
            "campaign_id": campaign.id,
            "currency": campaign.currency,
            "available_balance": available,
            "paid_out": to_money(campaign.paid_out or 0),
            "total_raised": to_money(campaign.current_amount or 0),
            "minimum_payout_amount": minimum,
            "can_payout": available > 0 and available >= minimum,
        }

    def get_financials(self, campaign_id: int) -> Dict:
        """
        Financial overview of one campaign.

        Fee totals are summed over completed donation transactions; pending
        payouts are the reservations not yet settled or reversed.
        """
        campaign = self._get_campaign(campaign_id)

        donation_totals = self.db.execute(
            select(
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount), 0),
                func.coalesce(func.sum(Transaction.platform_fee), 0),
                func.coalesce(func.sum(Transaction.processing_fee), 0),
                func.coalesce(func.sum(Transaction.net_amount), 0),
            ).where(
                Transaction.campaign_id == campaign_id,
                Transaction.type == "donation",
                Transaction.status == "completed",
            )
        ).one()
        donation_count, gross, platform_fees, processing_fees, net_received = donation_totals

        pending_payouts = self.db.execute(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.campaign_id == campaign_id,
                Payout.status.in_(OPEN_PAYOUT_STATUSES),
            )
        ).scalar()

        recent: List[Transaction] = self.db.execute(
            select(Transaction)
            .where(Transaction.campaign_id == campaign_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(RECENT_TRANSACTIONS_LIMIT)
        ).scalars().all()

        return {
            "campaign_id": campaign.id,
            "currency": campaign.currency,
            "total_raised": to_money(campaign.current_amount or 0),
            "donation_count": donation_count,
            "total_donations_gross": to_money(gross),
            "total_platform_fees": to_money(platform_fees),
            "total_processing_fees": to_money(processing_fees),
            "net_received": to_money(net_received),
            "available_balance": to_money(campaign.available_balance or 0),
            "paid_out": to_money(campaign.paid_out or 0),
            "pending_payouts": to_money(pending_payouts),
            "recent_transactions": [transaction_to_dict(txn) for txn in recent],
        }
