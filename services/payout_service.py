"""
Payout Orchestrator

Moves money FROM a campaign's available balance TO its owner.

Status flow:
    pending ──> approved ──> processing ──> completed
       │           │             │
       └───────────┴─────────────┴──────> failed (balance restored)

Stripe Connect payouts (request_payout) are reserved and auto-approved in one
unit of work; the transfer is created only after that commit, so the campaign
row lock is never held across a network call. Manual payouts (bank transfer,
PayPal, check) are reserved and wait for an admin.

Lock order is always campaign row, then payout row.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from database.db import atomic
from database.models import Payout, User, MANUAL_PAYOUT_METHODS
from services.exceptions import (
    AdminRequired, BelowMinimumPayout, InvalidPayoutState, NotOwner,
    PayoutNotFound, TransferDestinationMissing, TransferError, UnknownOutcome,
    ValidationError,
)
from services.fee_calculator import calculate_fees, to_money, validate_amount
from services.ledger import BalanceLedger
from services.settings_service import PlatformSettings

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": ("approved", "failed"),
    "approved": ("processing", "failed"),
    "processing": ("completed", "failed"),
}
TERMINAL_STATUSES = ("completed", "failed")

# Account details each manual method needs before an admin can pay it out
REQUIRED_ACCOUNT_FIELDS = {
    "bank_transfer": ("account_holder", "bank_name", "account_number", "routing_number"),
    "paypal": ("paypal_email",),
    "check": ("account_holder", "address"),
}

MANUAL_PROCESSING_TIMES = {
    "bank_transfer": "3-5 business days",
    "paypal": "1-2 business days",
    "check": "5-7 business days",
}

TRANSFER_FAILURE_EVENTS = ("transfer.failed", "transfer.reversed")


def payout_to_dict(payout: Payout) -> Dict:
    return {
        "id": payout.id,
        "campaign_id": payout.campaign_id,
        "user_id": payout.user_id,
        "amount": to_money(payout.amount),
        "platform_fee": to_money(payout.platform_fee or 0),
        "processing_fee": to_money(payout.processing_fee or 0),
        "net_amount": to_money(payout.net_amount),
        "currency": payout.currency,
        "status": payout.status,
        "payment_method": payout.payment_method,
        "external_transfer_id": payout.external_transfer_id,
        "status_message": payout.status_message,
        "failure_reason": payout.failure_reason,
        "needs_reconciliation": bool(payout.needs_reconciliation),
        "requested_at": payout.requested_at,
        "approved_at": payout.approved_at,
        "processed_at": payout.processed_at,
        "completed_at": payout.completed_at,
    }


class PayoutOrchestrator:
    """
    Payout state machine on top of the balance ledger.

    Args:
        db: SQLAlchemy session
        settings: Validated PlatformSettings
        processor: Transfer processor (StripeService or a test double) with
            create_transfer(amount, currency, destination, metadata,
            idempotency_key, description)
    """

    def __init__(self, db: Session, settings: PlatformSettings, processor):
        self.db = db
        self.settings = settings
        self.processor = processor
        self.ledger = BalanceLedger(db, settings.donation_fee_schedule())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_payout(self, payout_id: int) -> Payout:
        payout = self.db.get(Payout, payout_id)
        if payout is None:
            raise PayoutNotFound(payout_id)
        return payout

    def get_payout_for_user(self, payout_id: int, user: User) -> Payout:
        payout = self.get_payout(payout_id)
        if payout.user_id != user.id and not user.is_admin:
            raise NotOwner(f"Payout {payout_id} does not belong to you")
        return payout

    def _lock_payout(self, payout_id: int) -> Payout:
        stmt = (
            select(Payout)
            .where(Payout.id == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payout = self.db.execute(stmt).scalars().first()
        if payout is None:
            raise PayoutNotFound(payout_id)
        return payout

    def _lock(self, payout_id: int) -> Payout:
        """Lock campaign then payout. Call inside atomic()."""
        payout = self.get_payout(payout_id)
        self.ledger.lock_campaign(payout.campaign_id)
        return self._lock_payout(payout_id)

    @staticmethod
    def _transition(payout: Payout, new_status: str) -> bool:
        """
        Apply one state machine step.

        Returns False when the payout is already in the requested terminal
        state (no-op).

        Raises:
            InvalidPayoutState
        """
        if payout.status == new_status and new_status in TERMINAL_STATUSES:
            return False
        if new_status not in ALLOWED_TRANSITIONS.get(payout.status, ()):
            raise InvalidPayoutState(
                f"Payout {payout.id} cannot move from {payout.status} to {new_status}",
                payout_id=payout.id,
                status=payout.status,
            )
        payout.status = new_status
        return True

    @staticmethod
    def _require_admin(admin: User):
        if admin is None or not admin.is_admin:
            raise AdminRequired("Admin access required")

    # ------------------------------------------------------------------
    # Owner requests
    # ------------------------------------------------------------------

    def request_payout(self, campaign_id: int, user_id: int) -> Payout:
        """
        Pay the campaign's whole available balance out via Stripe Connect.

        Returns the payout as 'processing' (transfer created or outcome
        unknown).

        Raises:
            CampaignNotFound, NotOwner, TransferDestinationMissing,
            BelowMinimumPayout, TransferError (after full reversal)
        """
        with atomic(self.db):
            campaign = self.ledger.lock_campaign(campaign_id)

            if campaign.user_id != user_id:
                raise NotOwner(f"Campaign {campaign_id} does not belong to you", campaign_id=campaign_id)
            if not campaign.stripe_connect_account_id:
                raise TransferDestinationMissing(
                    "Campaign has no Stripe Connect account to pay out to",
                    campaign_id=campaign_id,
                )

            available = to_money(campaign.available_balance or 0)
            minimum = self.settings.minimum_payout_amount
            if available <= 0 or available < minimum:
                raise BelowMinimumPayout(
                    f"Available balance {available} is below the minimum payout of {minimum}",
                    available_balance=str(available),
                    minimum_payout_amount=str(minimum),
                )

            fees = calculate_fees(available, self.settings.payout_fee_schedule("stripe_connect"))
            now = datetime.utcnow()
            payout = Payout(
                campaign_id=campaign.id,
                user_id=user_id,
                amount=fees.gross,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                net_amount=fees.net_amount,
                currency=campaign.currency,
                payment_method="stripe_connect",
                destination=campaign.stripe_connect_account_id,
                status="pending",
                requested_at=now,
            )
            self.ledger.debit(campaign.id, fees.gross, payout)

            self._transition(payout, "approved")
            payout.approved_at = now
            payout.status_message = "Auto-approved"

        logger.info(
            f"Payout {payout.id} requested for campaign {campaign_id}: "
            f"{payout.amount} reserved, {payout.net_amount} to transfer"
        )
        return self._start_transfer(payout)

    def request_manual_payout(
        self,
        campaign_id: int,
        user_id: int,
        payment_method: str,
        account_details: Dict,
        amount=None,
    ) -> Payout:
        """
        Reserve funds for a bank transfer, PayPal or check payout.

        The payout stays 'pending' until an admin approves and processes it.

        Raises:
            ValidationError: unknown payment method
            TransferDestinationMissing: required account details missing
            BelowMinimumPayout, InsufficientBalance, NotOwner, CampaignNotFound
        """
        if payment_method not in MANUAL_PAYOUT_METHODS:
            raise ValidationError(
                f"Unsupported payment method {payment_method!r}, expected one of {', '.join(MANUAL_PAYOUT_METHODS)}"
            )

        details = {k: v for k, v in (account_details or {}).items() if v not in (None, "")}
        missing = [f for f in REQUIRED_ACCOUNT_FIELDS[payment_method] if not details.get(f)]
        if missing:
            raise TransferDestinationMissing(
                f"Missing account details for {payment_method}: {', '.join(missing)}",
                missing_fields=missing,
            )

        with atomic(self.db):
            campaign = self.ledger.lock_campaign(campaign_id)
            if campaign.user_id != user_id:
                raise NotOwner(f"Campaign {campaign_id} does not belong to you", campaign_id=campaign_id)

            available = to_money(campaign.available_balance or 0)
            requested = validate_amount(amount) if amount is not None else available
            minimum = self.settings.minimum_payout_amount
            if requested <= 0 or requested < minimum:
                raise BelowMinimumPayout(
                    f"Payout amount {requested} is below the minimum payout of {minimum}",
                    requested_amount=str(requested),
                    minimum_payout_amount=str(minimum),
                )

            fees = calculate_fees(requested, self.settings.payout_fee_schedule(payment_method))
            payout = Payout(
                campaign_id=campaign.id,
                user_id=user_id,
                amount=fees.gross,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                net_amount=fees.net_amount,
                currency=campaign.currency,
                payment_method=payment_method,
                account_details=details,
                status="pending",
                status_message="Awaiting admin review",
                requested_at=datetime.utcnow(),
            )
            # InsufficientBalance when requested > available
            self.ledger.debit(campaign.id, fees.gross, payout)

        logger.info(f"Manual payout {payout.id} ({payment_method}) requested for campaign {campaign_id}: {payout.amount}")
        return payout

    # ------------------------------------------------------------------
    # External transfer
    # ------------------------------------------------------------------

    def _start_transfer(self, payout: Payout) -> Payout:
        """Create the Stripe transfer for an approved payout. Never holds a lock."""
        try:
            transfer = self.processor.create_transfer(
                amount=payout.net_amount,
                currency=payout.currency,
                destination=payout.destination,
                metadata={"payout_id": str(payout.id), "campaign_id": str(payout.campaign_id)},
                idempotency_key=f"payout-{payout.id}",
                description=f"Payout #{payout.id}",
            )
        except UnknownOutcome as e:
            with atomic(self.db):
                payout = self._lock(payout.id)
                if payout.status == "approved":
                    self._transition(payout, "processing")
                    payout.processed_at = datetime.utcnow()
                    payout.status_message = "Transfer outcome unknown, awaiting confirmation"
            logger.warning(f"Payout {payout.id} left processing: {e.message}")
            return payout
        except TransferError as e:
            logger.error(f"Payout {payout.id} transfer rejected: {e.message}")
            self.fail_payout(payout.id, reason=e.message)
            raise TransferError(e.message, payout_id=payout.id)

        with atomic(self.db):
            payout = self._lock(payout.id)
            # transfer.paid may already have completed it
            if payout.status == "approved":
                self._transition(payout, "processing")
                payout.processed_at = datetime.utcnow()
                payout.status_message = "Transfer created"
            if not payout.external_transfer_id:
                payout.external_transfer_id = transfer["id"]
            txn = self.ledger.payout_transaction(payout.id)
            if txn is not None:
                txn.details = {**(txn.details or {}), "transfer_id": transfer["id"]}

        logger.info(f"Payout {payout.id} transfer created: {transfer['id']}")
        return payout

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def complete_payout(self, payout_id: int, transfer_id: Optional[str] = None) -> Payout:
        """
        Mark a payout completed and move its net amount to paid_out.

        Accepts approved payouts too: transfer.paid can arrive before the
        request that created the transfer has recorded it.

        Raises:
            PayoutNotFound, InvalidPayoutState (pending or failed payout)
        """
        with atomic(self.db):
            payout = self._lock(payout_id)
            if payout.status == "completed":
                logger.warning(f"Payout {payout_id} already completed")
                return payout

            if payout.status == "approved":
                self._transition(payout, "processing")
                payout.processed_at = datetime.utcnow()
            self._transition(payout, "completed")

            payout.completed_at = datetime.utcnow()
            payout.status_message = "Transfer completed"
            if transfer_id and not payout.external_transfer_id:
                payout.external_transfer_id = transfer_id
            self.ledger.settle(payout)

        logger.info(f"Payout {payout_id} completed: {payout.net_amount} {payout.currency}")
        return payout

    def fail_payout(self, payout_id: int, reason: str) -> Payout:
        """
        Mark a payout failed and restore its reserved amount.

        A failure reported for an already completed payout is logged and
        ignored; failing a failed payout is a no-op.
        """
        with atomic(self.db):
            payout = self._lock(payout_id)
            if payout.status == "completed":
                logger.warning(f"Ignoring failure for completed payout {payout_id}: {reason}")
                return payout
            if not self._transition(payout, "failed"):
                return payout

            payout.failure_reason = reason
            payout.status_message = "Payout failed, balance restored"
            self.ledger.reverse(payout, reason)

        logger.info(f"Payout {payout_id} failed: {reason}")
        return payout

    def handle_transfer_event(self, event_type: str, transfer: Dict) -> Optional[Payout]:
        """
        Apply a Stripe transfer webhook.

        transfer.paid -> complete; transfer.failed / transfer.reversed -> fail.
        Events without a known payout_id in their metadata are ignored.
        """
        metadata = transfer.get("metadata") or {}
        try:
            payout_id = int(metadata.get("payout_id"))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring {event_type} without payout_id metadata ({transfer.get('id')})")
            return None

        payout = self.db.get(Payout, payout_id)
        if payout is None:
            logger.warning(f"Ignoring {event_type} for unknown payout {payout_id}")
            return None

        try:
            if event_type == "transfer.paid":
                if payout.status == "failed":
                    return self._flag_paid_after_failure(payout_id, transfer.get("id"))
                return self.complete_payout(payout_id, transfer_id=transfer.get("id"))
            if event_type in TRANSFER_FAILURE_EVENTS:
                reason = transfer.get("failure_message") or event_type.replace("transfer.", "Transfer ")
                return self.fail_payout(payout_id, reason=reason)
        except InvalidPayoutState as e:
            logger.warning(f"Ignoring {event_type} for payout {payout_id}: {e.message}")
            return None

        logger.info(f"Ignoring unhandled transfer event {event_type}")
        return None

    def _flag_paid_after_failure(self, payout_id: int, transfer_id: Optional[str]) -> Payout:
        """
        transfer.paid for a payout whose reservation was already released.

        The owner has the money and the campaign balance still counts it, so
        the payout is queued for an admin instead of being settled here.
        """
        with atomic(self.db):
            payout = self._lock(payout_id)
            payout.needs_reconciliation = True
            if transfer_id and not payout.external_transfer_id:
                payout.external_transfer_id = transfer_id
            payout.status_message = (
                f"Transfer {transfer_id} reported paid after the payout failed; "
                f"balance was already restored, needs reconciliation"
            )
        logger.error(
            f"Payout {payout_id} is failed but transfer {transfer_id} was paid: "
            f"{payout.amount} may have been paid out twice"
        )
        return payout

    # ------------------------------------------------------------------
    # Admin review
    # ------------------------------------------------------------------

    def approve(self, payout_id: int, admin: User) -> Payout:
        self._require_admin(admin)
        with atomic(self.db):
            payout = self._lock(payout_id)
            self._transition(payout, "approved")
            payout.approved_by = admin.id
            payout.approved_at = datetime.utcnow()
            payout.status_message = f"Approved by admin {admin.id}"
        logger.info(f"Payout {payout_id} approved by admin {admin.id}")
        return payout

    def reject(self, payout_id: int, admin: User, reason: str) -> Payout:
        """Reject a pending payout; its reservation goes back to the campaign."""
        self._require_admin(admin)
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        payout = self.get_payout(payout_id)
        if payout.status not in ("pending", "failed"):
            raise InvalidPayoutState(
                f"Only pending payouts can be rejected (payout {payout_id} is {payout.status})",
                payout_id=payout_id,
                status=payout.status,
            )
        payout = self.fail_payout(payout_id, reason=f"Rejected: {reason.strip()}")
        logger.info(f"Payout {payout_id} rejected by admin {admin.id}")
        return payout

    def process(self, payout_id: int, admin: User, reference: Optional[str] = None) -> Payout:
        """
        Disburse an approved payout.

        stripe_connect: creates the Stripe transfer.
        Manual methods: records the external reference (bank transfer id,
        PayPal transaction id, check number) and moves to processing.
        """
        self._require_admin(admin)
        payout = self.get_payout(payout_id)
        if payout.status != "approved":
            raise InvalidPayoutState(
                f"Only approved payouts can be processed (payout {payout_id} is {payout.status})",
                payout_id=payout_id,
                status=payout.status,
            )

        if payout.payment_method == "stripe_connect":
            logger.info(f"Admin {admin.id} processing Stripe payout {payout_id}")
            return self._start_transfer(payout)

        if not reference or not reference.strip():
            raise ValidationError(f"A payment reference is required for {payout.payment_method} payouts")

        with atomic(self.db):
            payout = self._lock(payout_id)
            self._transition(payout, "processing")
            payout.external_transfer_id = reference.strip()
            payout.processed_at = datetime.utcnow()
            payout.status_message = f"Sent via {payout.payment_method}"
        logger.info(f"Payout {payout_id} sent via {payout.payment_method} ({payout.external_transfer_id})")
        return payout

    def reconcile(
        self,
        payout_id: int,
        admin: User,
        outcome: str,
        reference: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Payout:
        """Resolve a processing payout by hand (no webhook will arrive)."""
        self._require_admin(admin)
        if outcome not in TERMINAL_STATUSES:
            raise ValidationError(f"Outcome must be 'completed' or 'failed', got {outcome!r}")

        payout = self.get_payout(payout_id)
        if payout.status != "processing" and payout.status != outcome:
            raise InvalidPayoutState(
                f"Only processing payouts can be reconciled (payout {payout_id} is {payout.status})",
                payout_id=payout_id,
                status=payout.status,
            )

        logger.info(f"Admin {admin.id} reconciling payout {payout_id} as {outcome}")
        if outcome == "completed":
            return self.complete_payout(payout_id, transfer_id=reference)
        return self.fail_payout(payout_id, reason=reason or "Reconciled as failed")

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_pending(self) -> List[Payout]:
        return self.db.execute(
            select(Payout).where(Payout.status == "pending").order_by(Payout.requested_at.asc(), Payout.id.asc())
        ).scalars().all()

    def list_needs_reconciliation(self) -> List[Payout]:
        return self.db.execute(
            select(Payout).where(Payout.needs_reconciliation.is_(True)).order_by(Payout.id.asc())
        ).scalars().all()

    def resolve_reconciliation(self, payout_id: int, admin: User, note: str) -> Payout:
        """Clear the reconciliation flag once the admin has settled it with Stripe."""
        self._require_admin(admin)
        if not note or not note.strip():
            raise ValidationError("A resolution note is required")

        with atomic(self.db):
            payout = self._lock(payout_id)
            if not payout.needs_reconciliation:
                raise InvalidPayoutState(
                    f"Payout {payout_id} is not awaiting reconciliation",
                    payout_id=payout_id,
                    status=payout.status,
                )
            payout.needs_reconciliation = False
            payout.status_message = f"Reconciled by admin {admin.id}: {note.strip()}"
        logger.info(f"Payout {payout_id} reconciliation resolved by admin {admin.id}")
        return payout

    def get_payout_history(self, user_id: int, page: int = 1, limit: int = 20) -> Dict:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        total = self.db.execute(
            select(func.count(Payout.id)).where(Payout.user_id == user_id)
        ).scalar() or 0
        payouts = self.db.execute(
            select(Payout)
            .where(Payout.user_id == user_id)
            .order_by(Payout.requested_at.desc(), Payout.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        return {
            "payouts": payouts,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        }
