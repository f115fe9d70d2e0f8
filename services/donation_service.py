"""
Donation Service

Card donations from PaymentIntent to ledger credit.

Flow:
1. create_payment_intent: Stripe PaymentIntent + pending Donation row
2. Donor pays on the frontend (stripe.js)
3. complete_donation: called by the client (/donations/complete) and/or the
   payment_intent.succeeded webhook. The PaymentIntent is verified, the
   Donation marked completed and the campaign credited in one unit of work.
   Whichever report arrives second is a no-op.
4. fail_donation: payment_intent.payment_failed / canceled webhooks
"""

import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from database.db import atomic
from database.models import Campaign, Donation
from services.exceptions import CampaignNotFound, DonationNotFound, InvalidAmount, ValidationError
from services.fee_calculator import from_cents, to_cents, to_money, validate_amount
from services.ledger import BalanceLedger, CreditResult
from services.settings_service import PlatformSettings
from services.stripe_service import PAID_STATUSES

logger = logging.getLogger(__name__)

MAX_DONATION_AMOUNT = Decimal("10000.00")


def donation_to_dict(donation: Donation, public: bool = False) -> Dict:
    """Serialize a donation; public listings hide anonymous donors."""
    hide = public and donation.is_anonymous
    data = {
        "id": donation.id,
        "campaign_id": donation.campaign_id,
        "amount": to_money(donation.amount),
        "currency": donation.currency,
        "donor_name": None if hide else donation.donor_name,
        "message": donation.message,
        "is_anonymous": donation.is_anonymous,
        "status": donation.status,
        "created_at": donation.created_at,
        "completed_at": donation.completed_at,
    }
    if not public:
        data["donor_email"] = donation.donor_email
        data["payment_intent_id"] = donation.payment_intent_id
    return data


def _check_donation_amount(amount) -> Decimal:
    value = validate_amount(amount)
    if value > MAX_DONATION_AMOUNT:
        raise InvalidAmount(f"Donations are limited to {MAX_DONATION_AMOUNT} per payment")
    return value


class DonationService:
    """
    Args:
        db: SQLAlchemy session
        settings: Validated PlatformSettings (donation fee schedule)
        processor: Payment processor (StripeService or a test double)
    """

    def __init__(self, db: Session, settings: PlatformSettings, processor):
        self.db = db
        self.settings = settings
        self.processor = processor
        self.ledger = BalanceLedger(db, settings.donation_fee_schedule())

    def _active_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        if not campaign.is_active:
            raise ValidationError("Campaign is not active", campaign_id=campaign_id)
        return campaign

    def get_donation(self, donation_id: str) -> Donation:
        donation = self.db.get(Donation, donation_id)
        if donation is None:
            raise DonationNotFound(donation_id)
        return donation

    def _find_donation(self, donation_id: Optional[str], payment_intent_id: Optional[str]) -> Optional[Donation]:
        if donation_id:
            donation = self.db.get(Donation, donation_id)
            if donation is not None:
                return donation
        if payment_intent_id:
            return self.db.execute(
                select(Donation).where(Donation.payment_intent_id == payment_intent_id)
            ).scalars().first()
        return None

    def create_payment_intent(
        self,
        campaign_id: int,
        amount,
        donor_name: Optional[str] = None,
        donor_email: Optional[str] = None,
        message: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> Dict:
        """
        Start a card donation.

        Returns:
            Dict with client_secret for stripe.js, payment_intent_id and the
            pending donation_id

        Raises:
            CampaignNotFound, ValidationError (inactive campaign),
            InvalidAmount (<= 0 or above 10,000), PaymentProcessorError
        """
        gross = _check_donation_amount(amount)
        campaign = self._active_campaign(campaign_id)
        donation_id = str(uuid.uuid4())

        intent = self.processor.create_payment_intent(
            amount=gross,
            currency=campaign.currency,
            customer_email=donor_email,
            metadata={
                "campaign_id": str(campaign.id),
                "donation_id": donation_id,
                "donor_name": donor_name or "",
            },
        )

        with atomic(self.db):
            self.db.add(Donation(
                id=donation_id,
                campaign_id=campaign.id,
                amount=gross,
                currency=campaign.currency,
                donor_name=None if is_anonymous else donor_name,
                donor_email=donor_email,
                message=message,
                is_anonymous=is_anonymous,
                payment_method="card",
                payment_intent_id=intent["id"],
                status="pending",
            ))

        logger.info(f"PaymentIntent {intent['id']} created for campaign {campaign.id}: {gross} {campaign.currency}")
        return {
            "client_secret": intent.get("client_secret"),
            "payment_intent_id": intent["id"],
            "donation_id": donation_id,
            "amount": gross,
            "currency": campaign.currency,
        }

    def _verify_payment(self, payment_intent_id: str, gross: Decimal, campaign_id: int):
        intent = self.processor.retrieve_payment_intent(payment_intent_id)

        if intent["status"] not in PAID_STATUSES:
            raise ValidationError(
                f"Payment has not been completed. Status: {intent['status']}",
                payment_intent_id=payment_intent_id,
            )

        expected_cents = to_cents(gross)
        if intent["amount"] != expected_cents:
            logger.error(
                f"Amount mismatch for {payment_intent_id}: expected {expected_cents} cents, "
                f"Stripe has {intent['amount']}"
            )
            raise ValidationError(
                "Payment amount mismatch",
                expected_cents=expected_cents,
                actual_cents=intent["amount"],
            )

        intent_campaign = (intent.get("metadata") or {}).get("campaign_id")
        if intent_campaign and str(intent_campaign) != str(campaign_id):
            raise ValidationError("Payment belongs to a different campaign", payment_intent_id=payment_intent_id)

    def complete_donation(
        self,
        campaign_id: int,
        gross_amount,
        payment_intent_id: str,
        donation_id: Optional[str] = None,
        donor_name: Optional[str] = None,
        donor_email: Optional[str] = None,
        message: Optional[str] = None,
        is_anonymous: bool = False,
        verify: bool = True,
    ) -> Tuple[Donation, CreditResult]:
        """
        Record a paid donation and credit the campaign.

        Idempotent per donation: the client and the webhook may both report
        the same payment; the campaign is credited once.

        Args:
            verify: Check status and amount against Stripe. The webhook path
                passes False since the signed event carries the PaymentIntent.

        Raises:
            CampaignNotFound, ValidationError, InvalidAmount,
            PaymentProcessorError, PersistenceError
        """
        gross = _check_donation_amount(gross_amount)
        campaign = self._active_campaign(campaign_id)

        if verify:
            self._verify_payment(payment_intent_id, gross, campaign.id)

        with atomic(self.db):
            # Serializes concurrent reports of the same payment
            self.ledger.lock_campaign(campaign.id)
            donation = self._find_donation(donation_id, payment_intent_id)

            if donation is None:
                donation = Donation(
                    id=donation_id or str(uuid.uuid4()),
                    campaign_id=campaign.id,
                    amount=gross,
                    currency=campaign.currency,
                    donor_name=None if is_anonymous else donor_name,
                    donor_email=donor_email,
                    message=message,
                    is_anonymous=is_anonymous,
                    payment_method="card",
                    payment_intent_id=payment_intent_id,
                    status="pending",
                )
                self.db.add(donation)
            else:
                if donation.campaign_id != campaign.id:
                    raise ValidationError(
                        f"Donation {donation.id} belongs to a different campaign",
                        donation_id=donation.id,
                    )
                if to_money(donation.amount) != gross:
                    raise ValidationError(
                        f"Donation {donation.id} was started for {to_money(donation.amount)}, not {gross}",
                        donation_id=donation.id,
                    )
                if donation.status == "refunded":
                    raise ValidationError(f"Donation {donation.id} was refunded", donation_id=donation.id)
                if donation.payment_intent_id and donation.payment_intent_id != payment_intent_id:
                    raise ValidationError(
                        f"Donation {donation.id} is linked to a different payment",
                        donation_id=donation.id,
                    )
                donation.payment_intent_id = payment_intent_id

            if donation.status != "completed":
                donation.status = "completed"
                donation.completed_at = datetime.utcnow()
            self.db.flush()

            result = self.ledger.credit(
                campaign.id,
                gross,
                donation.id,
                currency=campaign.currency,
                description=f"Donation to {campaign.title}",
            )

        if not result.duplicate:
            logger.info(f"Donation {donation.id} completed for campaign {campaign.id}: {gross}")
        return donation, result

    def handle_payment_succeeded(self, payment_intent: Dict) -> Optional[Tuple[Donation, CreditResult]]:
        """payment_intent.succeeded webhook: complete the matching donation."""
        metadata = payment_intent.get("metadata") or {}
        donation = self._find_donation(metadata.get("donation_id"), payment_intent.get("id"))

        campaign_id = donation.campaign_id if donation is not None else metadata.get("campaign_id")
        if not campaign_id:
            logger.warning(f"Ignoring PaymentIntent {payment_intent.get('id')} without campaign metadata")
            return None

        if payment_intent.get("status") not in PAID_STATUSES:
            logger.warning(f"Ignoring PaymentIntent {payment_intent.get('id')} in status {payment_intent.get('status')}")
            return None

        return self.complete_donation(
            campaign_id=int(campaign_id),
            gross_amount=from_cents(payment_intent["amount"]),
            payment_intent_id=payment_intent["id"],
            donation_id=donation.id if donation is not None else metadata.get("donation_id"),
            donor_name=metadata.get("donor_name") or None,
            donor_email=payment_intent.get("receipt_email"),
            verify=False,
        )

    def fail_donation(self, payment_intent_id: str, reason: Optional[str] = None) -> Optional[Donation]:
        """Mark a donation failed. Completed donations are never downgraded."""
        with atomic(self.db):
            donation = self._find_donation(None, payment_intent_id)
            if donation is None:
                logger.warning(f"No donation for failed PaymentIntent {payment_intent_id}")
                return None
            if donation.status == "completed":
                logger.warning(f"Ignoring failure for completed donation {donation.id} ({payment_intent_id})")
                return donation
            donation.status = "failed"

        logger.info(f"Donation {donation.id} failed: {reason or 'payment failed'}")
        return donation

    def list_campaign_donations(self, campaign_id: int, page: int = 1, limit: int = 10) -> Dict:
        if self.db.get(Campaign, campaign_id) is None:
            raise CampaignNotFound(campaign_id)

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        query = select(Donation).where(
            Donation.campaign_id == campaign_id,
            Donation.status == "completed",
        )

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar() or 0
        donations = self.db.execute(
            query.order_by(Donation.completed_at.desc(), Donation.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        return {
            "donations": [donation_to_dict(d, public=True) for d in donations],
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        }
