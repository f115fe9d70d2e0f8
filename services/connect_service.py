"""
Stripe Connect Onboarding

Gives a campaign the payout destination request_payout transfers to.

Flow:
1. Owner calls onboard: an Express account is created (once per campaign)
   and its id stored on Campaign.stripe_connect_account_id
2. Owner completes Stripe's hosted onboarding via the returned link
3. status reports whether the account can receive transfers
4. login_link opens the Express dashboard for an onboarded account

Configure via env:
- FRONTEND_URL: base for the onboarding return/refresh URLs
- STRIPE_CONNECT_COUNTRY: country for new accounts (default US)
"""

import os
import logging
from typing import Dict

from sqlalchemy.orm import Session

from database.db import atomic
from database.models import Campaign, User
from services.exceptions import CampaignNotFound, NotOwner, TransferDestinationMissing
from services.ledger import campaign_for_update

logger = logging.getLogger(__name__)


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


class ConnectService:
    """
    Args:
        db: SQLAlchemy session
        processor: StripeService (or a test double) with the Connect account calls
    """

    def __init__(self, db: Session, processor):
        self.db = db
        self.processor = processor

    def _owned_campaign(self, campaign_id: int, user: User) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        if campaign.user_id != user.id:
            raise NotOwner(f"Campaign {campaign_id} does not belong to you", campaign_id=campaign_id)
        return campaign

    def onboard(self, campaign_id: int, user: User) -> Dict:
        """
        Create (or reuse) the campaign's connected account and an onboarding link.

        The account is created outside the campaign lock; if another request
        stored an account meanwhile, that one wins and the new one is unused.
        """
        campaign = self._owned_campaign(campaign_id, user)
        account_id = campaign.stripe_connect_account_id

        if not account_id:
            created = self.processor.create_connect_account(
                email=user.email,
                country=os.getenv("STRIPE_CONNECT_COUNTRY", "US"),
            )
            with atomic(self.db):
                campaign = self.db.execute(campaign_for_update(campaign_id)).scalars().one()
                if campaign.stripe_connect_account_id:
                    logger.warning(
                        f"Campaign {campaign_id} already has {campaign.stripe_connect_account_id}, "
                        f"leaving {created['id']} unused"
                    )
                else:
                    campaign.stripe_connect_account_id = created["id"]
                account_id = campaign.stripe_connect_account_id
            logger.info(f"Campaign {campaign_id} linked to Stripe account {account_id}")

        base = _frontend_url()
        link = self.processor.create_account_link(
            account_id,
            refresh_url=f"{base}/dashboard?tab=payouts&refresh=true",
            return_url=f"{base}/dashboard?tab=payouts&connected=true",
        )
        return {"url": link["url"], "account_id": account_id}

    def status(self, campaign_id: int, user: User) -> Dict:
        campaign = self._owned_campaign(campaign_id, user)
        if not campaign.stripe_connect_account_id:
            return {"connected": False, "needs_onboarding": True, "account_id": None}

        account = self.processor.retrieve_account(campaign.stripe_connect_account_id)
        capabilities = account.get("capabilities") or {}
        can_receive_payments = capabilities.get("card_payments") == "active"
        can_receive_payouts = capabilities.get("transfers") == "active"
        details_submitted = bool(account.get("details_submitted"))
        requirements_due = list(account.get("requirements_due") or [])

        return {
            "connected": details_submitted and (can_receive_payments or can_receive_payouts),
            "needs_onboarding": not details_submitted or bool(requirements_due),
            "can_receive_payments": can_receive_payments,
            "can_receive_payouts": can_receive_payouts,
            "account_id": campaign.stripe_connect_account_id,
            "country": account.get("country"),
            "email": account.get("email"),
            "requirements_due": requirements_due,
        }

    def login_link(self, campaign_id: int, user: User) -> Dict:
        campaign = self._owned_campaign(campaign_id, user)
        if not campaign.stripe_connect_account_id:
            raise TransferDestinationMissing(
                "Campaign has no Stripe Connect account yet, onboard first",
                campaign_id=campaign_id,
            )
        return self.processor.create_login_link(campaign.stripe_connect_account_id)
