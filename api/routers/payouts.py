"""
Payout Router - Campaign Owner Withdrawals

Payouts FROM platform TO campaign owners:
- Stripe Connect: instant transfer of the whole available balance
- Manual: bank transfer, PayPal or check, reviewed by an admin

Endpoints:
- GET /payouts/settings - Public fee settings
- GET /payouts/manual/instructions - Manual payout methods and fees
- GET /payouts/campaign/{id}/balance - Campaign balance (owner)
- GET /payouts/campaign/{id}/financials - Financial overview (owner)
- POST /payouts/request - Stripe Connect payout (owner)
- POST /payouts/manual - Manual payout request (owner)
- GET /payouts/history - Caller's payouts, paginated
- GET /payouts/{id} - Payout details (owner or admin)
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import logging

from api.deps import get_current_user, get_payout_orchestrator, get_platform_settings
from database.db import get_db
from database.models import Campaign, Payout, User
from services.exceptions import CampaignNotFound, NotOwner
from services.notification_service import send_payout_confirmation
from services.payout_service import (
    MANUAL_PROCESSING_TIMES, REQUIRED_ACCOUNT_FIELDS, PayoutOrchestrator, payout_to_dict
)
from services.settings_service import PlatformSettings

router = APIRouter(prefix="/payouts", tags=["Payouts"])
logger = logging.getLogger(__name__)


class PayoutRequest(BaseModel):
    campaign_id: int


class ManualPayoutRequest(BaseModel):
    """Manual payout (requires admin approval)."""
    campaign_id: int
    payment_method: str = Field(..., pattern=r'^(bank_transfer|paypal|check)$')
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)  # Defaults to full balance
    account_details: Dict[str, Optional[str]] = Field(default_factory=dict)


class PayoutResponse(BaseModel):
    """Payout response schema."""
    id: int
    campaign_id: int
    user_id: int
    amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    currency: str
    status: str
    payment_method: str
    external_transfer_id: Optional[str]
    status_message: Optional[str]
    failure_reason: Optional[str]
    needs_reconciliation: bool = False
    requested_at: Optional[datetime]
    approved_at: Optional[datetime]
    processed_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PayoutHistoryResponse(BaseModel):
    payouts: List[PayoutResponse]
    page: int
    limit: int
    total: int
    pages: int


class BalanceResponse(BaseModel):
    campaign_id: int
    currency: str
    available_balance: Decimal
    paid_out: Decimal
    total_raised: Decimal
    minimum_payout_amount: Decimal
    can_payout: bool


class TransactionResponse(BaseModel):
    id: int
    type: str
    status: str
    amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    currency: str
    description: Optional[str]
    donation_id: Optional[str]
    payout_id: Optional[int]
    metadata: Dict
    created_at: Optional[datetime]


class FinancialsResponse(BaseModel):
    campaign_id: int
    currency: str
    total_raised: Decimal
    donation_count: int
    total_donations_gross: Decimal
    total_platform_fees: Decimal
    total_processing_fees: Decimal
    net_received: Decimal
    available_balance: Decimal
    paid_out: Decimal
    pending_payouts: Decimal
    recent_transactions: List[TransactionResponse]


def _owned_campaign(db: Session, campaign_id: int, user: User) -> Campaign:
    campaign = db.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFound(campaign_id)
    if campaign.user_id != user.id and not user.is_admin:
        raise NotOwner(f"Campaign {campaign_id} does not belong to you", campaign_id=campaign_id)
    return campaign


def payout_notification(payout: Payout) -> Dict:
    """Payload for send_payout_confirmation (plain data, safe after the session closes)."""
    owner = payout.requester
    return {
        "payout_id": payout.id,
        "owner_email": owner.email if owner else None,
        "status": payout.status,
        "amount": str(payout.amount),
        "net_amount": str(payout.net_amount),
        "currency": payout.currency,
        "campaign_title": payout.campaign.title if payout.campaign else None,
        "failure_reason": payout.failure_reason,
    }


@router.get("/settings")
def get_payout_settings(settings: PlatformSettings = Depends(get_platform_settings)):
    """Public fee schedule and payout policy."""
    return settings.public_dict()


@router.get("/manual/instructions")
def get_manual_payout_instructions(settings: PlatformSettings = Depends(get_platform_settings)):
    """How manual payouts work, per method."""
    return {
        "steps": [
            "Submit your payout request with payment details",
            "An admin reviews the request",
            "The payment is sent and the payout marked completed",
        ],
        "methods": [
            {
                "method": method,
                "required_fields": list(fields),
                "processing_time": MANUAL_PROCESSING_TIMES[method],
            }
            for method, fields in REQUIRED_ACCOUNT_FIELDS.items()
        ],
        "fees": {
            "platform_fee_percentage": str(settings.payout_fee_percent),
            "processing_fee_percentage": str(settings.manual_processing_fee_percent),
            "minimum_payout_amount": str(settings.minimum_payout_amount),
        },
    }


@router.get("/campaign/{campaign_id}/balance", response_model=BalanceResponse)
def get_campaign_balance(
    campaign_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Available balance, paid out total and whether a payout can be requested."""
    _owned_campaign(db, campaign_id, current_user)
    return orchestrator.ledger.get_balance(campaign_id, orchestrator.settings.minimum_payout_amount)


@router.get("/campaign/{campaign_id}/financials", response_model=FinancialsResponse)
def get_campaign_financials(
    campaign_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Totals, fees taken and the last 50 ledger entries."""
    _owned_campaign(db, campaign_id, current_user)
    return orchestrator.ledger.get_financials(campaign_id)


@router.post("/request", response_model=PayoutResponse, status_code=201)
def request_payout(
    request: PayoutRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """
    Pay out the whole available balance to the campaign's Stripe Connect account.

    Responses:
    - 201: payout processing (transfer created, or awaiting confirmation)
    - 422: below minimum, no connected account, insufficient balance
    - 502: Stripe rejected the transfer (balance already restored)
    """
    payout = orchestrator.request_payout(request.campaign_id, current_user.id)
    background_tasks.add_task(send_payout_confirmation, payout_notification(payout))
    return payout_to_dict(payout)


@router.post("/manual", response_model=PayoutResponse, status_code=201)
def request_manual_payout(
    request: ManualPayoutRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """
    Request a bank transfer, PayPal or check payout.

    The amount is reserved immediately; an admin approves and sends it.
    """
    payout = orchestrator.request_manual_payout(
        campaign_id=request.campaign_id,
        user_id=current_user.id,
        payment_method=request.payment_method,
        account_details=request.account_details,
        amount=request.amount,
    )
    return payout_to_dict(payout)


@router.get("/history", response_model=PayoutHistoryResponse)
def get_payout_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    history = orchestrator.get_payout_history(current_user.id, page=page, limit=limit)
    history["payouts"] = [payout_to_dict(p) for p in history["payouts"]]
    return history


@router.get("/{payout_id}", response_model=PayoutResponse)
def get_payout(
    payout_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    return payout_to_dict(orchestrator.get_payout_for_user(payout_id, current_user))
