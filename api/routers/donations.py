"""
Donations Router

Card donations via Stripe PaymentIntents.

Endpoints:
- POST /donations/payment-intent - Start a donation (returns client_secret)
- POST /donations/complete - Confirm a paid donation and credit the campaign
- GET /donations/{id} - Donation details
- GET /donations/campaign/{campaign_id} - Paginated donations for a campaign
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import logging

from api.deps import get_donation_service
from database.models import Donation
from services.donation_service import DonationService, donation_to_dict
from services.notification_service import send_donation_receipt

router = APIRouter(prefix="/donations", tags=["Donations"])
logger = logging.getLogger(__name__)


class PaymentIntentCreate(BaseModel):
    """Start a card donation."""
    campaign_id: int
    amount: Decimal = Field(..., gt=0, le=10000, decimal_places=2)
    donor_name: Optional[str] = Field(None, max_length=100)
    donor_email: Optional[str] = Field(None, max_length=255, pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
    message: Optional[str] = Field(None, max_length=500)
    is_anonymous: bool = False


class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str]
    payment_intent_id: str
    donation_id: str
    amount: Decimal
    currency: str


class DonationComplete(BaseModel):
    """Client report of a paid PaymentIntent."""
    campaign_id: int
    amount: Decimal = Field(..., gt=0, le=10000, decimal_places=2)
    payment_intent_id: str = Field(..., min_length=1)
    donation_id: Optional[str] = Field(None, max_length=36)  # Idempotency key
    donor_name: Optional[str] = Field(None, max_length=100)
    donor_email: Optional[str] = Field(None, max_length=255, pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
    message: Optional[str] = Field(None, max_length=500)
    is_anonymous: bool = False


class DonationResponse(BaseModel):
    id: str
    campaign_id: int
    amount: Decimal
    currency: str
    donor_name: Optional[str]
    donor_email: Optional[str] = None
    message: Optional[str]
    is_anonymous: bool
    status: str
    payment_intent_id: Optional[str] = None
    created_at: Optional[datetime]
    completed_at: Optional[datetime]


class DonationCompleteResponse(BaseModel):
    donation: DonationResponse
    net_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    duplicate: bool


class DonationListResponse(BaseModel):
    donations: List[DonationResponse]
    page: int
    limit: int
    total: int
    pages: int


def donation_receipt(donation: Donation) -> Dict:
    """Payload for send_donation_receipt. Scheduled only where the credit was first applied."""
    return {
        "donation_id": donation.id,
        "donor_email": donation.donor_email,
        "donor_name": donation.donor_name,
        "amount": str(donation.amount),
        "currency": donation.currency,
        "campaign_title": donation.campaign.title if donation.campaign else None,
    }


@router.post("/payment-intent", response_model=PaymentIntentResponse, status_code=201)
def create_payment_intent(
    request: PaymentIntentCreate,
    service: DonationService = Depends(get_donation_service)
):
    """
    Create a Stripe PaymentIntent for a donation.

    The frontend confirms it with stripe.js using client_secret, then calls
    POST /donations/complete (the payment_intent.succeeded webhook does the
    same server-side).
    """
    return service.create_payment_intent(
        campaign_id=request.campaign_id,
        amount=request.amount,
        donor_name=request.donor_name,
        donor_email=request.donor_email,
        message=request.message,
        is_anonymous=request.is_anonymous,
    )


@router.post("/complete", response_model=DonationCompleteResponse, status_code=201)
def complete_donation(
    request: DonationComplete,
    background_tasks: BackgroundTasks,
    service: DonationService = Depends(get_donation_service)
):
    """
    Verify a paid PaymentIntent, record the donation and credit the campaign.

    Repeating the call for the same payment returns the original donation
    with duplicate=true; the campaign is credited once.
    """
    donation, result = service.complete_donation(
        campaign_id=request.campaign_id,
        gross_amount=request.amount,
        payment_intent_id=request.payment_intent_id,
        donation_id=request.donation_id,
        donor_name=request.donor_name,
        donor_email=request.donor_email,
        message=request.message,
        is_anonymous=request.is_anonymous,
    )

    if not result.duplicate:
        background_tasks.add_task(send_donation_receipt, donation_receipt(donation))

    return {
        "donation": donation_to_dict(donation),
        "net_amount": result.net_amount,
        "platform_fee": result.platform_fee,
        "processing_fee": result.processing_fee,
        "duplicate": result.duplicate,
    }


@router.get("/campaign/{campaign_id}", response_model=DonationListResponse)
def list_campaign_donations(
    campaign_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: DonationService = Depends(get_donation_service)
):
    """Completed donations for a campaign, newest first. Anonymous donors stay hidden."""
    return service.list_campaign_donations(campaign_id, page=page, limit=limit)


@router.get("/{donation_id}", response_model=DonationResponse)
def get_donation(donation_id: str, service: DonationService = Depends(get_donation_service)):
    return donation_to_dict(service.get_donation(donation_id), public=True)
