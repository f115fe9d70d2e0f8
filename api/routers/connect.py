"""
Stripe Connect Router - Campaign Owner Onboarding

A campaign needs a connected account before POST /payouts/request can
transfer to it.

Endpoints (campaign owner only):
- POST /stripe/connect/onboard - Create the account if missing, return the onboarding link
- GET /stripe/connect/status/{campaign_id} - Onboarding and capability status
- POST /stripe/connect/login - Express dashboard link
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List, Optional
import logging

from api.deps import get_connect_service, get_current_user
from database.models import User
from services.connect_service import ConnectService

router = APIRouter(prefix="/stripe", tags=["Stripe Connect"])
logger = logging.getLogger(__name__)


class ConnectRequest(BaseModel):
    campaign_id: int


class OnboardResponse(BaseModel):
    url: str
    account_id: str


class ConnectStatusResponse(BaseModel):
    connected: bool
    needs_onboarding: bool
    account_id: Optional[str] = None
    can_receive_payments: bool = False
    can_receive_payouts: bool = False
    country: Optional[str] = None
    email: Optional[str] = None
    requirements_due: List[str] = []


class LoginLinkResponse(BaseModel):
    url: str


@router.post("/connect/onboard", response_model=OnboardResponse)
def onboard(
    request: ConnectRequest,
    current_user: User = Depends(get_current_user),
    service: ConnectService = Depends(get_connect_service)
):
    """Start (or resume) Stripe onboarding for a campaign."""
    return service.onboard(request.campaign_id, current_user)


@router.get("/connect/status/{campaign_id}", response_model=ConnectStatusResponse)
def connect_status(
    campaign_id: int,
    current_user: User = Depends(get_current_user),
    service: ConnectService = Depends(get_connect_service)
):
    return service.status(campaign_id, current_user)


@router.post("/connect/login", response_model=LoginLinkResponse)
def login_link(
    request: ConnectRequest,
    current_user: User = Depends(get_current_user),
    service: ConnectService = Depends(get_connect_service)
):
    """Stripe Express dashboard link for an onboarded campaign."""
    return service.login_link(request.campaign_id, current_user)
