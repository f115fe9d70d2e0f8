"""
Shared FastAPI dependencies.

Everything a router needs (session, settings, payment processor, caller) is
injected here so tests can swap any of them with app.dependency_overrides.
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database.db import SessionLocal, get_db
from database.models import User
from services.auth_service import authenticate
from services.connect_service import ConnectService
from services.donation_service import DonationService
from services.exceptions import AdminRequired, Unauthenticated
from services.payout_service import PayoutOrchestrator
from services.settings_service import PlatformSettings, load_settings
from services.stripe_service import stripe_service

# auto_error=False: missing headers are answered by the LedgerError handler
security = HTTPBearer(auto_error=False)


def get_payment_processor():
    """Stripe in production; tests override with a fake processor."""
    return stripe_service


def get_platform_settings(request: Request) -> PlatformSettings:
    """
    Settings validated at startup (main.py stores them on app.state).

    Loaded lazily when the app runs without its startup event. Changing
    platform_settings rows takes effect on restart.
    """
    settings = getattr(request.app.state, "platform_settings", None)
    if settings is None:
        db = SessionLocal()
        try:
            settings = load_settings(db)
        finally:
            db.close()
        request.app.state.platform_settings = settings
    return settings


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Extract and validate user from JWT token."""
    user_id = authenticate(credentials.credentials if credentials else None)

    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise Unauthenticated("User not found or inactive")

    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Ensure current user is a super admin."""
    if not current_user.is_admin:
        raise AdminRequired("Super admin access required")
    return current_user


def get_payout_orchestrator(
    db: Session = Depends(get_db),
    settings: PlatformSettings = Depends(get_platform_settings),
    processor=Depends(get_payment_processor)
) -> PayoutOrchestrator:
    return PayoutOrchestrator(db, settings, processor)


def get_donation_service(
    db: Session = Depends(get_db),
    settings: PlatformSettings = Depends(get_platform_settings),
    processor=Depends(get_payment_processor)
) -> DonationService:
    return DonationService(db, settings, processor)


def get_connect_service(
    db: Session = Depends(get_db),
    processor=Depends(get_payment_processor)
) -> ConnectService:
    return ConnectService(db, processor)
