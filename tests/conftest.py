"""
Shared pytest fixtures for FundRaise tests.

Every test gets a fresh in-memory SQLite database. The FastAPI app is wired
to it through dependency overrides, together with fixed fee settings and a
fake Stripe processor that records calls and can be told to fail.
"""
import os

# Must be set before database.db / services.auth_service are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ.pop("SENDGRID_API_KEY", None)

import hashlib  # noqa: E402
import hmac  # noqa: E402
import itertools  # noqa: E402
import json  # noqa: E402
import time  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from api.deps import get_payment_processor, get_platform_settings  # noqa: E402
from database.db import get_db  # noqa: E402
from database.models import Base, Campaign, User, UserRole  # noqa: E402
from main import app  # noqa: E402
from services.auth_service import create_access_token  # noqa: E402
from services.exceptions import PaymentProcessorError  # noqa: E402
from services.fee_calculator import to_cents  # noqa: E402
from services.settings_service import PlatformSettings  # noqa: E402
from services.stripe_service import StripeService  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"

_ids = itertools.count(1)


class FakeProcessor:
    """Stands in for StripeService; webhook signatures are still really verified."""

    def __init__(self):
        self.payment_intents = {}
        self.transfers = []
        self.transfer_error = None  # exception instance raised by create_transfer
        self.accounts = {}
        self.account_links = []
        self.verifier = StripeService(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)

    def create_payment_intent(self, amount, currency, customer_email=None, metadata=None):
        pi_id = f"pi_test_{next(_ids)}"
        self.payment_intents[pi_id] = {
            "id": pi_id,
            "status": "requires_payment_method",
            "amount": to_cents(amount),
            "currency": currency.lower(),
            "client_secret": f"{pi_id}_secret",
            "metadata": dict(metadata or {}),
        }
        return dict(self.payment_intents[pi_id])

    def add_payment_intent(self, amount, status="succeeded", metadata=None):
        """Register a PaymentIntent as if the donor had already paid."""
        pi_id = f"pi_test_{next(_ids)}"
        self.payment_intents[pi_id] = {
            "id": pi_id,
            "status": status,
            "amount": to_cents(amount),
            "currency": "usd",
            "metadata": dict(metadata or {}),
        }
        return pi_id

    def mark_paid(self, pi_id):
        self.payment_intents[pi_id]["status"] = "succeeded"

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.payment_intents:
            raise PaymentProcessorError(f"No such payment_intent: {payment_intent_id}")
        return dict(self.payment_intents[payment_intent_id])

    def get_payment_status(self, payment_intent_id):
        return self.retrieve_payment_intent(payment_intent_id)["status"]

    def create_transfer(self, amount, currency, destination, metadata=None, idempotency_key=None, description=None):
        self.transfers.append({
            "amount": amount,
            "currency": currency,
            "destination": destination,
            "metadata": dict(metadata or {}),
            "idempotency_key": idempotency_key,
        })
        if self.transfer_error is not None:
            raise self.transfer_error
        return {
            "id": f"tr_test_{next(_ids)}",
            "amount": to_cents(amount),
            "currency": currency.lower(),
            "destination": destination,
            "metadata": dict(metadata or {}),
        }

    def create_connect_account(self, email, country):
        account_id = f"acct_test_{next(_ids)}"
        self.accounts[account_id] = {
            "id": account_id,
            "country": country,
            "email": email,
            "details_submitted": False,
            "capabilities": {},
            "requirements_due": ["individual.dob.day", "external_account"],
        }
        return {"id": account_id}

    def create_account_link(self, account_id, refresh_url, return_url):
        self.account_links.append({"account": account_id, "refresh_url": refresh_url, "return_url": return_url})
        return {"url": f"https://connect.stripe.test/setup/{account_id}", "expires_at": int(time.time()) + 300}

    def retrieve_account(self, account_id):
        if account_id not in self.accounts:
            raise PaymentProcessorError(f"No such account: {account_id}")
        return dict(self.accounts[account_id])

    def create_login_link(self, account_id):
        return {"url": f"https://connect.stripe.test/express/{account_id}"}

    def construct_webhook_event(self, payload, signature):
        return self.verifier.construct_webhook_event(payload, signature)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = None) -> str:
    return json.dumps({
        "id": event_id or f"evt_test_{next(_ids)}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def settings():
    """Default fee schedule: 5% platform, 2.9% + 0.30 processing, 25.00 minimum."""
    return PlatformSettings(
        platform_fee_percent=Decimal("5.0"),
        processing_fee_percent=Decimal("2.9"),
        processing_fee_fixed=Decimal("0.30"),
        payout_fee_percent=Decimal("5.0"),
        manual_processing_fee_percent=Decimal("3.0"),
        minimum_payout_amount=Decimal("25.00"),
        payout_holding_period_days=7,
        auto_payout_enabled=False,
        currency="USD",
    )


@pytest.fixture
def processor():
    return FakeProcessor()


# ============================================================================
# Model factories
# ============================================================================

@pytest.fixture
def make_user(db_session):
    def _make_user(role=UserRole.CAMPAIGN_OWNER, email=None):
        n = next(_ids)
        user = User(email=email or f"user{n}@example.com", full_name=f"User {n}", role=role)
        db_session.add(user)
        db_session.commit()
        return user
    return _make_user


@pytest.fixture
def make_campaign(db_session):
    def _make_campaign(owner, available_balance="0.00", connect_account="acct_test_123", is_active=True):
        n = next(_ids)
        campaign = Campaign(
            user_id=owner.id,
            title=f"Campaign {n}",
            slug=f"campaign-{n}",
            goal_amount=Decimal("10000.00"),
            current_amount=Decimal(available_balance),
            available_balance=Decimal(available_balance),
            paid_out=Decimal("0.00"),
            currency="USD",
            stripe_connect_account_id=connect_account,
            is_active=is_active,
        )
        db_session.add(campaign)
        db_session.commit()
        return campaign
    return _make_campaign


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role=UserRole.SUPER_ADMIN)


@pytest.fixture
def campaign(make_campaign, owner):
    """Campaign with 100.00 available and a connected Stripe account."""
    return make_campaign(owner, available_balance="100.00")


def bearer(user) -> dict:
    token = create_access_token({"user_id": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """auth_headers(user) -> Authorization header dict."""
    return bearer


@pytest.fixture
def signed_event():
    """signed_event(type, obj, event_id=None) -> (body, headers) ready to POST."""
    def _signed_event(event_type, obj, event_id=None, secret=WEBHOOK_SECRET):
        body = stripe_event(event_type, obj, event_id=event_id)
        headers = {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}
        return body, headers
    return _signed_event


# ============================================================================
# API client
# ============================================================================

@pytest.fixture
def client(db_session, settings, processor):
    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_platform_settings] = lambda: settings
    app.dependency_overrides[get_payment_processor] = lambda: processor

    yield TestClient(app)

    app.dependency_overrides.clear()
