"""
StripeService error translation, with the stripe library calls patched out.

A transfer that may have reached Stripe (network error, 5xx) must never be
reported as rejected: the payout would be reversed while the money moves.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from services.exceptions import PaymentProcessorError, TransferError, UnknownOutcome
from services.payout_service import PayoutOrchestrator
from services.stripe_service import StripeService


def raising(error):
    def _create(**kwargs):
        raise error
    return _create


@pytest.fixture
def stripe_processor():
    return StripeService(api_key="sk_test_fake", webhook_secret="whsec_test_secret")


class TestCreateTransfer:

    def test_success(self, monkeypatch, stripe_processor):
        calls = []

        def _create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(
                id="tr_123", amount=kwargs["amount"], currency=kwargs["currency"],
                destination=kwargs["destination"], metadata=kwargs["metadata"],
            )

        monkeypatch.setattr(stripe.Transfer, "create", _create)

        transfer = stripe_processor.create_transfer(
            Decimal("138.46"), "USD", "acct_test_123", metadata={"payout_id": "7"}, idempotency_key="payout-7"
        )

        assert transfer["id"] == "tr_123"
        assert calls[0]["amount"] == 13846
        assert calls[0]["currency"] == "usd"
        assert calls[0]["idempotency_key"] == "payout-7"

    def test_api_error_is_unknown_outcome(self, monkeypatch, stripe_processor):
        monkeypatch.setattr(
            stripe.Transfer, "create", raising(stripe.APIError("Internal server error", http_status=500))
        )

        with pytest.raises(UnknownOutcome):
            stripe_processor.create_transfer(Decimal("10.00"), "USD", "acct_test_123", idempotency_key="payout-1")

    def test_connection_error_is_unknown_outcome(self, monkeypatch, stripe_processor):
        monkeypatch.setattr(stripe.Transfer, "create", raising(stripe.APIConnectionError("Read timed out")))

        with pytest.raises(UnknownOutcome):
            stripe_processor.create_transfer(Decimal("10.00"), "USD", "acct_test_123")

    def test_any_5xx_is_unknown_outcome(self, monkeypatch, stripe_processor):
        monkeypatch.setattr(
            stripe.Transfer, "create",
            raising(stripe.InvalidRequestError("Bad gateway", None, http_status=502)),
        )

        with pytest.raises(UnknownOutcome):
            stripe_processor.create_transfer(Decimal("10.00"), "USD", "acct_test_123")

    def test_rejection_is_transfer_error(self, monkeypatch, stripe_processor):
        monkeypatch.setattr(
            stripe.Transfer, "create",
            raising(stripe.InvalidRequestError("No such destination: 'acct_gone'", "destination", http_status=400)),
        )

        with pytest.raises(TransferError):
            stripe_processor.create_transfer(Decimal("10.00"), "USD", "acct_gone")


class TestPayoutWithStripe:

    def test_server_error_keeps_reservation(self, monkeypatch, db_session, settings, stripe_processor,
                                            make_campaign, owner):
        campaign = make_campaign(owner, available_balance="145.75")
        monkeypatch.setattr(
            stripe.Transfer, "create", raising(stripe.APIError("Internal server error", http_status=500))
        )

        payout = PayoutOrchestrator(db_session, settings, stripe_processor).request_payout(campaign.id, owner.id)

        assert payout.status == "processing"
        assert payout.failure_reason is None
        db_session.refresh(campaign)
        assert campaign.available_balance == Decimal("0.00")

    def test_rejection_restores_balance(self, monkeypatch, db_session, settings, stripe_processor,
                                        make_campaign, owner):
        campaign = make_campaign(owner, available_balance="145.75")
        monkeypatch.setattr(
            stripe.Transfer, "create",
            raising(stripe.InvalidRequestError("No such destination", "destination", http_status=400)),
        )

        with pytest.raises(TransferError):
            PayoutOrchestrator(db_session, settings, stripe_processor).request_payout(campaign.id, owner.id)

        db_session.refresh(campaign)
        assert campaign.available_balance == Decimal("145.75")


class TestConnectAccounts:

    def test_account_creation_failure(self, monkeypatch, stripe_processor):
        monkeypatch.setattr(
            stripe.Account, "create",
            raising(stripe.InvalidRequestError("Country not supported", "country", http_status=400)),
        )

        with pytest.raises(PaymentProcessorError):
            stripe_processor.create_connect_account("owner@example.com", "ZZ")

    def test_retrieve_account(self, monkeypatch, stripe_processor):
        account = {
            "id": "acct_1",
            "country": "US",
            "email": "owner@example.com",
            "details_submitted": True,
            "capabilities": {"transfers": "active"},
            "requirements": {"currently_due": []},
        }
        monkeypatch.setattr(
            stripe.Account, "retrieve",
            lambda account_id: SimpleNamespace(id=account_id, get=account.get),
        )

        result = stripe_processor.retrieve_account("acct_1")

        assert result["details_submitted"] is True
        assert result["capabilities"] == {"transfers": "active"}
        assert result["requirements_due"] == []
