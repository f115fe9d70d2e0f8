"""
API tests through FastAPI's TestClient.

Money comes back as JSON strings ("145.75"); compare through Decimal.
"""

from decimal import Decimal

import pytest

from database.models import Payout
from services.exceptions import TransferError

BANK_DETAILS = {
    "account_holder": "Alex Owner",
    "bank_name": "First Bank",
    "account_number": "000123456789",
    "routing_number": "110000000",
}


@pytest.fixture
def funded_campaign(make_campaign, owner):
    return make_campaign(owner, available_balance="145.75")


class TestPublicEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/health"

    def test_payout_settings(self, client):
        data = client.get("/payouts/settings").json()

        assert Decimal(data["platform_fee_percentage"]) == Decimal("5.0")
        assert Decimal(data["minimum_payout_amount"]) == Decimal("25.00")
        assert data["currency"] == "USD"

    def test_manual_instructions(self, client):
        data = client.get("/payouts/manual/instructions").json()

        methods = {m["method"]: m for m in data["methods"]}
        assert set(methods) == {"bank_transfer", "paypal", "check"}
        assert methods["paypal"]["required_fields"] == ["paypal_email"]
        assert Decimal(data["fees"]["processing_fee_percentage"]) == Decimal("3.0")


class TestAuthentication:

    def test_missing_token(self, client, campaign):
        response = client.get(f"/payouts/campaign/{campaign.id}/balance")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthenticated"

    def test_garbage_token(self, client, campaign):
        response = client.get(
            f"/payouts/campaign/{campaign.id}/balance",
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    def test_inactive_user(self, client, db_session, campaign, make_user, auth_headers):
        user = make_user()
        user.is_active = False
        db_session.commit()

        response = client.get("/payouts/history", headers=auth_headers(user))

        assert response.status_code == 401


class TestCampaignBalance:

    def test_owner_sees_balance(self, client, funded_campaign, owner, auth_headers):
        response = client.get(f"/payouts/campaign/{funded_campaign.id}/balance", headers=auth_headers(owner))

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["available_balance"]) == Decimal("145.75")
        assert Decimal(data["paid_out"]) == Decimal("0")
        assert data["can_payout"] is True

    def test_other_user_forbidden(self, client, funded_campaign, make_user, auth_headers):
        response = client.get(f"/payouts/campaign/{funded_campaign.id}/balance", headers=auth_headers(make_user()))

        assert response.status_code == 403
        assert response.json()["code"] == "not_owner"

    def test_admin_allowed(self, client, funded_campaign, admin, auth_headers):
        response = client.get(f"/payouts/campaign/{funded_campaign.id}/balance", headers=auth_headers(admin))

        assert response.status_code == 200

    def test_unknown_campaign(self, client, owner, auth_headers):
        response = client.get("/payouts/campaign/9999/balance", headers=auth_headers(owner))

        assert response.status_code == 404
        assert response.json()["campaign_id"] == 9999

    def test_financials(self, client, funded_campaign, owner, auth_headers):
        client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "paypal",
            "amount": "40.00",
            "account_details": {"paypal_email": "alex@example.com"},
        })

        response = client.get(f"/payouts/campaign/{funded_campaign.id}/financials", headers=auth_headers(owner))

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["available_balance"]) == Decimal("105.75")
        assert Decimal(data["pending_payouts"]) == Decimal("40.00")
        assert [t["type"] for t in data["recent_transactions"]] == ["payout"]


class TestPayoutRequests:

    def test_stripe_payout(self, client, db_session, processor, funded_campaign, owner, auth_headers):
        response = client.post(
            "/payouts/request", headers=auth_headers(owner), json={"campaign_id": funded_campaign.id}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "processing"
        assert Decimal(data["amount"]) == Decimal("145.75")
        assert Decimal(data["net_amount"]) == Decimal("138.46")
        assert data["external_transfer_id"].startswith("tr_test_")
        assert len(processor.transfers) == 1

        db_session.refresh(funded_campaign)
        assert funded_campaign.available_balance == Decimal("0.00")

    def test_transfer_rejected(self, client, db_session, processor, funded_campaign, owner, auth_headers):
        processor.transfer_error = TransferError("Your destination account needs to have at least one capability")

        response = client.post(
            "/payouts/request", headers=auth_headers(owner), json={"campaign_id": funded_campaign.id}
        )

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "transfer_error"
        assert db_session.get(Payout, body["payout_id"]).status == "failed"
        db_session.refresh(funded_campaign)
        assert funded_campaign.available_balance == Decimal("145.75")

    def test_below_minimum(self, client, make_campaign, owner, auth_headers):
        campaign = make_campaign(owner, available_balance="10.00")

        response = client.post("/payouts/request", headers=auth_headers(owner), json={"campaign_id": campaign.id})

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "below_minimum_payout"
        assert Decimal(body["available_balance"]) == Decimal("10.00")

    def test_not_owner(self, client, funded_campaign, make_user, auth_headers):
        response = client.post(
            "/payouts/request", headers=auth_headers(make_user()), json={"campaign_id": funded_campaign.id}
        )

        assert response.status_code == 403

    def test_manual_payout(self, client, funded_campaign, owner, auth_headers):
        response = client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "bank_transfer",
            "amount": "100.00",
            "account_details": BANK_DETAILS,
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert Decimal(data["processing_fee"]) == Decimal("3.00")
        assert Decimal(data["net_amount"]) == Decimal("92.00")

    def test_manual_payout_missing_details(self, client, funded_campaign, owner, auth_headers):
        response = client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "bank_transfer",
            "account_details": {"bank_name": "First Bank"},
        })

        assert response.status_code == 422
        assert "routing_number" in response.json()["missing_fields"]

    def test_manual_payout_unknown_method(self, client, funded_campaign, owner, auth_headers):
        response = client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "crypto",
            "account_details": {},
        })

        assert response.status_code == 422

    def test_history_and_detail(self, client, funded_campaign, owner, make_user, auth_headers):
        created = client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "paypal",
            "account_details": {"paypal_email": "alex@example.com"},
        }).json()

        history = client.get("/payouts/history", headers=auth_headers(owner)).json()
        assert history["total"] == 1
        assert history["payouts"][0]["id"] == created["id"]

        assert client.get(f"/payouts/{created['id']}", headers=auth_headers(owner)).status_code == 200
        assert client.get(f"/payouts/{created['id']}", headers=auth_headers(make_user())).status_code == 403
        assert client.get("/payouts/424242", headers=auth_headers(owner)).status_code == 404


class TestAdminPayouts:

    @pytest.fixture
    def pending_payout(self, client, funded_campaign, owner, auth_headers):
        return client.post("/payouts/manual", headers=auth_headers(owner), json={
            "campaign_id": funded_campaign.id,
            "payment_method": "bank_transfer",
            "account_details": BANK_DETAILS,
        }).json()

    def test_non_admin_forbidden(self, client, owner, auth_headers, pending_payout):
        response = client.get("/admin/payouts/pending", headers=auth_headers(owner))

        assert response.status_code == 403
        assert response.json()["code"] == "admin_required"

    def test_review_flow(self, client, db_session, funded_campaign, admin, auth_headers, pending_payout):
        headers = auth_headers(admin)
        payout_id = pending_payout["id"]

        pending = client.get("/admin/payouts/pending", headers=headers).json()
        assert [p["id"] for p in pending] == [payout_id]

        assert client.post(f"/admin/payouts/{payout_id}/approve", headers=headers).json()["status"] == "approved"

        processed = client.post(f"/admin/payouts/{payout_id}/process", headers=headers, json={"reference": "WIRE-1"})
        assert processed.json()["status"] == "processing"
        assert processed.json()["external_transfer_id"] == "WIRE-1"

        completed = client.post(f"/admin/payouts/{payout_id}/reconcile", headers=headers, json={"outcome": "completed"})
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"

        db_session.refresh(funded_campaign)
        assert funded_campaign.paid_out == Decimal(completed.json()["net_amount"])

    def test_reject(self, client, db_session, funded_campaign, admin, auth_headers, pending_payout):
        response = client.post(
            f"/admin/payouts/{pending_payout['id']}/reject",
            headers=auth_headers(admin),
            json={"reason": "Name mismatch"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        db_session.refresh(funded_campaign)
        assert funded_campaign.available_balance == Decimal("145.75")

    def test_invalid_transition(self, client, admin, auth_headers, pending_payout):
        response = client.post(
            f"/admin/payouts/{pending_payout['id']}/process",
            headers=auth_headers(admin),
            json={"reference": "WIRE-2"},
        )

        assert response.status_code == 409
        assert response.json()["status"] == "pending"


class TestDonationEndpoints:

    def test_payment_intent_then_complete(self, client, db_session, processor, campaign):
        started = client.post("/donations/payment-intent", json={
            "campaign_id": campaign.id,
            "amount": "50.00",
            "donor_name": "Sam",
            "donor_email": "sam@example.com",
        })
        assert started.status_code == 201
        started = started.json()
        processor.mark_paid(started["payment_intent_id"])

        payload = {
            "campaign_id": campaign.id,
            "amount": "50.00",
            "payment_intent_id": started["payment_intent_id"],
            "donation_id": started["donation_id"],
        }
        first = client.post("/donations/complete", json=payload)
        second = client.post("/donations/complete", json=payload)

        assert first.status_code == 201
        assert Decimal(first.json()["net_amount"]) == Decimal("45.75")
        assert first.json()["duplicate"] is False
        assert second.json()["duplicate"] is True

        db_session.refresh(campaign)
        assert campaign.available_balance == Decimal("145.75")

    def test_complete_unpaid(self, client, campaign):
        started = client.post("/donations/payment-intent", json={"campaign_id": campaign.id, "amount": "50.00"}).json()

        response = client.post("/donations/complete", json={
            "campaign_id": campaign.id,
            "amount": "50.00",
            "payment_intent_id": started["payment_intent_id"],
        })

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_amount_over_limit_rejected(self, client, campaign):
        response = client.post("/donations/payment-intent", json={"campaign_id": campaign.id, "amount": "10000.01"})

        assert response.status_code == 422

    def test_public_donation_detail_hides_email(self, client, processor, campaign):
        pi_id = processor.add_payment_intent("20.00")
        created = client.post("/donations/complete", json={
            "campaign_id": campaign.id,
            "amount": "20.00",
            "payment_intent_id": pi_id,
            "donor_email": "sam@example.com",
        }).json()

        detail = client.get(f"/donations/{created['donation']['id']}").json()

        assert detail["donor_email"] is None
        assert client.get(f"/donations/campaign/{campaign.id}").json()["total"] == 1

    def test_unknown_donation(self, client):
        response = client.get("/donations/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["code"] == "donation_not_found"
