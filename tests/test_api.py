"""
Tests for the HTTP surface — /api/health, /api/v1/payments/*, /api/v1/marketplace/*.

Auth header handling (401/403), structured error responses from the error
registry, the shared webhook ingress and transaction visibility.

Services are swapped for the fixture-backed instances via
``app.dependency_overrides``; the lifespan is not entered.
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from app.auth.api_key_auth import api_key_cache, issue_api_key
from app.services.billing_service import get_billing_service
from app.services.split_payment_service import get_split_payment_service

from conftest import make_listing, make_user

SELLER = "5" * 64
BUYER = "b" * 64
STRANGER = "c" * 64
ADMIN = "a" * 64


@pytest.fixture
def client(billing, marketplace):
    from app.main import create_app

    app = create_app()
    app.dependency_overrides[get_billing_service] = lambda: billing
    app.dependency_overrides[get_split_payment_service] = lambda: marketplace
    api_key_cache.clear()
    return TestClient(app)


def _headers(pubkey: str, **user_kwargs) -> dict:
    user_id = make_user(pubkey, **user_kwargs)
    return {"X-API-Key": issue_api_key(user_id)}


@pytest.fixture
def buyer_headers():
    return _headers(BUYER)


@pytest.fixture
def admin_headers():
    return _headers(ADMIN, is_admin=True)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health_no_auth_required(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"]
        assert "x-request-id" in response.headers

    def test_deep_health_requires_admin(self, client, buyer_headers):
        assert client.get("/api/health/deep").status_code == 401
        assert client.get("/api/health/deep", headers=buyer_headers).status_code == 403

    def test_deep_health_reports_database(self, client, admin_headers):
        response = client.get("/api/health/deep", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["components"]["database"]["status"] == "ok"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TestAuth:
    def test_missing_key(self, client):
        response = client.post("/api/v1/payments/invoice", json={"tier": "PRO"})
        assert response.status_code == 401

    @pytest.mark.parametrize("key", ["garbage", "nm_", "nm_abcdefgh_wrongsecret"])
    def test_invalid_key(self, client, buyer_headers, key):
        response = client.get("/api/v1/payments/history", headers={"X-API-Key": key})
        assert response.status_code == 401

    def test_reissued_key_replaces_old_one(self, client):
        user_id = make_user(BUYER)
        old_key = issue_api_key(user_id)
        assert client.get("/api/v1/payments/history", headers={"X-API-Key": old_key}).status_code == 200

        new_key = issue_api_key(user_id)
        assert client.get("/api/v1/payments/history", headers={"X-API-Key": old_key}).status_code == 401
        assert client.get("/api/v1/payments/history", headers={"X-API-Key": new_key}).status_code == 200


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class TestPaymentsRoutes:
    def test_tiers_are_public(self, client):
        response = client.get("/api/v1/payments/tiers")
        assert response.status_code == 200
        tiers = {t["tier"] for t in response.json()}
        assert {"FREE", "PRO", "BUSINESS", "LIFETIME"} <= tiers

    def test_create_invoice(self, client, buyer_headers, fake_provider):
        response = client.post(
            "/api/v1/payments/invoice",
            json={"tier": "PRO", "billingCycle": "monthly"},
            headers=buyer_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["provider"] == "lnbits"
        assert data["billingCycle"] == "monthly"
        assert data["amountSats"] > 0
        assert data["invoice"].startswith("lnbc")
        assert len(fake_provider.requests) == 1

        status = client.get(f"/api/v1/payments/invoice/{data['paymentId']}")
        assert status.status_code == 200

        history = client.get("/api/v1/payments/history", headers=buyer_headers)
        assert [p["id"] for p in history.json()] == [data["paymentId"]]

    def test_unknown_tier_returns_registry_error(self, client, buyer_headers):
        response = client.post("/api/v1/payments/invoice", json={"tier": "GOLD"}, headers=buyer_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "NM-VAL-002"
        assert error["message"] == "This tier cannot be purchased."
        # internal detail never leaks
        assert "GOLD" not in json.dumps(error)

    def test_request_body_validation(self, client, buyer_headers):
        response = client.post("/api/v1/payments/invoice", json={}, headers=buyer_headers)
        assert response.status_code == 422

    def test_history_limit_bounds(self, client, buyer_headers):
        response = client.get("/api/v1/payments/history?limit=500", headers=buyer_headers)
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Webhook ingress
# ---------------------------------------------------------------------------

class TestWebhook:
    def test_bad_signature_is_rejected(self, client, fake_provider):
        fake_provider.webhook_secret = "whsec"
        response = client.post(
            "/api/v1/payments/webhook?provider=lnbits",
            json={"fake_invoice_id": "lnbits-inv-1", "state": "paid"},
            headers={"x-webhook-signature": "deadbeef"},
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "invalid signature"}

    def test_signed_unknown_invoice(self, client, fake_provider):
        fake_provider.webhook_secret = "whsec"
        body = json.dumps({"fake_invoice_id": "nope", "state": "paid"}).encode()
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        response = client.post(
            "/api/v1/payments/webhook?provider=lnbits",
            content=body,
            headers={"Content-Type": "application/json", "x-webhook-signature": f"sha256={signature}"},
        )
        assert response.status_code == 200
        assert response.json() == {"success": False}

    def test_non_json_body(self, client):
        response = client.post("/api/v1/payments/webhook", content=b"not json")
        assert response.status_code == 200
        assert response.json() == {"success": False}

    def test_subscription_payment_via_webhook(self, client, buyer_headers, fake_provider):
        invoice = client.post("/api/v1/payments/invoice", json={"tier": "PRO"}, headers=buyer_headers).json()
        fake_provider.mark("lnbits-inv-1")

        response = client.post(
            "/api/v1/payments/webhook?provider=lnbits",
            json={"fake_invoice_id": "lnbits-inv-1", "state": "paid"},
        )
        assert response.json() == {"success": True}

        receipt = client.get(f"/api/v1/payments/receipt/{invoice['paymentId']}", headers=buyer_headers)
        assert receipt.status_code == 200


# ---------------------------------------------------------------------------
# Marketplace
# ---------------------------------------------------------------------------

class TestMarketplaceRoutes:
    @pytest.fixture
    def listing_id(self):
        make_user(SELLER, lightning_address="seller@walletofsatoshi.com")
        return make_listing(SELLER, 100_000)

    def test_buy_and_settle_through_shared_webhook(self, client, buyer_headers, listing_id, fake_provider,
                                                   payout_client):
        response = client.post(f"/api/v1/marketplace/listings/{listing_id}/buy", headers=buyer_headers)
        assert response.status_code == 200
        purchase = response.json()
        assert purchase["split"] == {"platformFee": 5000, "sellerAmount": 95000}

        fake_provider.mark(purchase["providerInvoiceId"])
        hook = client.post(
            "/api/v1/payments/webhook?provider=lnbits",
            json={"fake_invoice_id": purchase["providerInvoiceId"], "state": "paid"},
        )
        assert hook.json() == {"success": True}
        payout_client.pay.assert_awaited_once()

        tx = client.get(f"/api/v1/marketplace/transactions/{purchase['transactionId']}", headers=buyer_headers)
        assert tx.status_code == 200
        assert tx.json()["status"] == "settled"

    def test_transaction_hidden_from_strangers(self, client, buyer_headers, listing_id):
        purchase = client.post(f"/api/v1/marketplace/listings/{listing_id}/buy", headers=buyer_headers).json()

        response = client.get(
            f"/api/v1/marketplace/transactions/{purchase['transactionId']}", headers=_headers(STRANGER)
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NM-API-404"

    def test_reserved_listing_conflict(self, client, buyer_headers, listing_id):
        client.post(f"/api/v1/marketplace/listings/{listing_id}/buy", headers=buyer_headers)

        response = client.post(f"/api/v1/marketplace/listings/{listing_id}/buy", headers=_headers(STRANGER))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "NM-VAL-007"

    def test_set_lightning_address(self, client, buyer_headers):
        ok = client.patch(
            "/api/v1/marketplace/seller/lightning-address",
            json={"lightningAddress": "Bob@Strike.me"},
            headers=buyer_headers,
        )
        assert ok.status_code == 200
        assert ok.json()["lightningAddress"] == "bob@strike.me"

        bad = client.patch(
            "/api/v1/marketplace/seller/lightning-address",
            json={"lightningAddress": "not an address"},
            headers=buyer_headers,
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "NM-VAL-005"

    def test_admin_routes(self, client, buyer_headers, admin_headers, listing_id):
        purchase = client.post(f"/api/v1/marketplace/listings/{listing_id}/buy", headers=buyer_headers).json()

        assert client.get("/api/v1/marketplace/admin/transactions", headers=buyer_headers).status_code == 403

        listed = client.get("/api/v1/marketplace/admin/transactions?limit=10", headers=admin_headers)
        assert listed.status_code == 200
        assert [t["id"] for t in listed.json()] == [purchase["transactionId"]]

        retry = client.post(
            f"/api/v1/marketplace/admin/transactions/{purchase['transactionId']}/retry-payout",
            headers=admin_headers,
        )
        assert retry.status_code == 409
        assert retry.json()["error"]["code"] == "NM-STA-002"
