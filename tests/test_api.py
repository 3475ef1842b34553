"""
API Endpoint Tests
==================

HTTP-level tests for the v1 routers:
- API key authentication
- Receipt validation and error mapping
- Subscriber info, attributes, aliases and manual grants
- Store notification intake and webhook stats
- Cron trigger authentication
"""

import pytest
from jose import jwt

from conftest import API_KEY, BUNDLE_ID, make_txn
from entitled.config import settings
from entitled.core.errors import ErrorCodes, StoreTransientError
from entitled.services import receipts as receipts_module
from entitled.services.receipts import ReceiptService


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

HEADERS = {"X-API-Key": API_KEY}
TXN_ID = "2000000001"


@pytest.fixture
def store(fake_adapter, monkeypatch):
    """Route the receipts endpoint to the fake store adapter."""
    monkeypatch.setattr(receipts_module, "build_store_adapter", lambda app, platform: fake_adapter)
    monkeypatch.setattr(ReceiptService, "RETRY_DELAY_SECONDS", 0)
    return fake_adapter


async def _validate(client, app_user_id="u1", **body):
    payload = {"appUserId": app_user_id, "platform": "ios", "transactionId": TXN_ID, **body}
    return await client.post("/api/v1/receipts", json=payload, headers=HEADERS)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestApiKey:
    """Tests for X-API-Key resolution"""

    @pytest.mark.asyncio
    async def test_missing_key(self, client, app_record):
        response = await client.get("/api/v1/subscribers/u1")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCodes.AUTH_INVALID_API_KEY

    @pytest.mark.asyncio
    async def test_unknown_key(self, client, app_record):
        response = await client.get("/api/v1/subscribers/u1", headers={"X-API-Key": "nope"})

        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

class TestReceiptsEndpoint:
    """Tests for POST /api/v1/receipts"""

    @pytest.mark.asyncio
    async def test_validate_receipt(self, client, app_record, store):
        store.transactions[TXN_ID] = make_txn()

        response = await _validate(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["appUserId"] == "u1"
        assert body["data"]["entitlements"]["premium"]["isActive"] is True
        assert body["data"]["activeSubscriptions"] == ["premium_monthly"]

    @pytest.mark.asyncio
    async def test_unknown_product(self, client, app_record, store):
        store.transactions[TXN_ID] = make_txn(product_id="com.example.unknown")

        response = await _validate(client)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == ErrorCodes.RECEIPT_PRODUCT_NOT_RECOGNIZED

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client, app_record, store):
        store.transactions[TXN_ID] = [StoreTransientError("App Store 503"), StoreTransientError("App Store 503")]

        response = await _validate(client)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == ErrorCodes.STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_store_credentials_missing(self, client, app_record):
        response = await _validate(client)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == ErrorCodes.STORE_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_request_validation(self, client, app_record):
        response = await client.post(
            "/api/v1/receipts", json={"platform": "ios"}, headers=HEADERS,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == ErrorCodes.VALIDATION_ERROR


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class TestSubscribersEndpoint:
    """Tests for /api/v1/subscribers"""

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, client, app_record):
        response = await client.get("/api/v1/subscribers/nobody", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == ErrorCodes.SUBSCRIBER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_subscriber_info_is_cached(self, client, app_record, store, mock_redis):
        store.transactions[TXN_ID] = make_txn()
        await _validate(client)

        response = await client.get("/api/v1/subscribers/u1", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["entitlements"]["premium"]["isActive"] is True
        cached_keys = [call.args[0] for call in mock_redis.setex.await_args_list]
        assert any(key.endswith(":u1") for key in cached_keys)

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_served(self, client, app_record, mock_redis):
        mock_redis.get.return_value = '{"appUserId": "u1", "entitlements": {}}'

        response = await client.get("/api/v1/subscribers/u1", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["data"] == {"appUserId": "u1", "entitlements": {}}

    @pytest.mark.asyncio
    async def test_attributes_merge_and_delete(self, client, app_record):
        url = "/api/v1/subscribers/u1/attributes"
        await client.post(url, json={"attributes": {"$email": "a@example.com", "plan": "beta"}}, headers=HEADERS)

        response = await client.post(url, json={"attributes": {"plan": None}}, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["data"]["attributes"] == {"$email": "a@example.com"}

    @pytest.mark.asyncio
    async def test_alias(self, client, app_record):
        await client.post("/api/v1/subscribers/u1/attributes", json={"attributes": {}}, headers=HEADERS)

        response = await client.post(
            "/api/v1/subscribers/u1/alias", json={"alias": "anon-42"}, headers=HEADERS,
        )

        assert response.status_code == 200
        assert "anon-42" in response.json()["data"]["aliases"]

    @pytest.mark.asyncio
    async def test_grant_and_revoke_entitlement(self, client, app_record):
        await client.post("/api/v1/subscribers/u1/attributes", json={"attributes": {}}, headers=HEADERS)
        url = "/api/v1/subscribers/u1/entitlements/premium"

        granted = await client.post(url, json={"grantedBy": "support", "reason": "goodwill"}, headers=HEADERS)
        info = await client.get("/api/v1/subscribers/u1", headers=HEADERS)
        revoked = await client.delete(url, headers=HEADERS)

        assert granted.status_code == 200
        assert granted.json()["data"]["grantSource"] == "manual"
        assert info.json()["data"]["entitlements"]["premium"]["isActive"] is True
        assert revoked.json()["data"]["revoked"] is True

    @pytest.mark.asyncio
    async def test_grant_unknown_entitlement(self, client, app_record):
        await client.post("/api/v1/subscribers/u1/attributes", json={"attributes": {}}, headers=HEADERS)

        response = await client.post("/api/v1/subscribers/u1/entitlements/gold", json={}, headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == ErrorCodes.ENTITLEMENT_NOT_FOUND


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class TestWebhooksEndpoint:
    """Tests for /api/v1/webhooks"""

    @pytest.mark.asyncio
    async def test_apple_requires_signed_payload(self, client, app_record):
        response = await client.post("/api/v1/webhooks/apple", json={})

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "signedPayload"

    @pytest.mark.asyncio
    async def test_apple_rejects_non_json(self, client, app_record):
        response = await client.post(
            "/api/v1/webhooks/apple", content=b"not json", headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_apple_test_notification(self, client, app_record):
        signed = jwt.encode(
            {"notificationType": "TEST", "notificationUUID": "n-test", "data": {"bundleId": BUNDLE_ID}},
            "k",
            algorithm="HS256",
        )

        response = await client.post("/api/v1/webhooks/apple", json={"signedPayload": signed})

        assert response.status_code == 200
        assert response.json()["data"]["action"] == "test"

    @pytest.mark.asyncio
    async def test_google_push_token_required_when_configured(self, client, app_record, monkeypatch):
        monkeypatch.setattr(settings, "GOOGLE_PUBSUB_AUDIENCE", "https://entitled.example.com/api/v1/webhooks/google")

        response = await client.post("/api/v1/webhooks/google", json={"message": {}})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_stats(self, client, app_record, store):
        store.transactions[TXN_ID] = make_txn()
        await _validate(client)

        response = await client.get("/api/v1/webhooks/stats", headers=HEADERS)

        assert response.status_code == 200
        deliveries = response.json()["data"]["deliveries"]
        assert deliveries["pending"] == 3
        assert {d["eventType"] for d in deliveries["recent"]} == {
            "subscriber.created",
            "subscription.created",
            "entitlement.granted",
        }


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------

class TestCronEndpoint:
    """Tests for /api/v1/cron"""

    @pytest.mark.asyncio
    async def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "")

        response = await client.post("/api/v1/cron/subscriptions")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")

        response = await client.post(
            "/api/v1/cron/subscriptions", headers={"Authorization": "Bearer wrong"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCodes.AUTH_INVALID_CRON_SECRET

    @pytest.mark.asyncio
    async def test_sweep_and_health(self, client, app_record, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")
        auth = {"Authorization": "Bearer s3cret"}

        sweep = await client.post("/api/v1/cron/subscriptions", headers=auth)
        health = await client.get("/api/v1/cron/subscriptions/health", headers=auth)

        assert sweep.status_code == 200
        assert sweep.json()["data"]["processed"] == 0
        assert [p["pass"] for p in sweep.json()["data"]["passes"]] == [
            "expiring_soon",
            "trial_endings",
            "expired",
            "grace_period_endings",
        ]
        assert health.json()["data"]["active"] == 0
