"""
Store Adapter Tests
===================

Tests for the Apple and Google adapters against mocked store APIs:
- Normalization into Transaction
- Sandbox fallback
- Failure classification (transient / configuration / request)
- Google acknowledgement
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest
from jose import jwt

from entitled.core.errors import StoreConfigurationError, StoreRequestError, StoreTransientError
from entitled.models.app import Platform
from entitled.models.purchase import Environment, PurchaseStatus, SubscriptionStatus
from entitled.stores import build_store_adapter
from entitled.stores.apple import APPLE_SANDBOX_URL, AppleStoreAdapter
from entitled.stores.base import from_millis, from_rfc3339
from entitled.stores.google import GooglePlayAdapter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

PURCHASE_MS = 1767225600000   # 2026-01-01T00:00:00Z
EXPIRES_MS = 1769904000000    # 2026-02-01T00:00:00Z


def _jws(claims: dict) -> str:
    return jwt.encode(claims, "test-key", algorithm="HS256")


def _apple_transaction(**overrides) -> dict:
    info = {
        "transactionId": "2000000002",
        "originalTransactionId": "2000000001",
        "productId": "com.example.premium.monthly",
        "type": "Auto-Renewable Subscription",
        "purchaseDate": PURCHASE_MS,
        "originalPurchaseDate": PURCHASE_MS - 86400000,
        "expiresDate": EXPIRES_MS,
        "price": 9990,
        "currency": "USD",
        "environment": "Production",
    }
    info.update(overrides)
    return info


def _apple_status(status=1, auto_renew=1, grace_ms=None, latest=None) -> dict:
    renewal = {"autoRenewStatus": auto_renew, "originalTransactionId": "2000000001"}
    if grace_ms is not None:
        renewal["gracePeriodExpiresDate"] = grace_ms
    entry = {
        "originalTransactionId": "2000000001",
        "status": status,
        "signedRenewalInfo": _jws(renewal),
    }
    if latest is not None:
        entry["signedTransactionInfo"] = _jws(latest)
    return {"data": [{"subscriptionGroupIdentifier": "group", "lastTransactions": [entry]}]}


class _Routes:
    """MockTransport handler keyed by (method, url); records every request."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url))
        if key not in self.routes:
            return httpx.Response(404, json={"errorCode": 4040010})
        result = self.routes[key]
        if isinstance(result, Exception):
            raise result
        status_code, body = result
        return httpx.Response(status_code, json=body)


def _apple(routes: _Routes, sandbox_fallback=True) -> AppleStoreAdapter:
    return AppleStoreAdapter(
        bundle_id="com.example.app",
        issuer_id="issuer",
        key_id="KEY123",
        private_key="unused",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(routes)),
        sandbox_fallback=sandbox_fallback,
    )


async def _token() -> str:
    return "google-token"


def _google(routes: _Routes) -> GooglePlayAdapter:
    return GooglePlayAdapter(
        package_name="com.example.app",
        token_provider=_token,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(routes)),
    )


PROD = "https://api.storekit.itunes.apple.com"
GOOGLE = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications/com.example.app/purchases"


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

class TestTimestamps:
    """Tests for from_millis / from_rfc3339"""

    def test_from_millis(self):
        assert from_millis(PURCHASE_MS) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert from_millis(str(PURCHASE_MS)) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert from_millis(None) is None
        assert from_millis("") is None

    def test_from_rfc3339_truncates_nanoseconds(self):
        parsed = from_rfc3339("2026-01-02T03:04:05.123456789Z")
        assert parsed == datetime(2026, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)

    def test_from_rfc3339_offsets_and_short_fractions(self):
        assert from_rfc3339("2026-01-02T05:04:05.5+02:00") == datetime(
            2026, 1, 2, 3, 4, 5, 500000, tzinfo=timezone.utc,
        )
        assert from_rfc3339("2026-01-02T03:04:05Z").tzinfo == timezone.utc
        assert from_rfc3339(None) is None


# ---------------------------------------------------------------------------
# Apple
# ---------------------------------------------------------------------------

class TestAppleStoreAdapter:
    """Tests for AppleStoreAdapter.fetch_transaction"""

    @pytest.fixture(autouse=True)
    def _apple_token(self):
        with patch.object(AppleStoreAdapter, "_bearer_token", return_value="apple-token"):
            yield

    @pytest.mark.asyncio
    async def test_active_subscription(self):
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (
                200, {"signedTransactionInfo": _jws(_apple_transaction())},
            ),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (200, _apple_status()),
        })

        txn = await _apple(routes).fetch_transaction("2000000002")

        assert txn.platform == Platform.IOS
        assert txn.transaction_id == "2000000002"
        assert txn.original_transaction_id == "2000000001"
        assert txn.is_subscription is True
        assert txn.store_status == SubscriptionStatus.ACTIVE
        assert txn.auto_renew_enabled is True
        assert txn.expires_date == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert txn.price == Decimal("9.99")
        assert txn.environment == Environment.PRODUCTION
        assert routes.requests[0].headers["Authorization"] == "Bearer apple-token"

    @pytest.mark.asyncio
    async def test_grace_period_and_trial(self):
        grace_ms = EXPIRES_MS + 6 * 86400000
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (
                200, {"signedTransactionInfo": _jws(_apple_transaction(offerType=1))},
            ),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (
                200, _apple_status(status=4, auto_renew=0, grace_ms=grace_ms),
            ),
        })

        txn = await _apple(routes).fetch_transaction("2000000002")

        assert txn.store_status == SubscriptionStatus.IN_GRACE_PERIOD
        assert txn.grace_period_expires_date == from_millis(grace_ms)
        assert txn.auto_renew_enabled is False
        assert txn.is_trial_period is True
        assert txn.is_intro_offer_period is False

    @pytest.mark.asyncio
    async def test_old_transaction_id_resolves_to_latest_renewal(self):
        renewed_expires_ms = 1772323200000   # 2026-03-01T00:00:00Z
        original = _apple_transaction(transactionId="2000000001", purchaseDate=PURCHASE_MS)
        renewal = _apple_transaction(
            transactionId="2000000003",
            purchaseDate=EXPIRES_MS,
            expiresDate=renewed_expires_ms,
        )
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000001"): (
                200, {"signedTransactionInfo": _jws(original)},
            ),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (200, _apple_status(latest=renewal)),
        })

        txn = await _apple(routes).fetch_transaction("2000000001")

        assert txn.store_status == SubscriptionStatus.ACTIVE
        assert txn.transaction_id == "2000000003"
        assert txn.original_transaction_id == "2000000001"
        assert txn.expires_date == datetime(2026, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_named_transaction_kept_when_not_superseded(self):
        older = _apple_transaction(transactionId="2000000001", purchaseDate=PURCHASE_MS - 86400000)
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (
                200, {"signedTransactionInfo": _jws(_apple_transaction())},
            ),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (200, _apple_status(latest=older)),
        })

        txn = await _apple(routes).fetch_transaction("2000000002")

        assert txn.transaction_id == "2000000002"
        assert txn.expires_date == datetime(2026, 2, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_revoked_transaction_is_refunded(self):
        info = _apple_transaction(revocationDate=PURCHASE_MS + 1000, revocationReason=1)
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (200, {"signedTransactionInfo": _jws(info)}),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (200, _apple_status(status=5)),
        })

        txn = await _apple(routes).fetch_transaction("2000000002")

        assert txn.status == PurchaseStatus.REFUNDED
        assert txn.is_refunded is True
        assert txn.store_status == SubscriptionStatus.REVOKED
        assert txn.revocation_reason == "refunded_app_issue"

    @pytest.mark.asyncio
    async def test_non_consumable_skips_status_lookup(self):
        info = _apple_transaction(
            transactionId="3000000001",
            originalTransactionId="3000000001",
            productId="com.example.lifetime",
            type="Non-Consumable",
            expiresDate=None,
        )
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/3000000001"): (200, {"signedTransactionInfo": _jws(info)}),
        })

        txn = await _apple(routes).fetch_transaction("3000000001")

        assert txn.is_subscription is False
        assert txn.store_status is None
        assert txn.expires_date is None
        assert len(routes.requests) == 1

    @pytest.mark.asyncio
    async def test_sandbox_fallback_on_404(self):
        info = _apple_transaction(environment="Sandbox")
        routes = _Routes({
            ("GET", f"{APPLE_SANDBOX_URL}/inApps/v1/transactions/2000000002"): (
                200, {"signedTransactionInfo": _jws(info)},
            ),
            ("GET", f"{APPLE_SANDBOX_URL}/inApps/v1/subscriptions/2000000001"): (200, _apple_status()),
        })

        txn = await _apple(routes).fetch_transaction("2000000002")

        assert txn.environment == Environment.SANDBOX
        assert [r.url.host for r in routes.requests] == [
            "api.storekit.itunes.apple.com",
            "api.storekit-sandbox.itunes.apple.com",
            "api.storekit-sandbox.itunes.apple.com",
        ]

    @pytest.mark.asyncio
    async def test_no_fallback_when_disabled(self):
        with pytest.raises(StoreRequestError) as exc_info:
            await _apple(_Routes({}), sandbox_fallback=False).fetch_transaction("2000000002")
        assert exc_info.value.store_status == 404

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        routes = _Routes({("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (503, {})})
        with pytest.raises(StoreTransientError):
            await _apple(routes).fetch_transaction("2000000002")

    @pytest.mark.asyncio
    async def test_throttling_is_transient(self):
        routes = _Routes({("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (429, {})})
        with pytest.raises(StoreTransientError):
            await _apple(routes).fetch_transaction("2000000002")

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): httpx.ConnectError("refused"),
        })
        with pytest.raises(StoreTransientError):
            await _apple(routes).fetch_transaction("2000000002")

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        routes = _Routes({("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (401, {})})
        with pytest.raises(StoreConfigurationError):
            await _apple(routes).fetch_transaction("2000000002")

    @pytest.mark.asyncio
    async def test_unknown_status_is_rejected(self):
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (
                200, {"signedTransactionInfo": _jws(_apple_transaction())},
            ),
            ("GET", f"{PROD}/inApps/v1/subscriptions/2000000001"): (200, _apple_status(status=99)),
        })
        with pytest.raises(StoreRequestError):
            await _apple(routes).fetch_transaction("2000000002")

    @pytest.mark.asyncio
    async def test_malformed_signed_payload(self):
        routes = _Routes({
            ("GET", f"{PROD}/inApps/v1/transactions/2000000002"): (200, {"signedTransactionInfo": "garbage"}),
        })
        with pytest.raises(StoreRequestError):
            await _apple(routes).fetch_transaction("2000000002")


class TestAppleConfiguration:
    """Tests for adapter construction"""

    def test_missing_credentials(self):
        with pytest.raises(StoreConfigurationError):
            AppleStoreAdapter(bundle_id="com.example.app", issuer_id="", key_id="K", private_key="p")

    def test_build_store_adapter_requires_credentials(self, app_record):
        with pytest.raises(StoreConfigurationError):
            build_store_adapter(app_record, Platform.IOS)
        with pytest.raises(StoreConfigurationError):
            build_store_adapter(app_record, Platform.ANDROID)


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------

def _google_subscription(**overrides) -> dict:
    data = {
        "subscriptionState": "SUBSCRIPTION_STATE_ACTIVE",
        "startTime": "2026-01-01T00:00:00.000Z",
        "latestOrderId": "GPA.1111-2222-3333-44444",
        "acknowledgementState": "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED",
        "lineItems": [{
            "productId": "premium_monthly",
            "expiryTime": "2099-02-01T00:00:00.123456789Z",
            "autoRenewingPlan": {
                "autoRenewEnabled": True,
                "recurringPrice": {"currencyCode": "EUR", "units": "4", "nanos": 990000000},
            },
            "offerPhase": {"basePrice": {}},
        }],
    }
    data.update(overrides)
    return data


class TestGooglePlayAdapter:
    """Tests for GooglePlayAdapter.fetch_transaction"""

    @pytest.mark.asyncio
    async def test_active_subscription(self):
        routes = _Routes({
            ("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (200, _google_subscription()),
        })

        txn = await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")

        assert txn.platform == Platform.ANDROID
        assert txn.transaction_id == "GPA.1111-2222-3333-44444"
        assert txn.original_transaction_id == "tok-1"
        assert txn.store_status == SubscriptionStatus.ACTIVE
        assert txn.auto_renew_enabled is True
        assert txn.expires_date == datetime(2099, 2, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)
        assert txn.price == Decimal("4.99")
        assert txn.currency == "EUR"
        assert routes.requests[0].headers["Authorization"] == "Bearer google-token"
        assert len(routes.requests) == 1

    @pytest.mark.asyncio
    async def test_pending_acknowledgement_is_acknowledged(self):
        ack_url = f"{GOOGLE}/subscriptions/premium_monthly/tokens/tok-1:acknowledge"
        routes = _Routes({
            ("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (
                200, _google_subscription(acknowledgementState="ACKNOWLEDGEMENT_STATE_PENDING"),
            ),
            ("POST", ack_url): (200, {}),
        })

        await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")

        assert [(r.method, str(r.url)) for r in routes.requests][-1] == ("POST", ack_url)

    @pytest.mark.asyncio
    async def test_state_mapping(self):
        cases = {
            "SUBSCRIPTION_STATE_IN_GRACE_PERIOD": SubscriptionStatus.IN_GRACE_PERIOD,
            "SUBSCRIPTION_STATE_ON_HOLD": SubscriptionStatus.IN_BILLING_RETRY,
            "SUBSCRIPTION_STATE_PAUSED": SubscriptionStatus.EXPIRED,
            "SUBSCRIPTION_STATE_EXPIRED": SubscriptionStatus.EXPIRED,
            "SUBSCRIPTION_STATE_CANCELED": SubscriptionStatus.ACTIVE,
        }
        for state, expected in cases.items():
            routes = _Routes({
                ("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (
                    200, _google_subscription(subscriptionState=state),
                ),
            })
            txn = await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")
            assert txn.store_status == expected, state

    @pytest.mark.asyncio
    async def test_canceled_past_expiry_is_expired(self):
        data = _google_subscription(subscriptionState="SUBSCRIPTION_STATE_CANCELED")
        data["lineItems"][0]["expiryTime"] = "2020-01-01T00:00:00Z"
        routes = _Routes({("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (200, data)})

        txn = await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")

        assert txn.store_status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_state_is_rejected(self):
        routes = _Routes({
            ("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (
                200, _google_subscription(subscriptionState="SUBSCRIPTION_STATE_UNSPECIFIED"),
            ),
        })
        with pytest.raises(StoreRequestError):
            await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")

    @pytest.mark.asyncio
    async def test_one_time_product_refunded(self):
        routes = _Routes({
            ("GET", f"{GOOGLE}/products/lifetime/tokens/tok-2"): (200, {
                "orderId": "GPA.9999",
                "purchaseTimeMillis": str(PURCHASE_MS),
                "purchaseState": 1,
                "acknowledgementState": 1,
            }),
        })

        txn = await _google(routes).fetch_transaction("tok-2", product_id="lifetime", is_subscription=False)

        assert txn.is_subscription is False
        assert txn.status == PurchaseStatus.REFUNDED
        assert txn.purchase_date == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert len(routes.requests) == 1

    @pytest.mark.asyncio
    async def test_one_time_product_acknowledged(self):
        routes = _Routes({
            ("GET", f"{GOOGLE}/products/lifetime/tokens/tok-2"): (200, {
                "orderId": "GPA.9999",
                "purchaseTimeMillis": str(PURCHASE_MS),
                "purchaseState": 0,
                "acknowledgementState": 0,
                "purchaseType": 0,
            }),
            ("POST", f"{GOOGLE}/products/lifetime/tokens/tok-2:acknowledge"): (200, {}),
        })

        txn = await _google(routes).fetch_transaction("tok-2", product_id="lifetime", is_subscription=False)

        assert txn.environment == Environment.SANDBOX
        assert routes.requests[-1].method == "POST"
        assert json.loads(routes.requests[-1].content) == {}

    @pytest.mark.asyncio
    async def test_product_id_required(self):
        with pytest.raises(StoreRequestError):
            await _google(_Routes({})).fetch_transaction("tok-1")

    @pytest.mark.asyncio
    async def test_invalid_token(self):
        routes = _Routes({("GET", f"{GOOGLE}/subscriptionsv2/tokens/tok-1"): (410, {})})
        with pytest.raises(StoreRequestError) as exc_info:
            await _google(routes).fetch_transaction("tok-1", product_id="premium_monthly")
        assert exc_info.value.store_status == 410
