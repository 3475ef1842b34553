"""
Google Play Developer API Adapter
=================================

Fetches subscription (``purchases.subscriptionsv2``) and one-time product
(``purchases.products``) purchases, acknowledges them, and normalizes the
result into ``Transaction``.

Authentication uses an OAuth2 access token minted from the app's service
account key via ``google-auth``. Unacknowledged purchases are refunded by
Google after three days, so every fetch acknowledges when Google reports the
purchase as pending acknowledgement.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from entitled.core.errors import StoreConfigurationError, StoreRequestError, StoreTransientError
from entitled.models.app import App, Platform
from entitled.models.purchase import Environment, PurchaseStatus, SubscriptionStatus
from entitled.stores.base import StoreAdapter, Transaction, from_millis, from_rfc3339

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"
ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# subscriptionsv2 subscriptionState values
GOOGLE_STATE_MAP: dict[str, SubscriptionStatus] = {
    "SUBSCRIPTION_STATE_ACTIVE": SubscriptionStatus.ACTIVE,
    "SUBSCRIPTION_STATE_PENDING": SubscriptionStatus.ACTIVE,
    "SUBSCRIPTION_STATE_IN_GRACE_PERIOD": SubscriptionStatus.IN_GRACE_PERIOD,
    "SUBSCRIPTION_STATE_ON_HOLD": SubscriptionStatus.IN_BILLING_RETRY,
    "SUBSCRIPTION_STATE_PAUSED": SubscriptionStatus.EXPIRED,
    "SUBSCRIPTION_STATE_EXPIRED": SubscriptionStatus.EXPIRED,
    # CANCELED keeps access until expiry; resolved against expiryTime below
    "SUBSCRIPTION_STATE_CANCELED": SubscriptionStatus.ACTIVE,
}

_ACK_PENDING = "ACKNOWLEDGEMENT_STATE_PENDING"

# purchases.products purchaseState
_PRODUCT_PURCHASED = 0
_PRODUCT_CANCELED = 1

TokenProvider = Callable[[], Awaitable[str]]


def service_account_token_provider(info: dict[str, Any]) -> TokenProvider:
    """
    Build an async access-token provider for a service account key.

    google-auth refreshes synchronously, so the refresh runs in a thread.
    """
    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[ANDROID_PUBLISHER_SCOPE],
        )
    except (ValueError, KeyError) as exc:
        raise StoreConfigurationError(f"Google service account key is invalid: {exc}") from exc

    async def _token() -> str:
        if not credentials.valid:
            try:
                await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
            except GoogleAuthError as exc:
                raise StoreTransientError(f"Could not obtain Google access token: {exc}") from exc
        return credentials.token

    return _token


def _money(price: Optional[dict[str, Any]]) -> tuple[Optional[Decimal], Optional[str]]:
    """Convert a google.type.Money dict to (amount, currency)."""
    if not price:
        return None, None
    units = Decimal(str(price.get("units", 0)))
    nanos = Decimal(int(price.get("nanos", 0))) / Decimal(10 ** 9)
    return units + nanos, price.get("currencyCode")


class GooglePlayAdapter(StoreAdapter):
    """StoreAdapter for the Google Play Developer API."""

    platform = Platform.ANDROID

    def __init__(
        self,
        *,
        package_name: str,
        token_provider: TokenProvider,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not package_name:
            raise StoreConfigurationError("Google Play package name is not configured for this app")
        super().__init__(http_client)
        self.package_name = package_name
        self._token_provider = token_provider

    @classmethod
    def from_app(cls, app: App, **kwargs: Any) -> "GooglePlayAdapter":
        """Build an adapter from an app's stored service account."""
        if not app.has_google_credentials:
            raise StoreConfigurationError(
                "Google Play credentials are not configured for this app",
                app_id=str(app.app_id),
            )
        return cls(
            package_name=app.package_name,
            token_provider=service_account_token_provider(app.google_service_account),
            **kwargs,
        )

    def _url(self, path: str) -> str:
        return f"{ANDROID_PUBLISHER_URL}/{quote(self.package_name, safe='')}/purchases/{path}"

    async def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._token_provider()
        return await self._request(
            method,
            self._url(path),
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def fetch_transaction(
        self,
        reference: str,
        *,
        product_id: Optional[str] = None,
        is_subscription: bool = True,
    ) -> Transaction:
        """
        Fetch and acknowledge a purchase identified by its purchase token.

        Args:
            reference: Purchase token.
            product_id: Store product (or subscription) id. Required.
            is_subscription: Use the subscriptions API instead of products.
        """
        if not product_id:
            raise StoreRequestError("Google Play purchases need a product id")
        if is_subscription:
            return await self._fetch_subscription(reference, product_id)
        return await self._fetch_product(reference, product_id)

    async def _fetch_subscription(self, token: str, product_id: str) -> Transaction:
        response = await self._call("GET", f"subscriptionsv2/tokens/{quote(token, safe='')}")
        data = response.json()

        if data.get("acknowledgementState") == _ACK_PENDING:
            await self._call(
                "POST",
                f"subscriptions/{quote(product_id, safe='')}/tokens/{quote(token, safe='')}:acknowledge",
                json={},
            )
            logger.info("Acknowledged Google subscription %s for %s", product_id, self.package_name)

        return self._normalize_subscription(token, product_id, data)

    async def _fetch_product(self, token: str, product_id: str) -> Transaction:
        path = f"products/{quote(product_id, safe='')}/tokens/{quote(token, safe='')}"
        response = await self._call("GET", path)
        data = response.json()

        if data.get("acknowledgementState") == 0 and data.get("purchaseState") == _PRODUCT_PURCHASED:
            await self._call("POST", f"{path}:acknowledge", json={})
            logger.info("Acknowledged Google product %s for %s", product_id, self.package_name)

        return self._normalize_product(token, product_id, data)

    def _normalize_subscription(
        self,
        token: str,
        product_id: str,
        data: dict[str, Any],
    ) -> Transaction:
        """Map a SubscriptionPurchaseV2 resource onto Transaction."""
        line_items = data.get("lineItems") or []
        line_item = next(
            (item for item in line_items if item.get("productId") == product_id),
            line_items[0] if line_items else {},
        )

        state = data.get("subscriptionState", "")
        store_status = GOOGLE_STATE_MAP.get(state)
        if store_status is None:
            raise StoreRequestError(f"Unknown Google subscription state {state!r}")

        expires_date = from_rfc3339(line_item.get("expiryTime"))
        now = datetime.now(timezone.utc)
        if state == "SUBSCRIPTION_STATE_CANCELED" and expires_date and expires_date <= now:
            store_status = SubscriptionStatus.EXPIRED

        auto_renewing = line_item.get("autoRenewingPlan") or {}
        price, currency = _money(auto_renewing.get("recurringPrice"))
        offer_phase = line_item.get("offerPhase") or {}

        start_time = from_rfc3339(data.get("startTime")) or now
        order_id = line_item.get("latestSuccessfulOrderId") or data.get("latestOrderId") or token

        cancellation = data.get("canceledStateContext") or {}
        revocation_reason = None
        if "systemInitiatedCancellation" in cancellation:
            revocation_reason = "system_canceled"
        elif "developerInitiatedCancellation" in cancellation:
            revocation_reason = "developer_canceled"

        return Transaction(
            platform=Platform.ANDROID,
            transaction_id=order_id,
            original_transaction_id=token,
            product_id=line_item.get("productId") or product_id,
            purchase_date=start_time,
            original_purchase_date=start_time,
            expires_date=expires_date,
            price=price,
            currency=currency,
            is_trial_period="freeTrial" in offer_phase,
            is_intro_offer_period="introductoryPrice" in offer_phase,
            auto_renew_enabled=bool(auto_renewing.get("autoRenewEnabled")),
            status=PurchaseStatus.COMPLETED,
            environment=Environment.SANDBOX if "testPurchase" in data else Environment.PRODUCTION,
            is_subscription=True,
            store_status=store_status,
            grace_period_expires_date=(
                expires_date if store_status == SubscriptionStatus.IN_GRACE_PERIOD else None
            ),
            revocation_reason=revocation_reason,
            raw_payload={"purchaseToken": token, "subscription": data},
        )

    def _normalize_product(
        self,
        token: str,
        product_id: str,
        data: dict[str, Any],
    ) -> Transaction:
        """Map a ProductPurchase resource onto Transaction."""
        purchase_date = from_millis(data.get("purchaseTimeMillis")) or datetime.now(timezone.utc)
        refunded = data.get("purchaseState") == _PRODUCT_CANCELED

        return Transaction(
            platform=Platform.ANDROID,
            transaction_id=data.get("orderId") or token,
            original_transaction_id=token,
            product_id=product_id,
            purchase_date=purchase_date,
            original_purchase_date=purchase_date,
            status=PurchaseStatus.REFUNDED if refunded else PurchaseStatus.COMPLETED,
            environment=(
                Environment.SANDBOX if data.get("purchaseType") == 0 else Environment.PRODUCTION
            ),
            is_subscription=False,
            revocation_reason="refunded" if refunded else None,
            raw_payload={"purchaseToken": token, "product": data},
        )
