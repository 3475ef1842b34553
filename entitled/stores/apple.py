"""
App Store Server API Adapter
============================

Fetches transactions and live subscription status from Apple's
App Store Server API and normalizes them into ``Transaction``.

Authentication:
    Every request carries an ES256 JWT signed with the app's
    App Store Connect API key (``kid`` = key id, ``iss`` = issuer id,
    ``bid`` = bundle id). Tokens live for at most an hour; we mint a fresh
    one when fewer than five minutes remain.

Signed payloads:
    Apple returns JWS strings (``signedTransactionInfo``,
    ``signedRenewalInfo``). We read their claims without verifying the
    certificate chain: the data came back over TLS from Apple's API in
    response to our own authenticated call.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from entitled.config import settings
from entitled.core.errors import StoreConfigurationError, StoreRequestError
from entitled.models.app import App, Platform
from entitled.models.purchase import Environment, PurchaseStatus, SubscriptionStatus
from entitled.stores.base import StoreAdapter, Transaction, from_millis

logger = logging.getLogger(__name__)

APPLE_PRODUCTION_URL = "https://api.storekit.itunes.apple.com"
APPLE_SANDBOX_URL = "https://api.storekit-sandbox.itunes.apple.com"

_TOKEN_TTL_SECONDS = 3600
_TOKEN_REFRESH_MARGIN = 300

AUTO_RENEWABLE_TYPE = "Auto-Renewable Subscription"

# GET /inApps/v1/subscriptions status values
APPLE_STATUS_MAP: dict[int, SubscriptionStatus] = {
    1: SubscriptionStatus.ACTIVE,
    2: SubscriptionStatus.EXPIRED,
    3: SubscriptionStatus.IN_BILLING_RETRY,
    4: SubscriptionStatus.IN_GRACE_PERIOD,
    5: SubscriptionStatus.REVOKED,
}

# offerType: 1 introductory, 2 promotional, 3 offer code, 4 win-back
_INTRODUCTORY_OFFER = 1

_REVOCATION_REASONS = {
    0: "refunded",
    1: "refunded_app_issue",
}


def decode_signed_payload(signed: str) -> dict[str, Any]:
    """Read the claims of an Apple JWS string."""
    try:
        claims = jwt.get_unverified_claims(signed)
    except JOSEError as exc:
        raise StoreRequestError(f"Malformed signed payload from App Store: {exc}") from exc
    if not isinstance(claims, dict):
        raise StoreRequestError("Signed payload from App Store is not a JSON object")
    return claims


class AppleStoreAdapter(StoreAdapter):
    """StoreAdapter for the App Store Server API."""

    platform = Platform.IOS

    def __init__(
        self,
        *,
        bundle_id: str,
        issuer_id: str,
        key_id: str,
        private_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        sandbox_fallback: Optional[bool] = None,
    ):
        if not (bundle_id and issuer_id and key_id and private_key):
            raise StoreConfigurationError("App Store credentials are not configured for this app")
        super().__init__(http_client)
        self.bundle_id = bundle_id
        self.issuer_id = issuer_id
        self.key_id = key_id
        self.private_key = private_key
        self.sandbox_fallback = (
            settings.APPLE_SANDBOX_FALLBACK if sandbox_fallback is None else sandbox_fallback
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_app(cls, app: App, **kwargs: Any) -> "AppleStoreAdapter":
        """Build an adapter from an app's stored credentials."""
        if not app.has_apple_credentials:
            raise StoreConfigurationError(
                "App Store credentials are not configured for this app",
                app_id=str(app.app_id),
            )
        return cls(
            bundle_id=app.bundle_id,
            issuer_id=app.apple_issuer_id,
            key_id=app.apple_key_id,
            private_key=app.apple_private_key,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def _bearer_token(self) -> str:
        """Return a cached App Store Server API token, minting one if needed."""
        now = time.time()
        if self._token and now < self._token_expires_at - _TOKEN_REFRESH_MARGIN:
            return self._token

        issued_at = int(now)
        claims = {
            "iss": self.issuer_id,
            "iat": issued_at,
            "exp": issued_at + _TOKEN_TTL_SECONDS,
            "aud": "appstoreconnect-v1",
            "bid": self.bundle_id,
        }
        try:
            self._token = jwt.encode(
                claims,
                self.private_key,
                algorithm="ES256",
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except JOSEError as exc:
            raise StoreConfigurationError(f"App Store private key is unusable: {exc}") from exc
        self._token_expires_at = issued_at + _TOKEN_TTL_SECONDS
        return self._token

    async def _get(self, base_url: str, path: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"{base_url}{path}",
            headers={"Authorization": f"Bearer {self._bearer_token()}"},
        )
        return response.json()

    async def _get_with_fallback(self, path: str) -> tuple[str, dict[str, Any]]:
        """GET against production, then sandbox when production has no record."""
        try:
            return APPLE_PRODUCTION_URL, await self._get(APPLE_PRODUCTION_URL, path)
        except StoreRequestError as exc:
            if not (self.sandbox_fallback and exc.store_status == 404):
                raise
            logger.info("App Store production has no record for %s, trying sandbox", path)
        return APPLE_SANDBOX_URL, await self._get(APPLE_SANDBOX_URL, path)

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
        Fetch a transaction by id and, for subscriptions, its live status.

        Args:
            reference: Any transaction id of the purchase (original or latest).
            product_id: Ignored; Apple transactions name their own product.
            is_subscription: Ignored; derived from the transaction type.

        Returns:
            Normalized Transaction.
        """
        base_url, body = await self._get_with_fallback(f"/inApps/v1/transactions/{reference}")
        signed = body.get("signedTransactionInfo")
        if not signed:
            raise StoreRequestError("App Store response carried no transaction")
        info = decode_signed_payload(signed)

        status_info: Optional[dict[str, Any]] = None
        renewal: dict[str, Any] = {}
        if info.get("type") == AUTO_RENEWABLE_TYPE:
            status_info, renewal = await self._fetch_subscription_status(
                base_url, str(info["originalTransactionId"]),
            )
            info = self._latest_transaction(info, status_info)

        return self._normalize(info, status_info, renewal)

    @staticmethod
    def _latest_transaction(
        info: dict[str, Any],
        status_info: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        """
        The renewal the subscription status refers to, when it is newer than
        the transaction the client named (an old id of a renewed subscription).

        A revoked named transaction is kept so the refund is applied.
        """
        if not status_info or not status_info.get("signedTransactionInfo") or info.get("revocationDate"):
            return info
        latest = decode_signed_payload(status_info["signedTransactionInfo"])
        if str(latest.get("originalTransactionId")) != str(info.get("originalTransactionId")):
            return info
        if int(latest.get("purchaseDate") or 0) <= int(info.get("purchaseDate") or 0):
            return info
        logger.info(
            "Transaction %s superseded by renewal %s",
            info.get("transactionId"),
            latest.get("transactionId"),
        )
        return latest

    async def _fetch_subscription_status(
        self,
        base_url: str,
        original_transaction_id: str,
    ) -> tuple[Optional[dict[str, Any]], dict[str, Any]]:
        """
        Look up the subscription group entry for an original transaction.

        Returns:
            (lastTransactions entry or None, decoded renewal info)
        """
        body = await self._get(base_url, f"/inApps/v1/subscriptions/{original_transaction_id}")
        for group in body.get("data", []):
            for entry in group.get("lastTransactions", []):
                if str(entry.get("originalTransactionId")) != original_transaction_id:
                    continue
                renewal = {}
                if entry.get("signedRenewalInfo"):
                    renewal = decode_signed_payload(entry["signedRenewalInfo"])
                return entry, renewal
        logger.warning(
            "App Store status response has no entry for original transaction %s",
            original_transaction_id,
        )
        return None, {}

    def _normalize(
        self,
        info: dict[str, Any],
        status_info: Optional[dict[str, Any]],
        renewal: dict[str, Any],
    ) -> Transaction:
        """Map decoded Apple payloads onto the normalized Transaction."""
        is_subscription = info.get("type") == AUTO_RENEWABLE_TYPE
        revoked = info.get("revocationDate") is not None

        offer_type = info.get("offerType")
        discount_type = info.get("offerDiscountType")
        is_trial = offer_type == _INTRODUCTORY_OFFER and discount_type in (None, "FREE_TRIAL")
        is_intro = offer_type is not None and not is_trial

        store_status: Optional[SubscriptionStatus] = None
        if is_subscription:
            if revoked:
                store_status = SubscriptionStatus.REVOKED
            elif status_info is not None:
                store_status = APPLE_STATUS_MAP.get(status_info.get("status"))
                if store_status is None:
                    raise StoreRequestError(
                        f"Unknown App Store subscription status {status_info.get('status')!r}",
                    )
            else:
                store_status = SubscriptionStatus.ACTIVE

        price = None
        if info.get("price") is not None:
            # App Store prices are in milliunits of the currency
            price = Decimal(int(info["price"])) / Decimal(1000)

        revocation_reason = None
        if revoked:
            revocation_reason = _REVOCATION_REASONS.get(info.get("revocationReason"), "revoked")

        environment = (
            Environment.SANDBOX
            if str(info.get("environment", "")).lower() == "sandbox"
            else Environment.PRODUCTION
        )

        purchase_date = from_millis(info.get("purchaseDate"))
        return Transaction(
            platform=Platform.IOS,
            transaction_id=str(info["transactionId"]),
            original_transaction_id=str(info.get("originalTransactionId") or info["transactionId"]),
            product_id=info["productId"],
            purchase_date=purchase_date,
            original_purchase_date=from_millis(info.get("originalPurchaseDate")) or purchase_date,
            expires_date=from_millis(info.get("expiresDate")),
            price=price,
            currency=info.get("currency"),
            is_trial_period=is_subscription and is_trial,
            is_intro_offer_period=is_subscription and is_intro,
            auto_renew_enabled=renewal.get("autoRenewStatus") == 1 if is_subscription else False,
            status=PurchaseStatus.REFUNDED if revoked else PurchaseStatus.COMPLETED,
            environment=environment,
            is_subscription=is_subscription,
            store_status=store_status,
            grace_period_expires_date=from_millis(renewal.get("gracePeriodExpiresDate")),
            revocation_reason=revocation_reason,
            raw_payload={"transaction": info, "renewalInfo": renewal or None},
        )
