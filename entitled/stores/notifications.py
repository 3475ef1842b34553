"""
Store Server Notifications
==========================

Typed representations of the pushes Apple (App Store Server
Notifications V2) and Google (Real-time Developer Notifications) send us.

Each platform's notification kinds are an enum and every member maps to a
``NotificationAction`` in a table checked at import time, so a kind added
to an enum without a decision about how to handle it fails loudly instead
of being swallowed by a default branch. Kinds a store sends that we do not
know raise ``UnsupportedNotificationError``.

Pushes are signals to re-check, not authoritative state: for anything but
``IGNORE``/``TEST`` the caller re-fetches the purchase through the store
adapter.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional, Union

from jose import jwt
from jose.exceptions import JOSEError

from entitled.core.errors import MalformedNotificationError, UnsupportedNotificationError
from entitled.models.app import Platform
from entitled.models.purchase import Environment

logger = logging.getLogger(__name__)


class NotificationAction(str, Enum):
    """What to do with a store push."""
    REFRESH = "refresh"    # re-fetch the purchase and reprocess it
    REVOKE = "revoke"      # re-fetch, then force the purchase into revoked/refunded
    IGNORE = "ignore"      # informational, log only
    TEST = "test"          # store connectivity check


# =============================================================================
# Apple
# =============================================================================

class AppleNotificationType(str, Enum):
    """App Store Server Notifications V2 ``notificationType`` values."""
    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    EXTERNAL_PURCHASE_TOKEN = "EXTERNAL_PURCHASE_TOKEN"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    METADATA_UPDATE = "METADATA_UPDATE"
    MIGRATION = "MIGRATION"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    ONE_TIME_CHARGE = "ONE_TIME_CHARGE"
    PRICE_CHANGE = "PRICE_CHANGE"
    PRICE_INCREASE = "PRICE_INCREASE"
    REFUND = "REFUND"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    RENEWAL_EXTENSION = "RENEWAL_EXTENSION"
    RESCIND_CONSENT = "RESCIND_CONSENT"
    REVOKE = "REVOKE"
    SUBSCRIBED = "SUBSCRIBED"
    TEST = "TEST"


APPLE_ACTIONS: dict[AppleNotificationType, NotificationAction] = {
    AppleNotificationType.CONSUMPTION_REQUEST: NotificationAction.IGNORE,
    AppleNotificationType.DID_CHANGE_RENEWAL_PREF: NotificationAction.REFRESH,
    AppleNotificationType.DID_CHANGE_RENEWAL_STATUS: NotificationAction.REFRESH,
    AppleNotificationType.DID_FAIL_TO_RENEW: NotificationAction.REFRESH,
    AppleNotificationType.DID_RENEW: NotificationAction.REFRESH,
    AppleNotificationType.EXPIRED: NotificationAction.REFRESH,
    AppleNotificationType.EXTERNAL_PURCHASE_TOKEN: NotificationAction.IGNORE,
    AppleNotificationType.GRACE_PERIOD_EXPIRED: NotificationAction.REFRESH,
    AppleNotificationType.METADATA_UPDATE: NotificationAction.IGNORE,
    AppleNotificationType.MIGRATION: NotificationAction.IGNORE,
    AppleNotificationType.OFFER_REDEEMED: NotificationAction.REFRESH,
    AppleNotificationType.ONE_TIME_CHARGE: NotificationAction.REFRESH,
    AppleNotificationType.PRICE_CHANGE: NotificationAction.IGNORE,
    AppleNotificationType.PRICE_INCREASE: NotificationAction.IGNORE,
    AppleNotificationType.REFUND: NotificationAction.REVOKE,
    AppleNotificationType.REFUND_DECLINED: NotificationAction.IGNORE,
    # Revoked is terminal; the re-fetch only refreshes the ledger row
    AppleNotificationType.REFUND_REVERSED: NotificationAction.REFRESH,
    AppleNotificationType.RENEWAL_EXTENDED: NotificationAction.REFRESH,
    AppleNotificationType.RENEWAL_EXTENSION: NotificationAction.IGNORE,
    AppleNotificationType.RESCIND_CONSENT: NotificationAction.IGNORE,
    AppleNotificationType.REVOKE: NotificationAction.REVOKE,
    AppleNotificationType.SUBSCRIBED: NotificationAction.REFRESH,
    AppleNotificationType.TEST: NotificationAction.TEST,
}


@dataclass(frozen=True)
class AppleNotification:
    """A decoded App Store Server Notification V2."""

    kind: AppleNotificationType
    notification_id: str
    subtype: Optional[str] = None
    bundle_id: Optional[str] = None
    environment: Environment = Environment.PRODUCTION
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    platform = Platform.IOS

    @property
    def action(self) -> NotificationAction:
        return APPLE_ACTIONS[self.kind]

    @property
    def notification_type(self) -> str:
        return self.kind.value


def _unverified_claims(signed: str, what: str) -> dict[str, Any]:
    try:
        claims = jwt.get_unverified_claims(signed)
    except JOSEError as exc:
        raise MalformedNotificationError(f"Could not decode {what}: {exc}") from exc
    if not isinstance(claims, dict):
        raise MalformedNotificationError(f"{what} is not a JSON object")
    return claims


def parse_apple_notification(signed_payload: str) -> AppleNotification:
    """
    Decode an App Store ``signedPayload`` into an ``AppleNotification``.

    Raises:
        MalformedNotificationError: not a decodable JWS.
        UnsupportedNotificationError: a notificationType we do not know.
    """
    if not signed_payload:
        raise MalformedNotificationError("Missing signedPayload")

    payload = _unverified_claims(signed_payload, "signedPayload")
    raw_type = payload.get("notificationType")
    notification_id = payload.get("notificationUUID")
    if not raw_type or not notification_id:
        raise MalformedNotificationError("signedPayload lacks notificationType or notificationUUID")

    try:
        kind = AppleNotificationType(raw_type)
    except ValueError:
        raise UnsupportedNotificationError(
            f"Unsupported App Store notification type {raw_type!r}",
            notification_type=raw_type,
            notification_id=notification_id,
        ) from None

    data = payload.get("data") or {}
    transaction: dict[str, Any] = {}
    if data.get("signedTransactionInfo"):
        transaction = _unverified_claims(data["signedTransactionInfo"], "signedTransactionInfo")

    environment = (
        Environment.SANDBOX
        if str(data.get("environment", "")).lower() == "sandbox"
        else Environment.PRODUCTION
    )

    def _str_or_none(value: Any) -> Optional[str]:
        return str(value) if value is not None else None

    return AppleNotification(
        kind=kind,
        notification_id=notification_id,
        subtype=payload.get("subtype"),
        bundle_id=data.get("bundleId"),
        environment=environment,
        transaction_id=_str_or_none(transaction.get("transactionId")),
        original_transaction_id=_str_or_none(transaction.get("originalTransactionId")),
        product_id=transaction.get("productId"),
        payload={"notification": payload, "transaction": transaction or None},
    )


# =============================================================================
# Google
# =============================================================================

class GoogleSubscriptionNotificationType(IntEnum):
    """RTDN ``subscriptionNotification.notificationType`` values."""
    SUBSCRIPTION_RECOVERED = 1
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12
    SUBSCRIPTION_EXPIRED = 13
    SUBSCRIPTION_PRICE_CHANGE_UPDATED = 19
    SUBSCRIPTION_PENDING_PURCHASE_CANCELED = 20


class GoogleOneTimeNotificationType(IntEnum):
    """RTDN ``oneTimeProductNotification.notificationType`` values."""
    ONE_TIME_PRODUCT_PURCHASED = 1
    ONE_TIME_PRODUCT_CANCELED = 2


GOOGLE_SUBSCRIPTION_ACTIONS: dict[GoogleSubscriptionNotificationType, NotificationAction] = {
    GoogleSubscriptionNotificationType.SUBSCRIPTION_RECOVERED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_RENEWED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_CANCELED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PURCHASED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_ON_HOLD: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_IN_GRACE_PERIOD: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_RESTARTED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PRICE_CHANGE_CONFIRMED: NotificationAction.IGNORE,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_DEFERRED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PAUSED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED: NotificationAction.IGNORE,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_REVOKED: NotificationAction.REVOKE,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_EXPIRED: NotificationAction.REFRESH,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PRICE_CHANGE_UPDATED: NotificationAction.IGNORE,
    GoogleSubscriptionNotificationType.SUBSCRIPTION_PENDING_PURCHASE_CANCELED: NotificationAction.IGNORE,
}

GOOGLE_ONE_TIME_ACTIONS: dict[GoogleOneTimeNotificationType, NotificationAction] = {
    GoogleOneTimeNotificationType.ONE_TIME_PRODUCT_PURCHASED: NotificationAction.REFRESH,
    GoogleOneTimeNotificationType.ONE_TIME_PRODUCT_CANCELED: NotificationAction.REVOKE,
}


@dataclass(frozen=True)
class GoogleSubscriptionNotification:
    kind: GoogleSubscriptionNotificationType
    notification_id: str
    package_name: str
    purchase_token: str
    product_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    platform = Platform.ANDROID
    subtype = None

    @property
    def action(self) -> NotificationAction:
        return GOOGLE_SUBSCRIPTION_ACTIONS[self.kind]

    @property
    def notification_type(self) -> str:
        return self.kind.name


@dataclass(frozen=True)
class GoogleOneTimeProductNotification:
    kind: GoogleOneTimeNotificationType
    notification_id: str
    package_name: str
    purchase_token: str
    product_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    platform = Platform.ANDROID
    subtype = None

    @property
    def action(self) -> NotificationAction:
        return GOOGLE_ONE_TIME_ACTIONS[self.kind]

    @property
    def notification_type(self) -> str:
        return self.kind.name


@dataclass(frozen=True)
class GoogleVoidedPurchaseNotification:
    """A refund, chargeback or revocation reported by Google."""

    notification_id: str
    package_name: str
    purchase_token: str
    order_id: Optional[str] = None
    is_subscription: bool = False
    payload: dict[str, Any] = field(default_factory=dict)

    platform = Platform.ANDROID
    subtype = None
    action = NotificationAction.REVOKE
    notification_type = "VOIDED_PURCHASE"


@dataclass(frozen=True)
class GoogleTestNotification:
    notification_id: str
    package_name: str
    payload: dict[str, Any] = field(default_factory=dict)

    platform = Platform.ANDROID
    subtype = None
    action = NotificationAction.TEST
    notification_type = "TEST"


GoogleNotification = Union[
    GoogleSubscriptionNotification,
    GoogleOneTimeProductNotification,
    GoogleVoidedPurchaseNotification,
    GoogleTestNotification,
]

StoreNotificationMessage = Union[AppleNotification, GoogleNotification]


def parse_google_notification(envelope: dict[str, Any]) -> GoogleNotification:
    """
    Decode a Pub/Sub push envelope carrying a DeveloperNotification.

    The envelope looks like ``{"message": {"data": <base64>, "messageId": ...},
    "subscription": ...}``.

    Raises:
        MalformedNotificationError: missing or undecodable message data.
        UnsupportedNotificationError: a notification kind we do not know.
    """
    message = envelope.get("message") or {}
    encoded = message.get("data")
    if not encoded:
        raise MalformedNotificationError("Pub/Sub message has no data")
    try:
        payload = json.loads(base64.b64decode(encoded))
    except (binascii.Error, ValueError) as exc:
        raise MalformedNotificationError(f"Pub/Sub message data is not base64 JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedNotificationError("DeveloperNotification is not a JSON object")

    package_name = payload.get("packageName") or ""
    notification_id = (
        message.get("messageId")
        or message.get("message_id")
        or f"{package_name}:{payload.get('eventTimeMillis', '')}"
    )

    if "subscriptionNotification" in payload:
        body = payload["subscriptionNotification"]
        raw_type = body.get("notificationType")
        try:
            kind = GoogleSubscriptionNotificationType(int(raw_type))
        except (TypeError, ValueError):
            raise UnsupportedNotificationError(
                f"Unsupported Google subscription notification type {raw_type!r}",
                notification_type=f"SUBSCRIPTION_{raw_type}",
                notification_id=notification_id,
            ) from None
        return GoogleSubscriptionNotification(
            kind=kind,
            notification_id=notification_id,
            package_name=package_name,
            purchase_token=body.get("purchaseToken", ""),
            product_id=body.get("subscriptionId", ""),
            payload=payload,
        )

    if "oneTimeProductNotification" in payload:
        body = payload["oneTimeProductNotification"]
        raw_type = body.get("notificationType")
        try:
            kind = GoogleOneTimeNotificationType(int(raw_type))
        except (TypeError, ValueError):
            raise UnsupportedNotificationError(
                f"Unsupported Google one-time product notification type {raw_type!r}",
                notification_type=f"ONE_TIME_PRODUCT_{raw_type}",
                notification_id=notification_id,
            ) from None
        return GoogleOneTimeProductNotification(
            kind=kind,
            notification_id=notification_id,
            package_name=package_name,
            purchase_token=body.get("purchaseToken", ""),
            product_id=body.get("sku", ""),
            payload=payload,
        )

    if "voidedPurchaseNotification" in payload:
        body = payload["voidedPurchaseNotification"]
        return GoogleVoidedPurchaseNotification(
            notification_id=notification_id,
            package_name=package_name,
            purchase_token=body.get("purchaseToken", ""),
            order_id=body.get("orderId"),
            # productType: 1 subscription, 2 one-time
            is_subscription=body.get("productType") == 1,
            payload=payload,
        )

    if "testNotification" in payload:
        return GoogleTestNotification(
            notification_id=notification_id,
            package_name=package_name,
            payload=payload,
        )

    raise UnsupportedNotificationError(
        "DeveloperNotification carries no known notification body",
        notification_type="UNKNOWN",
        notification_id=notification_id,
    )


def _check_exhaustive() -> None:
    """Every notification kind must have an explicit action."""
    for enum_cls, table in (
        (AppleNotificationType, APPLE_ACTIONS),
        (GoogleSubscriptionNotificationType, GOOGLE_SUBSCRIPTION_ACTIONS),
        (GoogleOneTimeNotificationType, GOOGLE_ONE_TIME_ACTIONS),
    ):
        missing = set(enum_cls) - set(table)
        if missing:
            names = ", ".join(sorted(m.name for m in missing))
            raise RuntimeError(f"{enum_cls.__name__} members without an action: {names}")


_check_exhaustive()
