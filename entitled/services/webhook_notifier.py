"""
Webhook Notifier
================

Signed outbound webhooks to the owning app.

Flow:
    1. ``WebhookDispatcher.record`` writes a pending ``WebhookDelivery`` row
       in the same transaction as the state change it reports.
    2. After commit, ``WebhookDispatcher.flush`` pushes the delivery ids
       onto a Redis stream.
    3. ``WebhookDeliveryWorker`` (``delivery_worker.py``) drains the stream
       and calls ``WebhookNotifier.deliver_by_id``.

Signing:
    The envelope is serialized once and those exact bytes are both signed
    (HMAC-SHA256 with the app's webhook secret) and sent. The receiver
    recomputes the HMAC over the raw request body and compares it to
    ``X-Entitled-Signature: sha256=<hex>``.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import uuid

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.db.base import utcnow
from entitled.db.session import get_session_factory
from entitled.models.app import App
from entitled.models.subscriber import Subscriber
from entitled.models.webhook import DeliveryStatus, StoreNotification, WebhookDelivery
from entitled.services.cache import CacheKeys, get_redis

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Entitled-Signature"
EVENT_HEADER = "X-Entitled-Event"
TIMESTAMP_HEADER = "X-Entitled-Timestamp"


class WebhookEventType(str, Enum):
    """Outbound event types."""
    SUBSCRIBER_CREATED = "subscriber.created"
    SUBSCRIBER_UPDATED = "subscriber.updated"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_BILLING_ISSUE = "subscription.billing_issue"
    SUBSCRIPTION_PRODUCT_CHANGE = "subscription.product_change"
    ENTITLEMENT_GRANTED = "entitlement.granted"
    ENTITLEMENT_REVOKED = "entitlement.revoked"
    PURCHASE_COMPLETED = "purchase.completed"
    PURCHASE_REFUNDED = "purchase.refunded"
    TRIAL_STARTED = "trial.started"
    TRIAL_CONVERTED = "trial.converted"
    TRIAL_EXPIRED = "trial.expired"


# =============================================================================
# Signing
# =============================================================================

def generate_webhook_secret() -> str:
    """Generate a new per-app webhook signing secret."""
    return "whsec_" + base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the signature header value for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check a signature header value in constant time."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


# =============================================================================
# Envelope
# =============================================================================

def build_event(
    event_type: WebhookEventType,
    *,
    app_id: Any,
    subscriber_id: Any = None,
    app_user_id: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Build the outbound envelope.

    Returns:
        ``{id, type, timestamp, appId, data: {subscriberId, appUserId, ...}}``
    """
    body: dict[str, Any] = {
        "subscriberId": str(subscriber_id) if subscriber_id is not None else None,
        "appUserId": app_user_id,
    }
    body.update(data or {})
    return {
        "id": f"evt_{uuid.uuid4().hex}",
        "type": event_type.value,
        "timestamp": (now or utcnow()).isoformat(),
        "appId": str(app_id),
        # Stored in a JSON column, so datetimes and UUIDs become strings here
        "data": json.loads(json.dumps(body, default=_json_default)),
    }


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def serialize_event(event: dict[str, Any]) -> bytes:
    """Serialize an envelope to the exact bytes that get signed and sent."""
    return json.dumps(event, separators=(",", ":"), default=_json_default).encode("utf-8")


# =============================================================================
# Delivery
# =============================================================================

@dataclass
class DeliveryResult:
    """Outcome of delivering one event."""
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    # the app had no webhook URL when the delivery came due
    skipped: bool = False


class WebhookNotifier:
    """Posts signed events with bounded retries."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        backoff_base: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.backoff_base = (
            settings.WEBHOOK_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self._sleep = sleep

    async def send(
        self,
        url: Optional[str],
        secret: Optional[str],
        event: dict[str, Any],
    ) -> Optional[DeliveryResult]:
        """
        Deliver one event, retrying with exponential backoff.

        Args:
            url: The app's webhook URL. ``None`` or empty means no-op.
            secret: The app's signing secret.
            event: Envelope from ``build_event``.

        Returns:
            DeliveryResult, or None when no URL is configured.
        """
        if not url:
            return None

        if self._client is not None:
            return await self._send_with(self._client, url, secret, event)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            return await self._send_with(client, url, secret, event)

    async def _send_with(
        self,
        client: httpx.AsyncClient,
        url: str,
        secret: Optional[str],
        event: dict[str, Any],
    ) -> DeliveryResult:
        body = serialize_event(event)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.WEBHOOK_USER_AGENT,
            EVENT_HEADER: event["type"],
            TIMESTAMP_HEADER: event["timestamp"],
        }
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret)

        status_code: Optional[int] = None
        error: Optional[str] = None
        for attempt in range(self.max_attempts):
            try:
                response = await client.post(url, content=body, headers=headers, timeout=self.timeout)
                status_code = response.status_code
                if 200 <= status_code < 300:
                    logger.info(
                        "Webhook %s (%s) delivered to %s on attempt %d",
                        event["id"], event["type"], url, attempt + 1,
                    )
                    return DeliveryResult(success=True, attempts=attempt + 1, status_code=status_code)
                error = f"HTTP {status_code}"
            except httpx.TimeoutException:
                error = "timeout"
            except httpx.HTTPError as exc:
                error = f"{type(exc).__name__}: {exc}"

            logger.warning(
                "Webhook %s attempt %d/%d to %s failed: %s",
                event["id"], attempt + 1, self.max_attempts, url, error,
            )
            if attempt < self.max_attempts - 1:
                await self._sleep(self.backoff_base * (2 ** attempt))

        logger.error(
            "Webhook %s (%s) to %s failed after %d attempts: %s",
            event["id"], event["type"], url, self.max_attempts, error,
        )
        return DeliveryResult(
            success=False,
            attempts=self.max_attempts,
            status_code=status_code,
            error=error,
        )

    async def deliver_by_id(self, delivery_id: uuid.UUID) -> Optional[DeliveryResult]:
        """
        Deliver a pending ``WebhookDelivery`` and persist the outcome.

        The row is read and written in two short transactions so no database
        transaction stays open across the HTTP calls.

        Returns:
            DeliveryResult, or None when the row is missing or not pending.
        """
        session_factory = get_session_factory()
        async with session_factory() as session:
            row = (
                await session.execute(
                    select(WebhookDelivery, App)
                    .join(App, App.app_id == WebhookDelivery.app_id)
                    .where(WebhookDelivery.delivery_id == delivery_id)
                )
            ).first()
            await session.commit()

        if row is None:
            logger.warning("Webhook delivery %s not found", delivery_id)
            return None
        delivery, app = row
        if delivery.status != DeliveryStatus.PENDING:
            logger.info("Webhook delivery %s already %s", delivery_id, delivery.status.value)
            return None

        result = await self.send(app.webhook_url, app.webhook_secret, delivery.payload)
        if result is None:
            logger.info("Webhook delivery %s skipped: app %s has no webhook URL", delivery_id, app.app_id)
            result = DeliveryResult(success=True, attempts=0, skipped=True)

        async with session_factory() as session:
            await record_delivery_result(session, delivery_id, result)
            await session.commit()
        return result


async def record_delivery_result(
    db: AsyncSession,
    delivery_id: uuid.UUID,
    result: DeliveryResult,
) -> None:
    """Persist the outcome of a delivery on its row."""
    now = utcnow()
    if result.skipped:
        status = DeliveryStatus.SKIPPED
    else:
        status = DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED
    await db.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.delivery_id == delivery_id)
        .values(
            status=status,
            attempts=WebhookDelivery.attempts + result.attempts,
            response_status=result.status_code,
            last_error=result.error,
            delivered_at=now if status == DeliveryStatus.DELIVERED else None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def enqueue_delivery(delivery_id: uuid.UUID) -> bool:
    """
    Push a delivery id onto the worker stream.

    A failure leaves the row pending; the lifecycle sweep re-enqueues it.
    """
    try:
        client = await get_redis()
        await client.xadd(
            CacheKeys.webhook_stream(),
            {"delivery_id": str(delivery_id)},
            maxlen=100000,
            approximate=True,
        )
        return True
    except Exception as exc:
        logger.warning("Could not enqueue webhook delivery %s: %s", delivery_id, exc)
        return False


# =============================================================================
# Dispatcher
# =============================================================================

class WebhookDispatcher:
    """Records deliveries inside the caller's transaction and enqueues them after commit."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._recorded: list[WebhookDelivery] = []

    @property
    def recorded(self) -> list[WebhookDelivery]:
        return list(self._recorded)

    def record(
        self,
        app: App,
        event_type: WebhookEventType,
        subscriber: Optional[Subscriber] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[WebhookDelivery]:
        """Add a pending delivery for ``event_type``; no-op without a webhook URL."""
        if not app.webhook_url:
            return None

        event = build_event(
            event_type,
            app_id=app.app_id,
            subscriber_id=subscriber.subscriber_id if subscriber else None,
            app_user_id=subscriber.app_user_id if subscriber else None,
            data=data,
        )
        delivery = WebhookDelivery(
            delivery_id=uuid.uuid4(),
            app_id=app.app_id,
            subscriber_id=subscriber.subscriber_id if subscriber else None,
            event_id=event["id"],
            event_type=event_type.value,
            payload=event,
            status=DeliveryStatus.PENDING,
            attempts=0,
        )
        self.db.add(delivery)
        self._recorded.append(delivery)
        return delivery

    async def flush(self) -> int:
        """Enqueue every recorded delivery. Call only after commit."""
        recorded, self._recorded = self._recorded, []
        enqueued = 0
        for delivery in recorded:
            if await enqueue_delivery(delivery.delivery_id):
                enqueued += 1
        return enqueued

    def discard(self) -> None:
        """Forget recorded deliveries after a rollback."""
        self._recorded = []


# =============================================================================
# Statistics
# =============================================================================

async def get_webhook_stats(db: AsyncSession, app_id: uuid.UUID, recent_limit: int = 20) -> dict:
    """
    Outbound delivery counts and inbound store notification counts for an app.
    """
    by_status = dict(
        (
            await db.execute(
                select(WebhookDelivery.status, func.count())
                .where(WebhookDelivery.app_id == app_id)
                .group_by(WebhookDelivery.status)
            )
        ).all()
    )
    recent_deliveries = (
        await db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.app_id == app_id)
            .order_by(WebhookDelivery.created_at.desc())
            .limit(recent_limit)
        )
    ).scalars().all()

    notifications = StoreNotification.app_id == app_id
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    total = await db.scalar(select(func.count()).select_from(StoreNotification).where(notifications))
    processed = await db.scalar(
        select(func.count()).select_from(StoreNotification)
        .where(notifications, StoreNotification.processed_at.is_not(None))
    )
    failed = await db.scalar(
        select(func.count()).select_from(StoreNotification)
        .where(
            notifications,
            StoreNotification.processed_at.is_(None),
            StoreNotification.error.is_not(None),
        )
    )
    last_24h = await db.scalar(
        select(func.count()).select_from(StoreNotification)
        .where(notifications, StoreNotification.created_at >= since)
    )
    recent_events = (
        await db.execute(
            select(StoreNotification)
            .where(notifications)
            .order_by(StoreNotification.created_at.desc())
            .limit(recent_limit)
        )
    ).scalars().all()

    return {
        "deliveries": {
            "delivered": by_status.get(DeliveryStatus.DELIVERED, 0),
            "failed": by_status.get(DeliveryStatus.FAILED, 0),
            "pending": by_status.get(DeliveryStatus.PENDING, 0),
            "skipped": by_status.get(DeliveryStatus.SKIPPED, 0),
            "recent": [
                {
                    "eventId": d.event_id,
                    "eventType": d.event_type,
                    "status": d.status.value,
                    "attempts": d.attempts,
                    "responseStatus": d.response_status,
                    "lastError": d.last_error,
                    "createdAt": d.created_at,
                    "deliveredAt": d.delivered_at,
                }
                for d in recent_deliveries
            ],
        },
        "notifications": {
            "total": total or 0,
            "processed": processed or 0,
            "failed": failed or 0,
            "pending": (total or 0) - (processed or 0) - (failed or 0),
            "last24Hours": last_24h or 0,
            "recent": [
                {
                    "platform": n.platform.value,
                    "notificationType": n.notification_type,
                    "subtype": n.subtype,
                    "notificationId": n.notification_id,
                    "processedAt": n.processed_at,
                    "error": n.error,
                    "retryCount": n.retry_count,
                    "createdAt": n.created_at,
                }
                for n in recent_events
            ],
        },
    }
