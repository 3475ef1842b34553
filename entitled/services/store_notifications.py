"""
Store Notification Service
==========================

Handles App Store Server Notifications V2 and Google Play Real-time
Developer Notifications.

Pushes are signals to re-check: for anything actionable the purchase is
re-fetched through the store adapter and run through the same processing
path as a receipt validation.

Idempotency:
    Every push carries a store-assigned id. A Redis marker (TTL
    ``NOTIFICATION_IDEMPOTENCY_TTL``) short-circuits redeliveries, and the
    ``store_notifications`` row, unique per (platform, notification id),
    is only treated as a duplicate once ``processed_at`` is set, so a push
    that failed half-way is processed again when the store retries.
"""

import dataclasses
import logging
from typing import Any, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.core.errors import (
    EntitledError,
    MalformedNotificationError,
    StoreTransientError,
    UnsupportedNotificationError,
)
from entitled.db.base import utcnow
from entitled.models.app import App, Platform, Product
from entitled.models.purchase import PurchaseStatus, SubscriptionStatus
from entitled.models.subscriber import Subscriber
from entitled.models.webhook import StoreNotification
from entitled.services.cache import CacheInvalidator, CacheKeys, CacheManager
from entitled.services.ledger import LedgerResult
from entitled.services.receipts import AdapterFactory, ReceiptService, purchase_event_data
from entitled.services.webhook_notifier import WebhookEventType
from entitled.stores.base import Transaction
from entitled.stores.notifications import (
    AppleNotification,
    GoogleVoidedPurchaseNotification,
    NotificationAction,
    StoreNotificationMessage,
    parse_apple_notification,
    parse_google_notification,
)

logger = logging.getLogger(__name__)


class StoreNotificationService:
    """Decodes, deduplicates, logs and processes store pushes."""

    def __init__(self, db: AsyncSession, adapter_factory: Optional[AdapterFactory] = None):
        self.db = db
        self.receipts = ReceiptService(db, adapter_factory)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle_apple(self, body: dict[str, Any]) -> dict[str, Any]:
        """Handle an App Store ``{"signedPayload": ...}`` request body."""
        try:
            notification = parse_apple_notification(body.get("signedPayload", ""))
        except UnsupportedNotificationError as exc:
            return await self._record_unsupported(Platform.IOS, exc, body)
        app = await self._app_by(App.bundle_id, notification.bundle_id)
        return await self.handle(app, notification)

    async def handle_google(self, envelope: dict[str, Any]) -> dict[str, Any]:
        """Handle a Pub/Sub push envelope."""
        try:
            notification = parse_google_notification(envelope)
        except UnsupportedNotificationError as exc:
            return await self._record_unsupported(Platform.ANDROID, exc, envelope)
        app = await self._app_by(App.package_name, notification.package_name)
        return await self.handle(app, notification)

    async def handle(
        self,
        app: Optional[App],
        notification: StoreNotificationMessage,
    ) -> dict[str, Any]:
        """
        Deduplicate, log and process one decoded notification.

        Raises:
            StoreTransientError: the store could not be reached; the push
                should be redelivered.
        """
        platform = notification.platform
        idempotency_key = CacheKeys.notification(platform.value, notification.notification_id)
        if await CacheManager.exists(idempotency_key):
            logger.info("Duplicate %s notification %s, skipping", platform.value, notification.notification_id)
            return {"received": True, "duplicate": True}

        log = await self._log_row(app, notification)
        if log is None:
            logger.info("Notification %s already processed", notification.notification_id)
            return {"received": True, "duplicate": True}
        log_id = log.notification_log_id
        await self.db.commit()

        logger.info(
            "Store notification: platform=%s type=%s subtype=%s id=%s",
            platform.value,
            notification.notification_type,
            notification.subtype,
            notification.notification_id,
        )

        if app is None:
            message = "No app is configured for this notification"
            await self._record_failure(log_id, message)
            logger.error("%s (%s %s)", message, platform.value, notification.notification_id)
            return {"received": True, "processed": False}

        try:
            outcome, subscriber = await self._process(app, notification)
            await self.db.execute(
                update(StoreNotification)
                .where(StoreNotification.notification_log_id == log_id)
                .values(processed_at=utcnow(), error=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except StoreTransientError as exc:
            await self._abort(log_id, exc.message)
            raise
        except EntitledError as exc:
            await self._abort(log_id, exc.message)
            logger.error(
                "Notification %s could not be processed: %s",
                notification.notification_id,
                exc.message,
            )
            return {"received": True, "processed": False, "error": exc.code}
        except Exception as exc:
            await self._abort(log_id, f"{type(exc).__name__}: {exc}")
            raise

        await self.receipts.dispatcher.flush()
        if subscriber is not None:
            await CacheInvalidator.on_subscriber_change(
                app.app_id, subscriber.app_user_id, subscriber.aliases,
            )
        await CacheManager.set(idempotency_key, 1, ttl=settings.NOTIFICATION_IDEMPOTENCY_TTL)
        return {"received": True, "processed": True, **outcome}

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def _process(
        self,
        app: App,
        notification: StoreNotificationMessage,
    ) -> tuple[dict[str, Any], Optional[Subscriber]]:
        action = notification.action
        if action in (NotificationAction.IGNORE, NotificationAction.TEST):
            logger.info("Notification %s needs no action (%s)", notification.notification_id, action.value)
            return {"action": action.value}, None

        if isinstance(notification, GoogleVoidedPurchaseNotification):
            return await self._process_voided(app, notification)

        txn, product = await self._refetch(app, notification)
        if action == NotificationAction.REVOKE and not txn.is_refunded:
            txn = dataclasses.replace(
                txn,
                status=PurchaseStatus.REFUNDED,
                store_status=SubscriptionStatus.REVOKED if txn.is_subscription else None,
                revocation_reason=txn.revocation_reason or notification.notification_type.lower(),
            )

        subscriber = await self._subscriber_for(app, txn)
        if subscriber is None:
            logger.warning(
                "No subscriber owns %s transaction %s yet; it is processed on receipt validation",
                txn.platform.value,
                txn.original_transaction_id,
            )
            return {"action": action.value, "matched": False}, None

        result = await self.receipts.process_transaction(app, subscriber, product, txn)
        return {
            "action": action.value,
            "matched": True,
            "granted": result.granted,
            "revoked": result.revoked,
        }, subscriber

    async def _refetch(
        self,
        app: App,
        notification: StoreNotificationMessage,
    ) -> tuple[Transaction, Product]:
        """Fetch the authoritative transaction the push refers to."""
        if isinstance(notification, AppleNotification):
            reference = notification.transaction_id or notification.original_transaction_id
            if not reference:
                raise MalformedNotificationError("App Store notification names no transaction")
            txn = await self.receipts.fetch_transaction(app, Platform.IOS, reference)
            product = await self.receipts.resolve_product(app, Platform.IOS, txn.product_id)
            return txn, product

        product = await self.receipts.resolve_product(app, Platform.ANDROID, notification.product_id)
        txn = await self.receipts.fetch_transaction(
            app,
            Platform.ANDROID,
            notification.purchase_token,
            product_id=notification.product_id,
            is_subscription=product.is_subscription,
        )
        return txn, product

    async def _process_voided(
        self,
        app: App,
        notification: GoogleVoidedPurchaseNotification,
    ) -> tuple[dict[str, Any], Optional[Subscriber]]:
        """Refund or revoke what a Google voided purchase refers to."""
        ledger = self.receipts.ledger
        state = self.receipts.state

        purchase = await ledger.find_latest_by_original(Platform.ANDROID, notification.purchase_token)
        if purchase is None and notification.order_id:
            purchase = await ledger.find(Platform.ANDROID, notification.order_id)
        subscription = await state.get_by_original_transaction_id(
            Platform.ANDROID, notification.purchase_token, for_update=True,
        )
        if purchase is None and subscription is None:
            logger.warning("Voided purchase %s matches nothing in the ledger", notification.purchase_token)
            return {"action": notification.action.value, "matched": False}, None

        owner_id = subscription.subscriber_id if subscription is not None else purchase.subscriber_id
        subscriber = await self.db.get(Subscriber, owner_id)

        if subscription is not None:
            await state.revoke(subscription, "voided")
        if purchase is not None and await ledger.mark_refunded(purchase, "voided"):
            product = await self.db.get(Product, purchase.product_id)
            self.receipts.dispatcher.record(
                app,
                WebhookEventType.PURCHASE_REFUNDED,
                subscriber,
                {
                    **purchase_event_data(LedgerResult(purchase=purchase, created=False), product),
                    "reason": purchase.refund_reason,
                },
            )

        refresh = await self.receipts.entitlements.refresh(owner_id)
        self.receipts.record_entitlement_events(app, subscriber, refresh.granted, refresh.revoked)
        return {
            "action": notification.action.value,
            "matched": True,
            "granted": refresh.granted,
            "revoked": refresh.revoked,
        }, subscriber

    async def _subscriber_for(self, app: App, txn: Transaction) -> Optional[Subscriber]:
        """The subscriber that owns a transaction, from the subscription or the ledger."""
        owner_id: Optional[uuid.UUID] = None
        if txn.is_subscription:
            subscription = await self.receipts.state.get_by_original_transaction_id(
                txn.platform, txn.original_transaction_id,
            )
            if subscription is not None:
                owner_id = subscription.subscriber_id
        if owner_id is None:
            purchase = (
                await self.receipts.ledger.find(txn.platform, txn.transaction_id)
                or await self.receipts.ledger.find_latest_by_original(
                    txn.platform, txn.original_transaction_id,
                )
            )
            if purchase is not None:
                owner_id = purchase.subscriber_id
        if owner_id is None:
            return None

        subscriber = await self.db.get(Subscriber, owner_id)
        if subscriber is None or subscriber.app_id != app.app_id:
            return None
        return subscriber

    # -------------------------------------------------------------------------
    # Notification log
    # -------------------------------------------------------------------------

    async def _app_by(self, column, value: Optional[str]) -> Optional[App]:
        if not value:
            return None
        result = await self.db.execute(select(App).where(column == value).limit(1))
        return result.scalar_one_or_none()

    async def _log_row(
        self,
        app: Optional[App],
        notification: StoreNotificationMessage,
    ) -> Optional[StoreNotification]:
        """Insert the log row, or pick up an unprocessed one. None if already processed."""
        existing = await self._find_log(notification.platform, notification.notification_id)
        if existing is None:
            row = StoreNotification(
                notification_log_id=uuid.uuid4(),
                app_id=app.app_id if app else None,
                platform=notification.platform,
                notification_type=notification.notification_type,
                subtype=notification.subtype,
                notification_id=notification.notification_id,
                payload=notification.payload,
                retry_count=0,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(row)
                    await self.db.flush()
                return row
            except IntegrityError:
                existing = await self._find_log(notification.platform, notification.notification_id)

        if existing.processed_at is not None:
            return None
        existing.retry_count += 1
        if app is not None and existing.app_id is None:
            existing.app_id = app.app_id
        await self.db.flush()
        return existing

    async def _find_log(self, platform: Platform, notification_id: str) -> Optional[StoreNotification]:
        result = await self.db.execute(
            select(StoreNotification)
            .where(
                StoreNotification.platform == platform,
                StoreNotification.notification_id == notification_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record_unsupported(
        self,
        platform: Platform,
        exc: UnsupportedNotificationError,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """Log an unknown notification kind so it shows up in stats, and acknowledge it."""
        notification_id = exc.extra.get("notification_id") or f"unsupported-{uuid.uuid4().hex}"
        logger.error("%s (%s notification %s)", exc.message, platform.value, notification_id)

        if await self._find_log(platform, notification_id) is None:
            self.db.add(StoreNotification(
                notification_log_id=uuid.uuid4(),
                platform=platform,
                notification_type=str(exc.extra.get("notification_type", "UNKNOWN"))[:100],
                notification_id=notification_id,
                payload=body,
                error=exc.message,
                retry_count=0,
            ))
            await self.db.commit()
        return {"received": True, "processed": False, "error": exc.code}

    async def _record_failure(self, log_id: uuid.UUID, message: str) -> None:
        await self.db.execute(
            update(StoreNotification)
            .where(StoreNotification.notification_log_id == log_id)
            .values(error=message[:2000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _abort(self, log_id: uuid.UUID, message: str) -> None:
        await self.db.rollback()
        self.receipts.dispatcher.discard()
        await self._record_failure(log_id, message)
