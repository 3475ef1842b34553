"""
Receipt Service
===============

Receipt validation and the transaction processing path shared with store
notifications.

Order of work:
    1. Store calls (with a bounded retry on transient failures). No row is
       locked and no write transaction is open while waiting on the store.
    2. One database transaction: subscriber upsert, state machine, ledger,
       entitlement refresh, pending webhook deliveries.
    3. Commit, then enqueue the deliveries and drop cached subscriber info.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.core.errors import ProductNotRecognizedError, StoreRequestError, StoreTransientError
from entitled.models.app import App, Platform, Product, ProductType
from entitled.models.purchase import SubscriptionStatus
from entitled.models.subscriber import Subscriber
from entitled.services.cache import CacheInvalidator
from entitled.services.entitlements import EntitlementDeriver
from entitled.services.ledger import LedgerResult, PurchaseLedger
from entitled.services.subscribers import SubscriberService
from entitled.services.subscriptions import (
    ENTITLING_STATUSES,
    SubscriptionChange,
    SubscriptionStateMachine,
)
from entitled.services.webhook_notifier import WebhookDispatcher, WebhookEventType
from entitled.stores import build_store_adapter
from entitled.stores.apple import decode_signed_payload
from entitled.stores.base import StoreAdapter, Transaction

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[App, Platform], StoreAdapter]


@dataclass
class ProcessResult:
    """Everything one processed transaction changed."""
    ledger: LedgerResult
    subscription_change: Optional[SubscriptionChange] = None
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)


def purchase_event_data(ledger: LedgerResult, product: Product) -> dict[str, Any]:
    """Event fields describing a ledger row."""
    purchase = ledger.purchase
    return {
        "purchaseId": str(purchase.purchase_id),
        "productIdentifier": product.identifier,
        "platform": purchase.platform.value,
        "transactionId": purchase.store_transaction_id,
        "originalTransactionId": purchase.original_transaction_id,
        "purchaseDate": purchase.purchase_date,
        "expiresDate": purchase.expires_date,
        "price": str(purchase.price) if purchase.price is not None else None,
        "currency": purchase.currency,
        "environment": purchase.environment.value,
        "status": purchase.status.value,
    }


class ReceiptService:
    """Validates receipts and processes normalized transactions."""

    RETRY_DELAY_SECONDS = 0.5

    def __init__(self, db: AsyncSession, adapter_factory: Optional[AdapterFactory] = None):
        self.db = db
        self.adapter_factory = adapter_factory or build_store_adapter
        self.subscribers = SubscriberService(db)
        self.state = SubscriptionStateMachine(db)
        self.ledger = PurchaseLedger(db)
        self.entitlements = EntitlementDeriver(db)
        self.dispatcher = WebhookDispatcher(db)

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    async def resolve_product(self, app: App, platform: Platform, store_product_id: str) -> Product:
        """Map a store product id onto the app's catalog."""
        result = await self.db.execute(
            select(Product).where(
                Product.app_id == app.app_id,
                Product.platform == platform,
                Product.store_product_id == store_product_id,
            )
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise ProductNotRecognizedError(
                f"Product '{store_product_id}' is not configured for {platform.value}",
                productId=store_product_id,
                platform=platform.value,
            )
        return product

    async def fetch_transaction(
        self,
        app: App,
        platform: Platform,
        reference: str,
        product_id: Optional[str] = None,
        is_subscription: bool = True,
    ) -> Transaction:
        """
        Fetch a transaction from the store, retrying transient failures
        ``STORE_RETRY_ATTEMPTS`` extra times.
        """
        attempts = 1 + max(0, settings.STORE_RETRY_ATTEMPTS)
        attempt = 0
        async with self.adapter_factory(app, platform) as adapter:
            while True:
                attempt += 1
                try:
                    return await adapter.fetch_transaction(
                        reference,
                        product_id=product_id,
                        is_subscription=is_subscription,
                    )
                except StoreTransientError as exc:
                    if attempt >= attempts:
                        raise
                    logger.warning(
                        "Transient %s store error (attempt %d/%d): %s",
                        platform.value, attempt, attempts, exc.message,
                    )
                    await asyncio.sleep(self.RETRY_DELAY_SECONDS * attempt)

    @staticmethod
    def apple_reference(receipt_data: Optional[str], transaction_id: Optional[str]) -> str:
        """Transaction id to look up: explicit, or read from a StoreKit 2 signed transaction."""
        if transaction_id:
            return transaction_id
        if not receipt_data:
            raise StoreRequestError("Either transactionId or receiptData is required")
        if receipt_data.count(".") == 2:
            claims = decode_signed_payload(receipt_data)
            if claims.get("transactionId"):
                return str(claims["transactionId"])
            raise StoreRequestError("Signed transaction carries no transactionId")
        if receipt_data.isdigit():
            return receipt_data
        raise StoreRequestError(
            "Unified App Store receipts are not supported; send a transaction id "
            "or a signed transaction",
        )

    # -------------------------------------------------------------------------
    # Receipt validation
    # -------------------------------------------------------------------------

    async def validate_receipt(
        self,
        app: App,
        app_user_id: str,
        platform: Platform,
        receipt_data: Optional[str] = None,
        transaction_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Validate a purchase with the store and return the subscriber snapshot.

        Args:
            app: Calling app.
            app_user_id: The app's user id.
            platform: ``ios`` or ``android``.
            receipt_data: Apple signed transaction / Google purchase token.
            transaction_id: Apple transaction id (alternative to receipt_data).
            product_id: Store product id (required for Google).

        Raises:
            StoreConfigurationError, StoreTransientError, StoreRequestError,
            ProductNotRecognizedError
        """
        if platform == Platform.IOS:
            reference = self.apple_reference(receipt_data, transaction_id)
            txn = await self.fetch_transaction(app, platform, reference)
            product = await self.resolve_product(app, platform, txn.product_id)
        else:
            reference = receipt_data or transaction_id
            if not reference or not product_id:
                raise StoreRequestError("Google Play receipts need receiptData and productId")
            product = await self.resolve_product(app, platform, product_id)
            txn = await self.fetch_transaction(
                app,
                platform,
                reference,
                product_id=product_id,
                is_subscription=product.is_subscription,
            )

        try:
            subscriber, created = await self.subscribers.get_or_create(app, app_user_id)
            await self.process_transaction(app, subscriber, product, txn, subscriber_created=created)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self.dispatcher.discard()
            raise

        await self.dispatcher.flush()
        await CacheInvalidator.on_subscriber_change(app.app_id, subscriber.app_user_id, subscriber.aliases)

        logger.info(
            "Validated %s receipt %s for %s (product %s)",
            platform.value, txn.transaction_id, app_user_id, product.identifier,
        )
        return await self.subscribers.get_subscriber_info(subscriber)

    # -------------------------------------------------------------------------
    # Shared processing path
    # -------------------------------------------------------------------------

    async def process_transaction(
        self,
        app: App,
        subscriber: Subscriber,
        product: Product,
        txn: Transaction,
        subscriber_created: bool = False,
    ) -> ProcessResult:
        """
        Apply a normalized transaction inside the caller's transaction.

        Runs the state machine (subscriptions only), records the ledger row,
        grants and refreshes entitlements and records webhook deliveries.
        Does not commit.
        """
        if subscriber_created:
            self.dispatcher.record(app, WebhookEventType.SUBSCRIBER_CREATED, subscriber, {})

        change: Optional[SubscriptionChange] = None
        subscription = None
        if product.product_type == ProductType.AUTO_RENEWABLE:
            change = await self.state.apply_transaction(subscriber, product, txn)
            subscription = change.subscription

        ledger = await self.ledger.record(subscriber, product, txn, subscription)
        await self.db.flush()

        owner = await self._owner(subscriber, ledger, subscription)

        granted: set[str] = set()
        if subscription is not None:
            if change.applied and subscription.status in ENTITLING_STATUSES:
                expires = subscription.expires_date
                if subscription.status == SubscriptionStatus.IN_GRACE_PERIOD:
                    expires = subscription.grace_period_expires_date or expires
                granted.update(await self.entitlements.grant_for_product(
                    owner.subscriber_id,
                    product,
                    expires_date=expires,
                    subscription_id=subscription.subscription_id,
                    purchase_id=ledger.purchase.purchase_id,
                ))
        elif product.product_type == ProductType.NON_CONSUMABLE and not txn.is_refunded:
            granted.update(await self.entitlements.grant_for_product(
                owner.subscriber_id,
                product,
                purchase_id=ledger.purchase.purchase_id,
            ))

        refresh = await self.entitlements.refresh(owner.subscriber_id)
        granted.update(refresh.granted)
        granted.difference_update(refresh.revoked)

        if change is not None:
            for event_type, data in change.events():
                self.dispatcher.record(app, event_type, owner, data)
        if ledger.created and subscription is None and not txn.is_refunded:
            self.dispatcher.record(
                app, WebhookEventType.PURCHASE_COMPLETED, owner, purchase_event_data(ledger, product),
            )
        if ledger.refunded_now:
            self.dispatcher.record(
                app,
                WebhookEventType.PURCHASE_REFUNDED,
                owner,
                {**purchase_event_data(ledger, product), "reason": ledger.purchase.refund_reason},
            )
        self.record_entitlement_events(app, owner, sorted(granted), refresh.revoked, product.identifier)

        return ProcessResult(
            ledger=ledger,
            subscription_change=change,
            granted=sorted(granted),
            revoked=refresh.revoked,
        )

    def record_entitlement_events(
        self,
        app: App,
        subscriber: Subscriber,
        granted: list[str],
        revoked: list[str],
        product_identifier: Optional[str] = None,
    ) -> None:
        for identifier in granted:
            self.dispatcher.record(
                app,
                WebhookEventType.ENTITLEMENT_GRANTED,
                subscriber,
                {"entitlementIdentifier": identifier, "productIdentifier": product_identifier},
            )
        for identifier in revoked:
            self.dispatcher.record(
                app,
                WebhookEventType.ENTITLEMENT_REVOKED,
                subscriber,
                {"entitlementIdentifier": identifier, "productIdentifier": product_identifier},
            )

    async def _owner(self, subscriber: Subscriber, ledger: LedgerResult, subscription) -> Subscriber:
        """The subscriber a purchase already belongs to; the first one to validate it keeps it."""
        owner_id = subscription.subscriber_id if subscription is not None else ledger.purchase.subscriber_id
        if owner_id == subscriber.subscriber_id:
            return subscriber
        owner = await self.db.get(Subscriber, owner_id)
        return owner or subscriber
