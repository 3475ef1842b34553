"""
Subscriber Service
==================

Subscriber lookup and creation, attributes, aliases and the subscriber
info snapshot returned to app backends.
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.core.errors import SubscriberNotFoundError
from entitled.db.base import utcnow
from entitled.models.app import App, Entitlement, Product, ProductType
from entitled.models.purchase import Environment, Purchase, Subscription, SubscriptionStatus
from entitled.models.subscriber import Subscriber, SubscriberEntitlement

logger = logging.getLogger(__name__)

# Statuses reported under ``activeSubscriptions``
_LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.IN_GRACE_PERIOD,
    SubscriptionStatus.IN_BILLING_RETRY,
)


class SubscriberService:
    """Service for subscriber operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, app: App, app_user_id: str) -> Optional[Subscriber]:
        """Find a subscriber by app user id, falling back to recorded aliases."""
        result = await self.db.execute(
            select(Subscriber).where(
                Subscriber.app_id == app.app_id,
                Subscriber.app_user_id == app_user_id,
            )
        )
        subscriber = result.scalar_one_or_none()
        if subscriber is not None:
            return subscriber

        # Aliases are a JSON list; scan the app's subscribers that carry any
        result = await self.db.execute(
            select(Subscriber).where(Subscriber.app_id == app.app_id)
        )
        for candidate in result.scalars():
            if app_user_id in (candidate.aliases or []):
                return candidate
        return None

    async def get_or_404(self, app: App, app_user_id: str) -> Subscriber:
        subscriber = await self.get(app, app_user_id)
        if subscriber is None:
            raise SubscriberNotFoundError(f"Subscriber '{app_user_id}' not found")
        return subscriber

    async def get_or_create(self, app: App, app_user_id: str) -> tuple[Subscriber, bool]:
        """
        Get a subscriber, creating it on first sight.

        Updates ``last_seen_at`` on every call.

        Returns:
            (subscriber, created)
        """
        subscriber = await self.get(app, app_user_id)
        if subscriber is not None:
            subscriber.last_seen_at = utcnow()
            return subscriber, False

        now = utcnow()
        subscriber = Subscriber(
            app_id=app.app_id,
            app_user_id=app_user_id,
            original_app_user_id=app_user_id,
            aliases=[],
            attributes={},
            first_seen_at=now,
            last_seen_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(subscriber)
                await self.db.flush()
        except IntegrityError:
            subscriber = await self.get(app, app_user_id)
            if subscriber is None:
                raise
            subscriber.last_seen_at = now
            return subscriber, False

        logger.info("Created subscriber %s for app %s", app_user_id, app.app_id)
        return subscriber, True

    async def update_attributes(
        self,
        subscriber: Subscriber,
        attributes: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Merge attributes into the subscriber's. A ``None`` value deletes the key.

        Returns:
            The merged attributes.
        """
        merged = dict(subscriber.attributes or {})
        for key, value in attributes.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        # Reassign so the JSON column is flagged dirty
        subscriber.attributes = merged
        subscriber.last_seen_at = utcnow()
        await self.db.flush()
        return merged

    async def add_alias(self, subscriber: Subscriber, alias: str) -> list[str]:
        """Record another app user id for this subscriber (moved to the end if present)."""
        aliases = [a for a in (subscriber.aliases or []) if a != alias]
        if alias != subscriber.app_user_id:
            aliases.append(alias)
        subscriber.aliases = aliases
        await self.db.flush()
        return aliases

    # -------------------------------------------------------------------------
    # Subscriber info
    # -------------------------------------------------------------------------

    async def get_subscriber_info(self, subscriber: Subscriber) -> dict[str, Any]:
        """
        Build the subscriber snapshot.

        Returns:
            camelCase dict with entitlements keyed by identifier, active
            subscriptions, all subscriptions and non-subscription purchases.
        """
        now = utcnow()

        grant_rows = (
            await self.db.execute(
                select(SubscriberEntitlement, Entitlement, Product, Subscription)
                .join(Entitlement, Entitlement.entitlement_id == SubscriberEntitlement.entitlement_id)
                .outerjoin(Product, Product.product_id == SubscriberEntitlement.product_id)
                .outerjoin(
                    Subscription,
                    Subscription.subscription_id == SubscriberEntitlement.subscription_id,
                )
                .where(SubscriberEntitlement.subscriber_id == subscriber.subscriber_id)
                .execution_options(populate_existing=True)
            )
        ).all()

        entitlements: dict[str, Any] = {}
        for grant, entitlement, product, subscription in grant_rows:
            entitlements[entitlement.identifier] = {
                "isActive": grant.is_active_at(now),
                "expiresDate": grant.expires_date,
                "productIdentifier": product.identifier if product else None,
                "purchaseDate": subscription.purchase_date if subscription else None,
                "originalPurchaseDate": subscription.original_purchase_date if subscription else None,
                "willRenew": bool(subscription and subscription.auto_renew_enabled
                                  and subscription.status != SubscriptionStatus.REVOKED),
                "periodType": subscription.period_type if subscription else "normal",
                "isSandbox": bool(subscription and subscription.environment == Environment.SANDBOX),
                "grantSource": grant.grant_source.value,
            }

        subscription_rows = (
            await self.db.execute(
                select(Subscription, Product)
                .join(Product, Product.product_id == Subscription.product_id)
                .where(Subscription.subscriber_id == subscriber.subscriber_id)
                .order_by(Subscription.purchase_date.desc())
                .execution_options(populate_existing=True)
            )
        ).all()
        subscriptions = [
            {
                "productIdentifier": product.identifier,
                "storeProductId": product.store_product_id,
                "platform": sub.platform.value,
                "status": sub.status.value,
                "originalTransactionId": sub.original_transaction_id,
                "purchaseDate": sub.purchase_date,
                "originalPurchaseDate": sub.original_purchase_date,
                "expiresDate": sub.expires_date,
                "gracePeriodExpiresDate": sub.grace_period_expires_date,
                "willRenew": sub.auto_renew_enabled and sub.status != SubscriptionStatus.REVOKED,
                "periodType": sub.period_type,
                "isSandbox": sub.environment == Environment.SANDBOX,
                "unsubscribeDetectedAt": sub.canceled_at,
            }
            for sub, product in subscription_rows
        ]
        active_subscriptions = sorted({
            product.identifier
            for sub, product in subscription_rows
            if sub.status in _LIVE_STATUSES
        })

        purchase_rows = (
            await self.db.execute(
                select(Purchase, Product)
                .join(Product, Product.product_id == Purchase.product_id)
                .where(
                    Purchase.subscriber_id == subscriber.subscriber_id,
                    Product.product_type.in_([ProductType.CONSUMABLE, ProductType.NON_CONSUMABLE]),
                )
                .order_by(Purchase.purchase_date.desc())
            )
        ).all()
        non_subscription_purchases = [
            {
                "productIdentifier": product.identifier,
                "purchaseDate": purchase.purchase_date,
                "transactionId": purchase.store_transaction_id,
                "status": purchase.status.value,
                "isSandbox": purchase.environment == Environment.SANDBOX,
            }
            for purchase, product in purchase_rows
        ]

        return {
            "subscriberId": str(subscriber.subscriber_id),
            "appUserId": subscriber.app_user_id,
            "originalAppUserId": subscriber.original_app_user_id,
            "aliases": list(subscriber.aliases or []),
            "attributes": dict(subscriber.attributes or {}),
            "firstSeen": subscriber.first_seen_at,
            "lastSeen": subscriber.last_seen_at,
            "entitlements": entitlements,
            "activeSubscriptions": active_subscriptions,
            "subscriptions": subscriptions,
            "nonSubscriptionPurchases": non_subscription_purchases,
        }
