"""
Subscription State Machine
==========================

Drives ``Subscription.status`` through its lifecycle.

States: active, in_grace_period, in_billing_retry, expired, revoked.

``revoked`` is terminal. ``expired -> active`` and
``in_billing_retry -> active`` only happen when the store reports a
transaction id we have not seen for this subscription. The trial flag is
orthogonal to the status.

Store-driven changes go through ``apply_transaction``; sweeper-driven ones
through ``transition_guarded``, which only moves a row still in the expected
prior status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.db.base import utcnow
from entitled.models.app import Platform, Product
from entitled.models.purchase import Subscription, SubscriptionStatus
from entitled.models.subscriber import Subscriber
from entitled.services.webhook_notifier import WebhookEventType
from entitled.stores.base import Transaction

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE
EXPIRED = SubscriptionStatus.EXPIRED
GRACE = SubscriptionStatus.IN_GRACE_PERIOD
RETRY = SubscriptionStatus.IN_BILLING_RETRY
REVOKED = SubscriptionStatus.REVOKED

TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    ACTIVE: frozenset({EXPIRED, GRACE, RETRY, REVOKED}),
    GRACE: frozenset({ACTIVE, RETRY, EXPIRED, REVOKED}),
    RETRY: frozenset({ACTIVE, GRACE, EXPIRED, REVOKED}),
    EXPIRED: frozenset({ACTIVE, GRACE, RETRY, REVOKED}),
    REVOKED: frozenset(),
}

# Transitions only a never-seen store transaction may trigger
REQUIRES_NEW_TRANSACTION = frozenset({(EXPIRED, ACTIVE), (RETRY, ACTIVE)})

# Statuses under which the subscription's entitlements are granted
ENTITLING_STATUSES = frozenset({ACTIVE, GRACE})


def can_transition(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    new_transaction: bool = False,
) -> bool:
    """Whether ``current -> target`` is allowed. Staying put is allowed except when revoked."""
    if current == target:
        return current != REVOKED
    if target not in TRANSITIONS[current]:
        return False
    if (current, target) in REQUIRES_NEW_TRANSACTION:
        return new_transaction
    return True


def subscription_event_data(
    subscription: Subscription,
    product_identifier: Optional[str] = None,
) -> dict[str, Any]:
    """Event fields describing a subscription."""
    return {
        "subscriptionId": str(subscription.subscription_id),
        "productIdentifier": product_identifier,
        "platform": subscription.platform.value,
        "originalTransactionId": subscription.original_transaction_id,
        "transactionId": subscription.latest_transaction_id,
        "status": subscription.status.value,
        "expiresDate": subscription.expires_date,
        "autoRenewEnabled": subscription.auto_renew_enabled,
        "periodType": subscription.period_type,
        "environment": subscription.environment.value,
    }


@dataclass
class SubscriptionChange:
    """What ``apply_transaction`` did to a subscription."""

    subscription: Subscription
    product: Product
    created: bool = False
    applied: bool = True
    stale: bool = False
    previous_status: Optional[SubscriptionStatus] = None
    renewed: bool = False
    trial_converted: bool = False
    auto_renew_disabled: bool = False
    previous_product_id: Optional[uuid.UUID] = None

    @property
    def status_changed(self) -> bool:
        return not self.created and self.previous_status != self.subscription.status

    @property
    def product_changed(self) -> bool:
        return (
            self.previous_product_id is not None
            and self.previous_product_id != self.subscription.product_id
        )

    def events(self) -> list[tuple[WebhookEventType, dict[str, Any]]]:
        """Outbound events describing this change. Refunds are reported by the ledger."""
        if not self.applied:
            return []

        sub = self.subscription
        data = subscription_event_data(sub, self.product.identifier)
        events: list[tuple[WebhookEventType, dict[str, Any]]] = []

        if self.created:
            events.append((WebhookEventType.SUBSCRIPTION_CREATED, data))
            if sub.is_trial_period:
                events.append((WebhookEventType.TRIAL_STARTED, data))
            return events

        if self.renewed:
            events.append((WebhookEventType.SUBSCRIPTION_RENEWED, data))
        if self.trial_converted:
            events.append((WebhookEventType.TRIAL_CONVERTED, data))
        if self.status_changed:
            if sub.status == EXPIRED:
                events.append((WebhookEventType.SUBSCRIPTION_EXPIRED, data))
            elif sub.status in (GRACE, RETRY):
                events.append((WebhookEventType.SUBSCRIPTION_BILLING_ISSUE, data))
        if self.auto_renew_disabled:
            events.append((WebhookEventType.SUBSCRIPTION_CANCELED, data))
        if self.product_changed:
            events.append((
                WebhookEventType.SUBSCRIPTION_PRODUCT_CHANGE,
                {**data, "previousProductId": str(self.previous_product_id)},
            ))
        return events


class SubscriptionStateMachine:
    """Applies store observations and sweeper transitions to subscriptions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get_by_original_transaction_id(
        self,
        platform: Platform,
        original_transaction_id: str,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """Find a subscription by its stable store key."""
        stmt = select(Subscription).where(
            Subscription.platform == platform,
            Subscription.original_transaction_id == original_transaction_id,
        ).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Store-driven transitions
    # -------------------------------------------------------------------------

    async def apply_transaction(
        self,
        subscriber: Subscriber,
        product: Product,
        txn: Transaction,
    ) -> SubscriptionChange:
        """
        Upsert the subscription for ``txn`` and move it to the store's status.

        Re-applying the same transaction only refreshes ``last_synced_at``.
        A transaction older than the stored one never regresses state,
        except a revocation, which always applies.

        Args:
            subscriber: Owner of the purchase.
            product: Catalog product the transaction is for.
            txn: Normalized store transaction (``is_subscription``).

        Returns:
            SubscriptionChange describing what happened.
        """
        now = utcnow()
        target = REVOKED if txn.is_refunded else (txn.store_status or ACTIVE)

        subscription = await self.get_by_original_transaction_id(
            txn.platform, txn.original_transaction_id, for_update=True,
        )
        if subscription is None:
            subscription = await self._create(subscriber, product, txn, target, now)
            if subscription is not None:
                logger.info(
                    "Subscription %s created for subscriber %s (%s)",
                    txn.original_transaction_id,
                    subscriber.subscriber_id,
                    target.value,
                )
                return SubscriptionChange(subscription=subscription, product=product, created=True)
            # Lost an insert race; continue as an update
            subscription = await self.get_by_original_transaction_id(
                txn.platform, txn.original_transaction_id, for_update=True,
            )

        previous = subscription.status
        change = SubscriptionChange(
            subscription=subscription,
            product=product,
            previous_status=previous,
        )

        if subscription.subscriber_id != subscriber.subscriber_id:
            logger.warning(
                "Subscription %s belongs to subscriber %s, observed for %s; keeping owner",
                subscription.original_transaction_id,
                subscription.subscriber_id,
                subscriber.subscriber_id,
            )

        if previous == REVOKED:
            subscription.last_synced_at = now
            change.applied = False
            return change

        if target != REVOKED and txn.purchase_date < subscription.purchase_date:
            logger.info(
                "Ignoring stale transaction %s for subscription %s",
                txn.transaction_id,
                subscription.original_transaction_id,
            )
            subscription.last_synced_at = now
            change.applied = False
            change.stale = True
            return change

        new_transaction = txn.transaction_id != subscription.latest_transaction_id
        if not can_transition(previous, target, new_transaction):
            logger.info(
                "Subscription %s: %s -> %s not allowed (new transaction: %s)",
                subscription.original_transaction_id,
                previous.value,
                target.value,
                new_transaction,
            )
            subscription.last_synced_at = now
            change.applied = False
            return change

        change.renewed = new_transaction and target == ACTIVE
        change.trial_converted = (
            new_transaction and subscription.is_trial_period and not txn.is_trial_period
        )
        change.auto_renew_disabled = subscription.auto_renew_enabled and not txn.auto_renew_enabled
        change.previous_product_id = subscription.product_id

        if subscription.auto_renew_enabled != txn.auto_renew_enabled and target != REVOKED:
            subscription.canceled_at = None if txn.auto_renew_enabled else now
            subscription.cancellation_reason = None if txn.auto_renew_enabled else "auto_renew_disabled"

        subscription.product_id = product.product_id
        subscription.latest_transaction_id = txn.transaction_id
        subscription.purchase_date = txn.purchase_date
        subscription.expires_date = txn.expires_date
        subscription.auto_renew_enabled = txn.auto_renew_enabled
        # A converted trial stays converted until the store reports a new transaction
        subscription.is_trial_period = txn.is_trial_period and (
            new_transaction or subscription.is_trial_period
        )
        subscription.is_intro_offer_period = txn.is_intro_offer_period
        subscription.environment = txn.environment
        subscription.store_response = txn.raw_payload
        subscription.last_synced_at = now
        self._enter(subscription, target, txn, now)

        if change.status_changed:
            logger.info(
                "Subscription %s: %s -> %s",
                subscription.original_transaction_id,
                previous.value,
                target.value,
            )
        return change

    async def _create(
        self,
        subscriber: Subscriber,
        product: Product,
        txn: Transaction,
        status: SubscriptionStatus,
        now: datetime,
    ) -> Optional[Subscription]:
        """Insert a subscription; None when a concurrent insert won."""
        subscription = Subscription(
            subscription_id=uuid.uuid4(),
            subscriber_id=subscriber.subscriber_id,
            product_id=product.product_id,
            platform=txn.platform,
            original_transaction_id=txn.original_transaction_id,
            latest_transaction_id=txn.transaction_id,
            purchase_date=txn.purchase_date,
            original_purchase_date=txn.original_purchase_date,
            expires_date=txn.expires_date,
            auto_renew_enabled=txn.auto_renew_enabled,
            is_trial_period=txn.is_trial_period,
            is_intro_offer_period=txn.is_intro_offer_period,
            environment=txn.environment,
            store_response=txn.raw_payload,
            last_synced_at=now,
        )
        self._enter(subscription, status, txn, now)
        try:
            async with self.db.begin_nested():
                self.db.add(subscription)
                await self.db.flush()
        except IntegrityError:
            logger.info("Concurrent insert for subscription %s", txn.original_transaction_id)
            return None
        return subscription

    @staticmethod
    def _enter(
        subscription: Subscription,
        status: SubscriptionStatus,
        txn: Optional[Transaction],
        now: datetime,
    ) -> None:
        """Set ``status`` and the fields that belong to it."""
        if status == ACTIVE:
            subscription.grace_period_expires_date = None
            subscription.billing_retry_expires_date = None
        elif status == GRACE:
            subscription.grace_period_expires_date = (
                (txn.grace_period_expires_date if txn else None)
                or subscription.grace_period_expires_date
                or subscription.expires_date
            )
            subscription.billing_retry_expires_date = None
        elif status == RETRY:
            if subscription.billing_retry_expires_date is None:
                subscription.billing_retry_expires_date = billing_retry_deadline(
                    subscription.expires_date or now,
                )
        elif status == REVOKED:
            subscription.canceled_at = now
            subscription.cancellation_reason = (txn.revocation_reason if txn else None) or "revoked"
        subscription.status = status

    async def revoke(self, subscription: Subscription, reason: str) -> bool:
        """Revoke a subscription outright (refund, chargeback). Returns False if already revoked."""
        if subscription.status == REVOKED:
            return False
        previous = subscription.status
        subscription.status = REVOKED
        subscription.canceled_at = utcnow()
        subscription.cancellation_reason = reason
        await self.db.flush()
        logger.info(
            "Subscription %s: %s -> revoked (%s)",
            subscription.original_transaction_id,
            previous.value,
            reason,
        )
        return True

    # -------------------------------------------------------------------------
    # Sweeper-driven transitions
    # -------------------------------------------------------------------------

    async def transition_guarded(
        self,
        subscription_id: uuid.UUID,
        expected: SubscriptionStatus,
        target: SubscriptionStatus,
        **values: Any,
    ) -> bool:
        """
        ``UPDATE subscriptions SET status = :target WHERE id = :id AND status = :expected``.

        Returns:
            True if the row moved, False if it was no longer in ``expected``.
        """
        if not can_transition(expected, target):
            raise ValueError(f"Transition {expected.value} -> {target.value} is not allowed")

        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.subscription_id == subscription_id,
                Subscription.status == expected,
            )
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def convert_trial(self, subscription_id: uuid.UUID) -> bool:
        """Clear the trial flag on an active subscription (trial converted to paid)."""
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.subscription_id == subscription_id,
                Subscription.status == ACTIVE,
                Subscription.is_trial_period.is_(True),
            )
            .values(is_trial_period=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def billing_retry_deadline(expires_date: datetime) -> datetime:
    """When a subscription in billing retry is given up on."""
    return expires_date + timedelta(days=settings.BILLING_RETRY_WINDOW_DAYS)
