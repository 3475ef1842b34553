"""
Lifecycle Sweeper
=================

Scheduled pass over subscriptions crossing time boundaries, without any
store call:
- Expiring soon (informational)
- Trial endings
- Expired subscriptions
- Grace period endings

Every transition is a guarded ``UPDATE ... WHERE status = <expected>``, so a
re-run after a partial failure never applies a transition twice. Each pass
commits on its own; a failing record only rolls back its savepoint.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.db.base import utcnow
from entitled.models.app import App, Product
from entitled.models.purchase import Subscription, SubscriptionStatus
from entitled.models.subscriber import Subscriber
from entitled.services.cache import CacheInvalidator
from entitled.services.delivery_worker import requeue_pending_deliveries
from entitled.services.entitlements import EntitlementDeriver
from entitled.services.subscriptions import (
    SubscriptionStateMachine,
    billing_retry_deadline,
    subscription_event_data,
)
from entitled.services.webhook_notifier import WebhookDispatcher, WebhookEventType

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE
EXPIRED = SubscriptionStatus.EXPIRED
GRACE = SubscriptionStatus.IN_GRACE_PERIOD
RETRY = SubscriptionStatus.IN_BILLING_RETRY

Candidate = tuple[Subscription, App, Subscriber, str]


class LifecycleSweeper:
    """Runs the lifecycle passes."""

    def __init__(self, db: AsyncSession, now: Optional[datetime] = None):
        self.db = db
        self.now = now or utcnow()
        self.state = SubscriptionStateMachine(db)
        self.entitlements = EntitlementDeriver(db)
        self.dispatcher = WebhookDispatcher(db)
        self._touched: dict[Any, tuple[Any, str, list]] = {}

    async def run(self) -> dict[str, Any]:
        """
        Run all passes in order.

        Trial endings run before the expired pass so a lapsed trial is
        reported as ``trial.expired`` rather than a plain expiry.

        Returns:
            Summary with one entry per pass.
        """
        passes = [
            ("expiring_soon", self.check_expiring_soon),
            ("trial_endings", self.check_trial_endings),
            ("expired", self.check_expired),
            ("grace_period_endings", self.check_grace_period_endings),
        ]
        results = []
        for name, job in passes:
            results.append(await self._run_pass(name, job))

        requeued = await requeue_pending_deliveries(self.db)

        return {
            "runAt": self.now.isoformat(),
            "passes": results,
            "processed": sum(r["processed"] for r in results),
            "errors": sum(r["errors"] for r in results),
            "requeuedDeliveries": requeued,
        }

    async def _run_pass(self, name: str, job: Callable) -> dict[str, Any]:
        try:
            result = await job()
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            self.dispatcher.discard()
            self._touched.clear()
            logger.exception("Lifecycle pass %s failed", name)
            return {"pass": name, "processed": 0, "errors": 1, "details": [{"error": str(e)}]}

        await self.dispatcher.flush()
        for app_id, app_user_id, aliases in self._touched.values():
            await CacheInvalidator.on_subscriber_change(app_id, app_user_id, aliases)
        self._touched.clear()

        if result["processed"] or result["errors"]:
            logger.info(
                "Lifecycle pass %s: processed=%d errors=%d",
                name, result["processed"], result["errors"],
            )
        return result

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def check_expiring_soon(self) -> dict[str, Any]:
        """Active subscriptions that will not renew and expire within the lookahead window."""
        horizon = self.now + timedelta(hours=settings.EXPIRING_SOON_HOURS)
        candidates = await self._candidates(
            Subscription.status == ACTIVE,
            Subscription.auto_renew_enabled.is_(False),
            Subscription.expires_date > self.now,
            Subscription.expires_date <= horizon,
        )
        details = [
            {
                "subscriptionId": str(sub.subscription_id),
                "appUserId": subscriber.app_user_id,
                "productIdentifier": product_identifier,
                "expiresDate": sub.expires_date.isoformat(),
            }
            for sub, _app, subscriber, product_identifier in candidates
        ]
        return {"pass": "expiring_soon", "processed": len(details), "errors": 0, "details": details}

    async def check_trial_endings(self) -> dict[str, Any]:
        """
        Trials past expiry: converted when auto-renew is on, expired otherwise.
        """
        candidates = await self._candidates(
            Subscription.status == ACTIVE,
            Subscription.is_trial_period.is_(True),
            Subscription.expires_date <= self.now,
        )

        async def end_trial(sub: Subscription, app: App, subscriber: Subscriber, product_identifier: str):
            if sub.auto_renew_enabled:
                if not await self.state.convert_trial(sub.subscription_id):
                    return None
                await self.db.refresh(sub)
                data = subscription_event_data(sub, product_identifier)
                return "converted", [(WebhookEventType.TRIAL_CONVERTED, data)], []

            if not await self.state.transition_guarded(
                sub.subscription_id, ACTIVE, EXPIRED,
                canceled_at=sub.canceled_at or self.now,
            ):
                return None
            await self.db.refresh(sub)
            refresh = await self.entitlements.refresh(subscriber.subscriber_id)
            data = subscription_event_data(sub, product_identifier)
            events = [
                (WebhookEventType.TRIAL_EXPIRED, data),
                (WebhookEventType.SUBSCRIPTION_EXPIRED, data),
            ]
            return "expired", events, refresh.revoked

        return await self._apply("trial_endings", candidates, end_trial)

    async def check_expired(self) -> dict[str, Any]:
        """
        Expire subscriptions whose time is up.

        - ``active`` past expiry that will not renew, or that was due to
          renew more than ``RENEWAL_LEEWAY_HOURS`` ago without a renewal
        - ``in_billing_retry`` past the billing retry deadline
        """
        leeway_cutoff = self.now - timedelta(hours=settings.RENEWAL_LEEWAY_HOURS)
        candidates = await self._candidates(
            or_(
                and_(
                    Subscription.status == ACTIVE,
                    Subscription.expires_date <= self.now,
                    or_(
                        Subscription.auto_renew_enabled.is_(False),
                        Subscription.expires_date <= leeway_cutoff,
                    ),
                ),
                and_(
                    Subscription.status == RETRY,
                    Subscription.billing_retry_expires_date <= self.now,
                ),
            )
        )

        async def expire(sub: Subscription, app: App, subscriber: Subscriber, product_identifier: str):
            if not await self.state.transition_guarded(sub.subscription_id, sub.status, EXPIRED):
                return None
            await self.db.refresh(sub)
            refresh = await self.entitlements.refresh(subscriber.subscriber_id)
            data = subscription_event_data(sub, product_identifier)
            return "expired", [(WebhookEventType.SUBSCRIPTION_EXPIRED, data)], refresh.revoked

        return await self._apply("expired", candidates, expire)

    async def check_grace_period_endings(self) -> dict[str, Any]:
        """
        Grace periods that ran out move to billing retry.

        Access ends with the grace period. The retry deadline only decides
        when the expired pass gives up on the subscription.
        """
        candidates = await self._candidates(
            Subscription.status == GRACE,
            Subscription.grace_period_expires_date <= self.now,
        )

        async def end_grace(sub: Subscription, app: App, subscriber: Subscriber, product_identifier: str):
            deadline = sub.billing_retry_expires_date or billing_retry_deadline(sub.expires_date or self.now)
            if not await self.state.transition_guarded(
                sub.subscription_id, GRACE, RETRY,
                billing_retry_expires_date=deadline,
            ):
                return None
            await self.db.refresh(sub)
            refresh = await self.entitlements.refresh(subscriber.subscriber_id)
            data = subscription_event_data(sub, product_identifier)
            return "billing_retry", [(WebhookEventType.SUBSCRIPTION_BILLING_ISSUE, data)], refresh.revoked

        return await self._apply("grace_period_endings", candidates, end_grace)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _candidates(self, *criteria) -> list[Candidate]:
        result = await self.db.execute(
            select(Subscription, App, Subscriber, Product.identifier)
            .join(Subscriber, Subscriber.subscriber_id == Subscription.subscriber_id)
            .join(App, App.app_id == Subscriber.app_id)
            .join(Product, Product.product_id == Subscription.product_id)
            .where(*criteria)
            .order_by(Subscription.expires_date)
            .limit(settings.SWEEP_BATCH_SIZE)
        )
        return [tuple(row) for row in result.all()]

    async def _apply(self, name: str, candidates: list[Candidate], handler: Callable) -> dict[str, Any]:
        """Run ``handler`` per candidate in its own savepoint and record its events."""
        processed = 0
        errors = 0
        details = []
        for sub, app, subscriber, product_identifier in candidates:
            subscription_id = str(sub.subscription_id)
            try:
                async with self.db.begin_nested():
                    outcome = await handler(sub, app, subscriber, product_identifier)
            except Exception as e:
                errors += 1
                details.append({"subscriptionId": subscription_id, "error": str(e)})
                logger.error("Lifecycle %s failed for subscription %s: %s", name, subscription_id, e)
                continue

            # Another worker moved it first
            if outcome is None:
                continue

            action, events, revoked = outcome
            for event_type, data in events:
                self.dispatcher.record(app, event_type, subscriber, data)
            for identifier in revoked:
                self.dispatcher.record(
                    app,
                    WebhookEventType.ENTITLEMENT_REVOKED,
                    subscriber,
                    {"entitlementIdentifier": identifier, "productIdentifier": product_identifier},
                )
            self._touched[subscriber.subscriber_id] = (
                app.app_id, subscriber.app_user_id, list(subscriber.aliases or []),
            )
            processed += 1
            details.append({
                "subscriptionId": subscription_id,
                "appUserId": subscriber.app_user_id,
                "action": action,
                "revokedEntitlements": revoked,
            })

        return {"pass": name, "processed": processed, "errors": errors, "details": details}

    # -------------------------------------------------------------------------
    # Health metrics
    # -------------------------------------------------------------------------

    async def get_health_metrics(self, app_id=None) -> dict[str, int]:
        """Subscription counts for monitoring, optionally for one app."""

        async def count(*criteria) -> int:
            stmt = select(func.count()).select_from(Subscription)
            if app_id is not None:
                stmt = stmt.join(Subscriber, Subscriber.subscriber_id == Subscription.subscriber_id)
                criteria = (*criteria, Subscriber.app_id == app_id)
            return await self.db.scalar(stmt.where(*criteria)) or 0

        week_ahead = self.now + timedelta(days=7)
        month_ago = self.now - timedelta(days=30)
        return {
            "active": await count(Subscription.status == ACTIVE),
            "expiringSoon": await count(
                Subscription.status == ACTIVE,
                Subscription.expires_date > self.now,
                Subscription.expires_date <= week_ahead,
            ),
            "inTrial": await count(
                Subscription.status == ACTIVE,
                Subscription.is_trial_period.is_(True),
            ),
            "inGracePeriod": await count(Subscription.status == GRACE),
            "inBillingRetry": await count(Subscription.status == RETRY),
            "churned30Days": await count(
                Subscription.status.in_([EXPIRED, SubscriptionStatus.REVOKED]),
                Subscription.updated_at >= month_ago,
            ),
        }


# Job runner functions (called from the cron endpoint)

async def run_subscription_lifecycle(db: AsyncSession) -> dict[str, Any]:
    """Run all lifecycle passes."""
    return await LifecycleSweeper(db).run()


async def get_subscription_health(db: AsyncSession, app_id=None) -> dict[str, int]:
    """Subscription health metrics."""
    return await LifecycleSweeper(db).get_health_metrics(app_id)
