"""
Entitlement Deriver
===================

Maintains ``SubscriberEntitlement`` grants.

- ``grant_for_product``: incremental upsert of every entitlement a product
  unlocks.
- ``refresh``: recompute a subscriber's store-derived grants from their
  subscriptions and non-consumable purchases and write only the difference.
  The subscriber row is locked for the duration, so two refreshes for the
  same subscriber run one after the other.

A grant is active when ``active`` is set and ``expires_date`` is null or in
the future. Manual and promotional grants are never touched by ``refresh``
while they are active.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.core.errors import EntitlementNotFoundError
from entitled.db.base import utcnow
from entitled.models.app import Entitlement, Product, ProductEntitlement, ProductType
from entitled.models.purchase import Purchase, PurchaseStatus, Subscription, SubscriptionStatus
from entitled.models.subscriber import GrantSource, Subscriber, SubscriberEntitlement

logger = logging.getLogger(__name__)

# Subscription statuses whose product entitlements stay granted
_GRANTING_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.IN_GRACE_PERIOD,
    SubscriptionStatus.IN_BILLING_RETRY,
)


@dataclass
class RefreshResult:
    """Entitlement identifiers that became active / inactive."""
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.granted or self.revoked)


@dataclass
class _DesiredGrant:
    expires_date: Optional[datetime]
    product_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    purchase_id: Optional[uuid.UUID] = None

    def outlasts(self, other: "_DesiredGrant") -> bool:
        """Non-expiring beats expiring; otherwise the later expiry wins."""
        if other.expires_date is None:
            return False
        if self.expires_date is None:
            return True
        return self.expires_date > other.expires_date


class EntitlementDeriver:
    """Derives and serves entitlement grants."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Incremental grant
    # -------------------------------------------------------------------------

    async def grant_for_product(
        self,
        subscriber_id: uuid.UUID,
        product: Product,
        expires_date: Optional[datetime] = None,
        subscription_id: Optional[uuid.UUID] = None,
        purchase_id: Optional[uuid.UUID] = None,
    ) -> list[str]:
        """
        Grant every entitlement linked to ``product``.

        Args:
            subscriber_id: Grant owner.
            product: Product whose entitlements are granted.
            expires_date: Grant expiry; None means non-expiring.
            subscription_id: Provenance, kept when None.
            purchase_id: Provenance, kept when None.

        Returns:
            Identifiers of entitlements that were not active before.
        """
        now = utcnow()
        links = (
            await self.db.execute(
                select(Entitlement.entitlement_id, Entitlement.identifier)
                .join(ProductEntitlement, ProductEntitlement.entitlement_id == Entitlement.entitlement_id)
                .where(ProductEntitlement.product_id == product.product_id)
            )
        ).all()

        existing = await self._grants_by_entitlement(subscriber_id)
        newly_active: list[str] = []
        for entitlement_id, identifier in links:
            desired = _DesiredGrant(
                expires_date=expires_date,
                product_id=product.product_id,
                subscription_id=subscription_id,
                purchase_id=purchase_id,
            )
            grant = existing.get(entitlement_id)
            if grant is None:
                grant, was_active = await self._insert_grant(subscriber_id, entitlement_id, desired, now)
                if not was_active and grant.is_active_at(now):
                    newly_active.append(identifier)
                continue

            if grant.grant_source != GrantSource.STORE and grant.is_active_at(now):
                continue
            was_active = grant.is_active_at(now)
            self._apply(grant, desired)
            if not was_active and grant.is_active_at(now):
                newly_active.append(identifier)

        await self.db.flush()
        if newly_active:
            logger.info(
                "Granted %s to subscriber %s via %s",
                ", ".join(newly_active),
                subscriber_id,
                product.identifier,
            )
        return newly_active

    # -------------------------------------------------------------------------
    # Full refresh
    # -------------------------------------------------------------------------

    async def refresh(self, subscriber_id: uuid.UUID) -> RefreshResult:
        """
        Recompute store-derived grants and apply the difference.

        Sources:
            - subscriptions ``active`` (until expiry) or ``in_grace_period``
              (until the grace period ends) or ``in_billing_retry`` (until expiry
              or the end of its grace period, whichever is later)
            - completed non-consumable purchases (non-expiring)
        """
        await self.db.flush()
        await self.db.execute(
            select(Subscriber.subscriber_id)
            .where(Subscriber.subscriber_id == subscriber_id)
            .with_for_update()
        )
        now = utcnow()

        desired = await self._desired_grants(subscriber_id)
        existing = await self._grants_by_entitlement(subscriber_id)

        granted_ids: list[uuid.UUID] = []
        revoked_ids: list[uuid.UUID] = []

        for entitlement_id, grant in existing.items():
            was_active = grant.is_active_at(now)
            target = desired.pop(entitlement_id, None)
            if grant.grant_source != GrantSource.STORE and was_active:
                continue

            if target is not None:
                self._apply(grant, target)
                now_active = grant.is_active_at(now)
                if not was_active and now_active:
                    granted_ids.append(entitlement_id)
                elif was_active and not now_active:
                    revoked_ids.append(entitlement_id)
            elif grant.active:
                grant.active = False
                # A grant that already lapsed lost access at its expiry, not now
                if was_active:
                    revoked_ids.append(entitlement_id)

        for entitlement_id, target in desired.items():
            grant, was_active = await self._insert_grant(subscriber_id, entitlement_id, target, now)
            if not was_active and grant.is_active_at(now):
                granted_ids.append(entitlement_id)

        await self.db.flush()

        identifiers = await self._identifiers(granted_ids + revoked_ids)
        result = RefreshResult(
            granted=sorted(identifiers[i] for i in granted_ids),
            revoked=sorted(identifiers[i] for i in revoked_ids),
        )
        if result.changed:
            logger.info(
                "Entitlements refreshed for subscriber %s: granted=%s revoked=%s",
                subscriber_id,
                result.granted,
                result.revoked,
            )
        return result

    async def _desired_grants(self, subscriber_id: uuid.UUID) -> dict[uuid.UUID, _DesiredGrant]:
        desired: dict[uuid.UUID, _DesiredGrant] = {}

        def merge(entitlement_id: uuid.UUID, candidate: _DesiredGrant) -> None:
            current = desired.get(entitlement_id)
            if current is None or candidate.outlasts(current):
                desired[entitlement_id] = candidate

        subscription_rows = (
            await self.db.execute(
                select(
                    Subscription.subscription_id,
                    Subscription.status,
                    Subscription.expires_date,
                    Subscription.grace_period_expires_date,
                    ProductEntitlement.product_id,
                    ProductEntitlement.entitlement_id,
                )
                .join(ProductEntitlement, ProductEntitlement.product_id == Subscription.product_id)
                .where(
                    Subscription.subscriber_id == subscriber_id,
                    Subscription.status.in_(_GRANTING_STATUSES),
                )
            )
        ).all()
        for sub_id, status, expires, grace_expires, product_id, entitlement_id in subscription_rows:
            if status == SubscriptionStatus.IN_GRACE_PERIOD:
                expires = grace_expires or expires
            elif status == SubscriptionStatus.IN_BILLING_RETRY and grace_expires is not None:
                # the retry deadline only bounds the store's charge attempts
                expires = max(expires, grace_expires) if expires is not None else grace_expires
            merge(entitlement_id, _DesiredGrant(expires, product_id, subscription_id=sub_id))

        purchase_rows = (
            await self.db.execute(
                select(
                    Purchase.purchase_id,
                    ProductEntitlement.product_id,
                    ProductEntitlement.entitlement_id,
                )
                .join(Product, Product.product_id == Purchase.product_id)
                .join(ProductEntitlement, ProductEntitlement.product_id == Purchase.product_id)
                .where(
                    Purchase.subscriber_id == subscriber_id,
                    Purchase.status == PurchaseStatus.COMPLETED,
                    Product.product_type == ProductType.NON_CONSUMABLE,
                )
            )
        ).all()
        for purchase_id, product_id, entitlement_id in purchase_rows:
            merge(entitlement_id, _DesiredGrant(None, product_id, purchase_id=purchase_id))

        return desired

    # -------------------------------------------------------------------------
    # Manual grants
    # -------------------------------------------------------------------------

    async def grant_manual(
        self,
        subscriber: Subscriber,
        entitlement_identifier: str,
        expires_date: Optional[datetime] = None,
        granted_by: Optional[str] = None,
        reason: Optional[str] = None,
        source: GrantSource = GrantSource.MANUAL,
    ) -> tuple[SubscriberEntitlement, bool]:
        """
        Grant an entitlement by hand (support, promotions).

        Returns:
            (grant, newly_active)
        """
        entitlement = await self._entitlement(subscriber.app_id, entitlement_identifier)
        now = utcnow()
        existing = await self._grants_by_entitlement(subscriber.subscriber_id)
        grant = existing.get(entitlement.entitlement_id)
        was_active = grant is not None and grant.is_active_at(now)
        if grant is None:
            grant = SubscriberEntitlement(
                grant_id=uuid.uuid4(),
                subscriber_id=subscriber.subscriber_id,
                entitlement_id=entitlement.entitlement_id,
            )
            self.db.add(grant)

        grant.active = True
        grant.expires_date = expires_date
        grant.grant_source = source
        grant.granted_by = granted_by
        grant.grant_reason = reason
        await self.db.flush()
        logger.info(
            "%s grant of %s to subscriber %s by %s",
            source.value,
            entitlement_identifier,
            subscriber.subscriber_id,
            granted_by or "unknown",
        )
        return grant, not was_active and grant.is_active_at(now)

    async def revoke_manual(self, subscriber: Subscriber, entitlement_identifier: str) -> bool:
        """
        Deactivate a grant by hand. A store-backed grant comes back on the next refresh.

        Returns:
            True if the grant was active.
        """
        entitlement = await self._entitlement(subscriber.app_id, entitlement_identifier)
        existing = await self._grants_by_entitlement(subscriber.subscriber_id)
        grant = existing.get(entitlement.entitlement_id)
        if grant is None:
            return False
        was_active = grant.is_active_at(utcnow())
        grant.active = False
        await self.db.flush()
        logger.info("Revoked %s from subscriber %s", entitlement_identifier, subscriber.subscriber_id)
        return was_active

    # -------------------------------------------------------------------------
    # Read contract
    # -------------------------------------------------------------------------

    async def get_active_entitlements(self, subscriber_id: uuid.UUID) -> list[dict[str, Any]]:
        """Currently active grants with entitlement and product identifiers."""
        now = utcnow()
        rows = (
            await self.db.execute(
                select(
                    Entitlement.identifier,
                    Entitlement.display_name,
                    SubscriberEntitlement.expires_date,
                    SubscriberEntitlement.grant_source,
                    Product.identifier,
                )
                .join(Entitlement, Entitlement.entitlement_id == SubscriberEntitlement.entitlement_id)
                .outerjoin(Product, Product.product_id == SubscriberEntitlement.product_id)
                .where(
                    SubscriberEntitlement.subscriber_id == subscriber_id,
                    SubscriberEntitlement.active.is_(True),
                    or_(
                        SubscriberEntitlement.expires_date.is_(None),
                        SubscriberEntitlement.expires_date > now,
                    ),
                )
                .order_by(Entitlement.identifier)
            )
        ).all()
        return [
            {
                "identifier": identifier,
                "display_name": display_name,
                "expires_date": expires_date,
                "product_identifier": product_identifier,
                "grant_source": grant_source.value,
            }
            for identifier, display_name, expires_date, grant_source, product_identifier in rows
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _grants_by_entitlement(
        self,
        subscriber_id: uuid.UUID,
    ) -> dict[uuid.UUID, SubscriberEntitlement]:
        result = await self.db.execute(
            select(SubscriberEntitlement)
            .where(SubscriberEntitlement.subscriber_id == subscriber_id)
            .execution_options(populate_existing=True)
        )
        return {grant.entitlement_id: grant for grant in result.scalars().all()}

    async def _insert_grant(
        self,
        subscriber_id: uuid.UUID,
        entitlement_id: uuid.UUID,
        desired: _DesiredGrant,
        now: datetime,
    ) -> tuple[SubscriberEntitlement, bool]:
        """Insert a store grant. Returns the grant and whether it was active before."""
        grant = SubscriberEntitlement(
            grant_id=uuid.uuid4(),
            subscriber_id=subscriber_id,
            entitlement_id=entitlement_id,
            active=True,
            expires_date=desired.expires_date,
            product_id=desired.product_id,
            subscription_id=desired.subscription_id,
            purchase_id=desired.purchase_id,
            grant_source=GrantSource.STORE,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(grant)
                await self.db.flush()
        except IntegrityError:
            result = await self.db.execute(
                select(SubscriberEntitlement)
                .where(
                    SubscriberEntitlement.subscriber_id == subscriber_id,
                    SubscriberEntitlement.entitlement_id == entitlement_id,
                )
                .execution_options(populate_existing=True)
            )
            grant = result.scalar_one()
            was_active = grant.is_active_at(now)
            logger.info("Concurrent insert for grant %s of subscriber %s", entitlement_id, subscriber_id)
            if grant.grant_source == GrantSource.STORE or not was_active:
                self._apply(grant, desired)
            return grant, was_active
        return grant, False

    @staticmethod
    def _apply(grant: SubscriberEntitlement, desired: _DesiredGrant) -> None:
        grant.active = True
        grant.expires_date = desired.expires_date
        grant.grant_source = GrantSource.STORE
        grant.product_id = desired.product_id
        if desired.subscription_id is not None:
            grant.subscription_id = desired.subscription_id
        if desired.purchase_id is not None:
            grant.purchase_id = desired.purchase_id
        grant.granted_by = None
        grant.grant_reason = None

    async def _entitlement(self, app_id: uuid.UUID, identifier: str) -> Entitlement:
        result = await self.db.execute(
            select(Entitlement).where(
                Entitlement.app_id == app_id,
                Entitlement.identifier == identifier,
            )
        )
        entitlement = result.scalar_one_or_none()
        if entitlement is None:
            raise EntitlementNotFoundError(f"Entitlement '{identifier}' does not exist for this app")
        return entitlement

    async def _identifiers(self, entitlement_ids: list[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not entitlement_ids:
            return {}
        rows = await self.db.execute(
            select(Entitlement.entitlement_id, Entitlement.identifier)
            .where(Entitlement.entitlement_id.in_(entitlement_ids))
        )
        return dict(rows.all())
