"""
Purchase Ledger
===============

One ``Purchase`` row per (platform, store transaction id). Recording the
same transaction again updates that row; ``refunded`` is terminal.
"""

import logging
from dataclasses import dataclass
from typing import Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.models.app import Platform, Product
from entitled.models.purchase import Purchase, PurchaseStatus, Subscription
from entitled.models.subscriber import Subscriber
from entitled.stores.base import Transaction

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    purchase: Purchase
    created: bool
    refunded_now: bool = False


class PurchaseLedger:
    """Idempotent writes to the purchase ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, platform: Platform, store_transaction_id: str) -> Optional[Purchase]:
        """Look up a ledger row by store transaction id."""
        result = await self.db.execute(
            select(Purchase)
            .where(
                Purchase.platform == platform,
                Purchase.store_transaction_id == store_transaction_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_latest_by_original(
        self,
        platform: Platform,
        original_transaction_id: str,
    ) -> Optional[Purchase]:
        """Most recent ledger row for an original transaction id or purchase token."""
        result = await self.db.execute(
            select(Purchase)
            .where(
                Purchase.platform == platform,
                Purchase.original_transaction_id == original_transaction_id,
            )
            .order_by(Purchase.purchase_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        subscriber: Subscriber,
        product: Product,
        txn: Transaction,
        subscription: Optional[Subscription] = None,
    ) -> LedgerResult:
        """
        Insert or update the ledger row for ``txn``.

        Args:
            subscriber: Owner of the purchase.
            product: Catalog product the transaction is for.
            txn: Normalized store transaction.
            subscription: Subscription the transaction renews, if any.

        Returns:
            LedgerResult with ``created`` and ``refunded_now`` flags.
        """
        purchase = await self.find(txn.platform, txn.transaction_id)
        if purchase is None:
            purchase = await self._insert(subscriber, product, txn, subscription)
            if purchase is not None:
                logger.info(
                    "Recorded %s purchase %s for subscriber %s",
                    txn.platform.value,
                    txn.transaction_id,
                    subscriber.subscriber_id,
                )
                return LedgerResult(purchase=purchase, created=True, refunded_now=txn.is_refunded)
            purchase = await self.find(txn.platform, txn.transaction_id)

        if purchase.subscriber_id != subscriber.subscriber_id:
            logger.warning(
                "Purchase %s belongs to subscriber %s, observed for %s; keeping owner",
                purchase.store_transaction_id,
                purchase.subscriber_id,
                subscriber.subscriber_id,
            )

        if subscription is not None:
            purchase.subscription_id = subscription.subscription_id
        purchase.expires_date = txn.expires_date
        purchase.environment = txn.environment
        purchase.store_response = txn.raw_payload
        if txn.price is not None:
            purchase.price = txn.price
            purchase.currency = txn.currency

        refunded_now = False
        if txn.is_refunded and purchase.status != PurchaseStatus.REFUNDED:
            purchase.status = PurchaseStatus.REFUNDED
            purchase.refund_reason = txn.revocation_reason
            refunded_now = True
            logger.info("Purchase %s refunded (%s)", purchase.store_transaction_id, txn.revocation_reason)

        return LedgerResult(purchase=purchase, created=False, refunded_now=refunded_now)

    async def _insert(
        self,
        subscriber: Subscriber,
        product: Product,
        txn: Transaction,
        subscription: Optional[Subscription],
    ) -> Optional[Purchase]:
        """Insert a ledger row; None when a concurrent insert won."""
        purchase = Purchase(
            purchase_id=uuid.uuid4(),
            subscriber_id=subscriber.subscriber_id,
            product_id=product.product_id,
            subscription_id=subscription.subscription_id if subscription else None,
            platform=txn.platform,
            store_transaction_id=txn.transaction_id,
            original_transaction_id=txn.original_transaction_id,
            purchase_date=txn.purchase_date,
            expires_date=txn.expires_date,
            price=txn.price,
            currency=txn.currency,
            environment=txn.environment,
            status=txn.status,
            refund_reason=txn.revocation_reason if txn.is_refunded else None,
            store_response=txn.raw_payload,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(purchase)
                await self.db.flush()
        except IntegrityError:
            logger.info("Concurrent insert for purchase %s", txn.transaction_id)
            return None
        return purchase

    async def mark_refunded(self, purchase: Purchase, reason: Optional[str] = None) -> bool:
        """Move a purchase to refunded. Returns False if it already was."""
        if purchase.status == PurchaseStatus.REFUNDED:
            return False
        purchase.status = PurchaseStatus.REFUNDED
        purchase.refund_reason = reason or "refunded"
        await self.db.flush()
        logger.info("Purchase %s refunded (%s)", purchase.store_transaction_id, purchase.refund_reason)
        return True
