"""
Ledger Models
=============

Purchase (one row per store transaction) and Subscription (one row per
original transaction of an auto-renewing product).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from entitled.db.base import Base, JSONType, TimestampMixin, UTCDateTime
from entitled.models.app import Platform, Product


class Environment(str, Enum):
    """Store environment a transaction was made in."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class PurchaseStatus(str, Enum):
    """Ledger row status."""
    COMPLETED = "completed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    ACTIVE = "active"
    EXPIRED = "expired"
    IN_GRACE_PERIOD = "in_grace_period"
    IN_BILLING_RETRY = "in_billing_retry"
    REVOKED = "revoked"


class Subscription(Base, TimestampMixin):
    """
    Subscription lifecycle record.

    Keyed by the store's original transaction id (Apple) or purchase
    token (Google), which stays constant across renewals.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("products.product_id"),
        nullable=False,
    )

    # Store identity
    platform: Mapped[Platform] = mapped_column(SQLEnum(Platform), nullable=False)
    original_transaction_id: Mapped[str] = mapped_column(String(512), nullable=False)
    latest_transaction_id: Mapped[str] = mapped_column(String(512), nullable=False)

    # Lifecycle
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    purchase_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    original_purchase_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    grace_period_expires_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    billing_retry_expires_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    auto_renew_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_trial_period: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_intro_offer_period: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    environment: Mapped[Environment] = mapped_column(
        SQLEnum(Environment),
        default=Environment.PRODUCTION,
        nullable=False,
    )
    store_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Relationships
    product: Mapped["Product"] = relationship("Product")

    # Indexes
    __table_args__ = (
        UniqueConstraint("platform", "original_transaction_id", name="uq_subscription_original_txn"),
        Index("idx_subscription_status_expires", "status", "expires_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(original_transaction_id={self.original_transaction_id}, "
            f"status={self.status})>"
        )

    @property
    def period_type(self) -> str:
        """Period label exposed in subscriber info."""
        if self.is_trial_period:
            return "trial"
        if self.is_intro_offer_period:
            return "intro"
        return "normal"


class Purchase(Base, TimestampMixin):
    """
    Purchase ledger row.

    Exactly one row per (platform, store transaction id); re-processing a
    transaction updates this row instead of inserting another.
    """

    __tablename__ = "purchases"

    # Primary Key
    purchase_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("products.product_id"),
        nullable=False,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"),
        nullable=True,
    )

    platform: Mapped[Platform] = mapped_column(SQLEnum(Platform), nullable=False)
    store_transaction_id: Mapped[str] = mapped_column(String(512), nullable=False)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    purchase_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Payment info
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    environment: Mapped[Environment] = mapped_column(
        SQLEnum(Environment),
        default=Environment.PRODUCTION,
        nullable=False,
    )
    status: Mapped[PurchaseStatus] = mapped_column(
        SQLEnum(PurchaseStatus),
        default=PurchaseStatus.COMPLETED,
        nullable=False,
    )
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    store_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Relationships
    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        UniqueConstraint("platform", "store_transaction_id", name="uq_purchase_store_txn"),
        Index("idx_purchase_original_txn", "platform", "original_transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<Purchase(store_transaction_id={self.store_transaction_id}, status={self.status})>"
