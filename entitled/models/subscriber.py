"""
Subscriber Models
=================

Subscribers (one per app + external user id) and their entitlement grants.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from entitled.db.base import Base, JSONType, TimestampMixin, UTCDateTime, utcnow
from entitled.models.app import Entitlement, Product


class GrantSource(str, Enum):
    """Who or what justified an entitlement grant."""
    STORE = "store"
    MANUAL = "manual"
    PROMOTIONAL = "promotional"


class Subscriber(Base, TimestampMixin):
    """
    A customer's end user, identified by the app's own user id.

    Created on first observed activity; never deleted by this service.
    """

    __tablename__ = "subscribers"

    # Primary Key
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )

    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    aliases: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    attributes: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    # Relationships
    grants: Mapped[list["SubscriberEntitlement"]] = relationship(
        "SubscriberEntitlement",
        back_populates="subscriber",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("app_id", "app_user_id", name="uq_subscriber_app_user"),
    )

    def __repr__(self) -> str:
        return f"<Subscriber(app_user_id={self.app_user_id}, app_id={self.app_id})>"


class SubscriberEntitlement(Base, TimestampMixin):
    """
    Entitlement grant record.

    One row per (subscriber, entitlement). The product/subscription/purchase
    columns record what most recently justified the grant.
    """

    __tablename__ = "subscriber_entitlements"

    # Primary Key
    grant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"),
        nullable=False,
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("entitlements.entitlement_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Provenance
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("products.product_id", ondelete="SET NULL"),
        nullable=True,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    purchase_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("purchases.purchase_id", ondelete="SET NULL"),
        nullable=True,
    )

    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,  # Null means non-expiring
    )
    grant_source: Mapped[GrantSource] = mapped_column(
        SQLEnum(GrantSource),
        default=GrantSource.STORE,
        nullable=False,
    )
    granted_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    grant_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    subscriber: Mapped["Subscriber"] = relationship("Subscriber", back_populates="grants")
    entitlement: Mapped["Entitlement"] = relationship("Entitlement")
    product: Mapped[Optional["Product"]] = relationship("Product")

    __table_args__ = (
        UniqueConstraint("subscriber_id", "entitlement_id", name="uq_subscriber_entitlement"),
        Index("idx_grant_subscriber_active", "subscriber_id", "active"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriberEntitlement(subscriber_id={self.subscriber_id}, "
            f"entitlement_id={self.entitlement_id}, active={self.active})>"
        )

    def is_active_at(self, when: datetime) -> bool:
        """A grant counts only while flagged active and not past its expiry."""
        return self.active and (self.expires_date is None or self.expires_date > when)
