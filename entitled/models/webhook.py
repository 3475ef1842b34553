"""
Webhook Models
==============

Inbound store notification log and outbound delivery records.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from entitled.db.base import Base, JSONType, TimestampMixin, UTCDateTime
from entitled.models.app import Platform


class DeliveryStatus(str, Enum):
    """Outbound webhook delivery states."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class StoreNotification(Base, TimestampMixin):
    """
    Append-only log of server notifications pushed by Apple or Google.

    ``notification_id`` is the store's own id (Apple ``notificationUUID``,
    Google Pub/Sub ``messageId``) and deduplicates redeliveries.
    """

    __tablename__ = "store_notifications"

    # Primary Key
    notification_log_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    app_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=True,
    )
    platform: Mapped[Platform] = mapped_column(SQLEnum(Platform), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subtype: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notification_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("platform", "notification_id", name="uq_store_notification_id"),
        Index("idx_store_notification_app_created", "app_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<StoreNotification(platform={self.platform}, "
            f"type={self.notification_type}, id={self.notification_id})>"
        )


class WebhookDelivery(Base, TimestampMixin):
    """
    Outbound webhook delivery record.

    Written in the same transaction as the state change it reports, then
    drained by the delivery worker.
    """

    __tablename__ = "webhook_deliveries"

    # Primary Key
    delivery_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    subscriber_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"),
        nullable=True,
    )

    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus),
        default=DeliveryStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("idx_webhook_delivery_app_status", "app_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<WebhookDelivery(event_id={self.event_id}, status={self.status})>"
