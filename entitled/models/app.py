"""
App Catalog Models
==================

Per-app configuration the reconciliation core reads but never writes:
store credentials, webhook target, products and the entitlements they unlock.
"""

from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from entitled.db.base import Base, JSONType, TimestampMixin


class Platform(str, Enum):
    """Store platform."""
    IOS = "ios"
    ANDROID = "android"


class ProductType(str, Enum):
    """Kinds of store products."""
    CONSUMABLE = "consumable"
    NON_CONSUMABLE = "non_consumable"
    AUTO_RENEWABLE = "auto_renewable"
    NON_RENEWING = "non_renewing"


class App(Base, TimestampMixin):
    """
    A customer application.

    Holds the credentials used to talk to each store on the app's behalf
    and the endpoint that receives outbound webhooks.
    """

    __tablename__ = "apps"

    # Primary Key
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Store identifiers
    bundle_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    package_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # App Store Connect API credentials
    apple_issuer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    apple_key_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    apple_private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Google Play service account (parsed JSON key file)
    google_service_account: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Outbound webhooks
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    products: Mapped[list["Product"]] = relationship(
        "Product",
        back_populates="app",
    )

    def __repr__(self) -> str:
        return f"<App(app_id={self.app_id}, name={self.name})>"

    @property
    def has_apple_credentials(self) -> bool:
        """Check that every App Store Server API credential is present."""
        return bool(
            self.bundle_id
            and self.apple_issuer_id
            and self.apple_key_id
            and self.apple_private_key
        )

    @property
    def has_google_credentials(self) -> bool:
        """Check that the Play Developer API can be reached for this app."""
        return bool(self.package_name and self.google_service_account)


class ProductEntitlement(Base):
    """Link row: a product unlocks an entitlement."""

    __tablename__ = "product_entitlements"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("products.product_id", ondelete="CASCADE"),
        primary_key=True,
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("entitlements.entitlement_id", ondelete="CASCADE"),
        primary_key=True,
    )


class Product(Base, TimestampMixin):
    """A store-side purchasable item belonging to one app and one platform."""

    __tablename__ = "products"

    # Primary Key
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    store_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[Platform] = mapped_column(SQLEnum(Platform), nullable=False)
    product_type: Mapped[ProductType] = mapped_column(SQLEnum(ProductType), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    app: Mapped["App"] = relationship("App", back_populates="products")
    entitlements: Mapped[list["Entitlement"]] = relationship(
        "Entitlement",
        secondary="product_entitlements",
        back_populates="products",
    )

    __table_args__ = (
        UniqueConstraint("app_id", "platform", "store_product_id", name="uq_product_store_id"),
    )

    def __repr__(self) -> str:
        return f"<Product(identifier={self.identifier}, platform={self.platform})>"

    @property
    def is_subscription(self) -> bool:
        """Auto-renewing products are tracked by the state machine."""
        return self.product_type == ProductType.AUTO_RENEWABLE


class Entitlement(Base, TimestampMixin):
    """A named capability an app gates behind a purchase (e.g. "premium")."""

    __tablename__ = "entitlements"

    # Primary Key
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    products: Mapped[list["Product"]] = relationship(
        "Product",
        secondary="product_entitlements",
        back_populates="entitlements",
    )

    __table_args__ = (
        UniqueConstraint("app_id", "identifier", name="uq_entitlement_identifier"),
        Index("idx_entitlement_app", "app_id"),
    )

    def __repr__(self) -> str:
        return f"<Entitlement(identifier={self.identifier})>"
