"""Initial schema: app catalog, subscribers, ledger, notifications, deliveries

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy stores enum member names
platform_enum = postgresql.ENUM("IOS", "ANDROID", name="platform", create_type=False)
product_type_enum = postgresql.ENUM(
    "CONSUMABLE", "NON_CONSUMABLE", "AUTO_RENEWABLE", "NON_RENEWING",
    name="producttype", create_type=False,
)
environment_enum = postgresql.ENUM("SANDBOX", "PRODUCTION", name="environment", create_type=False)
purchase_status_enum = postgresql.ENUM("COMPLETED", "REFUNDED", name="purchasestatus", create_type=False)
subscription_status_enum = postgresql.ENUM(
    "ACTIVE", "EXPIRED", "IN_GRACE_PERIOD", "IN_BILLING_RETRY", "REVOKED",
    name="subscriptionstatus", create_type=False,
)
grant_source_enum = postgresql.ENUM("STORE", "MANUAL", "PROMOTIONAL", name="grantsource", create_type=False)
delivery_status_enum = postgresql.ENUM(
    "PENDING", "DELIVERED", "FAILED", "SKIPPED", name="deliverystatus", create_type=False,
)

ALL_ENUMS = (
    platform_enum,
    product_type_enum,
    environment_enum,
    purchase_status_enum,
    subscription_status_enum,
    grant_source_enum,
    delivery_status_enum,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    bind = op.get_bind()
    for enum in ALL_ENUMS:
        enum.create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # App catalog
    # ------------------------------------------------------------------
    op.create_table(
        "apps",
        sa.Column("app_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("api_key", sa.String(255), nullable=False),
        sa.Column("bundle_id", sa.String(255), nullable=True),
        sa.Column("package_name", sa.String(255), nullable=True),
        sa.Column("apple_issuer_id", sa.String(255), nullable=True),
        sa.Column("apple_key_id", sa.String(255), nullable=True),
        sa.Column("apple_private_key", sa.Text(), nullable=True),
        sa.Column("google_service_account", postgresql.JSONB(), nullable=True),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_apps_api_key", "apps", ["api_key"], unique=True)
    op.create_index("ix_apps_bundle_id", "apps", ["bundle_id"])
    op.create_index("ix_apps_package_name", "apps", ["package_name"])

    op.create_table(
        "entitlements",
        sa.Column("entitlement_id", sa.Uuid(), primary_key=True),
        sa.Column("app_id", sa.Uuid(), sa.ForeignKey("apps.app_id", ondelete="CASCADE"), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("app_id", "identifier", name="uq_entitlement_identifier"),
    )
    op.create_index("idx_entitlement_app", "entitlements", ["app_id"])

    op.create_table(
        "products",
        sa.Column("product_id", sa.Uuid(), primary_key=True),
        sa.Column("app_id", sa.Uuid(), sa.ForeignKey("apps.app_id", ondelete="CASCADE"), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("store_product_id", sa.String(255), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("product_type", product_type_enum, nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("app_id", "platform", "store_product_id", name="uq_product_store_id"),
    )
    op.create_index("ix_products_app_id", "products", ["app_id"])

    op.create_table(
        "product_entitlements",
        sa.Column(
            "product_id", sa.Uuid(),
            sa.ForeignKey("products.product_id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "entitlement_id", sa.Uuid(),
            sa.ForeignKey("entitlements.entitlement_id", ondelete="CASCADE"), primary_key=True,
        ),
    )

    # ------------------------------------------------------------------
    # Subscribers and ledger
    # ------------------------------------------------------------------
    op.create_table(
        "subscribers",
        sa.Column("subscriber_id", sa.Uuid(), primary_key=True),
        sa.Column("app_id", sa.Uuid(), sa.ForeignKey("apps.app_id", ondelete="CASCADE"), nullable=False),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("original_app_user_id", sa.String(255), nullable=False),
        sa.Column("aliases", postgresql.JSONB(), nullable=False),
        sa.Column("attributes", postgresql.JSONB(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("app_id", "app_user_id", name="uq_subscriber_app_user"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id", sa.Uuid(),
            sa.ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("original_transaction_id", sa.String(512), nullable=False),
        sa.Column("latest_transaction_id", sa.String(512), nullable=False),
        sa.Column("status", subscription_status_enum, nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_retry_expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_trial_period", sa.Boolean(), nullable=False),
        sa.Column("is_intro_offer_period", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(100), nullable=True),
        sa.Column("environment", environment_enum, nullable=False),
        sa.Column("store_response", postgresql.JSONB(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("platform", "original_transaction_id", name="uq_subscription_original_txn"),
    )
    op.create_index("ix_subscriptions_subscriber_id", "subscriptions", ["subscriber_id"])
    op.create_index("idx_subscription_status_expires", "subscriptions", ["status", "expires_date"])

    op.create_table(
        "purchases",
        sa.Column("purchase_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id", sa.Uuid(),
            sa.ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column(
            "subscription_id", sa.Uuid(),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("store_transaction_id", sa.String(512), nullable=False),
        sa.Column("original_transaction_id", sa.String(512), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price", sa.Numeric(12, 4), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("environment", environment_enum, nullable=False),
        sa.Column("status", purchase_status_enum, nullable=False),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("store_response", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("platform", "store_transaction_id", name="uq_purchase_store_txn"),
    )
    op.create_index("ix_purchases_subscriber_id", "purchases", ["subscriber_id"])
    op.create_index("idx_purchase_original_txn", "purchases", ["platform", "original_transaction_id"])

    op.create_table(
        "subscriber_entitlements",
        sa.Column("grant_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id", sa.Uuid(),
            sa.ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "entitlement_id", sa.Uuid(),
            sa.ForeignKey("entitlements.entitlement_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "product_id", sa.Uuid(),
            sa.ForeignKey("products.product_id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "subscription_id", sa.Uuid(),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "purchase_id", sa.Uuid(),
            sa.ForeignKey("purchases.purchase_id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grant_source", grant_source_enum, nullable=False),
        sa.Column("granted_by", sa.String(255), nullable=True),
        sa.Column("grant_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("subscriber_id", "entitlement_id", name="uq_subscriber_entitlement"),
    )
    op.create_index(
        "ix_subscriber_entitlements_subscription_id", "subscriber_entitlements", ["subscription_id"],
    )
    op.create_index("idx_grant_subscriber_active", "subscriber_entitlements", ["subscriber_id", "active"])

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    op.create_table(
        "store_notifications",
        sa.Column("notification_log_id", sa.Uuid(), primary_key=True),
        sa.Column("app_id", sa.Uuid(), sa.ForeignKey("apps.app_id", ondelete="CASCADE"), nullable=True),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("notification_type", sa.String(100), nullable=False),
        sa.Column("subtype", sa.String(100), nullable=True),
        sa.Column("notification_id", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("platform", "notification_id", name="uq_store_notification_id"),
    )
    op.create_index("idx_store_notification_app_created", "store_notifications", ["app_id", "created_at"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column("app_id", sa.Uuid(), sa.ForeignKey("apps.app_id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "subscriber_id", sa.Uuid(),
            sa.ForeignKey("subscribers.subscriber_id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("event_id", sa.String(64), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", delivery_status_enum, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_webhook_delivery_app_status", "webhook_deliveries", ["app_id", "status"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("webhook_deliveries")
    op.drop_table("store_notifications")
    op.drop_table("subscriber_entitlements")
    op.drop_table("purchases")
    op.drop_table("subscriptions")
    op.drop_table("subscribers")
    op.drop_table("product_entitlements")
    op.drop_table("products")
    op.drop_table("entitlements")
    op.drop_table("apps")

    bind = op.get_bind()
    for enum in reversed(ALL_ENUMS):
        enum.drop(bind, checkfirst=True)
