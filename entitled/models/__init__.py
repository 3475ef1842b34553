"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from entitled.models.app import (
    App,
    Entitlement,
    Platform,
    Product,
    ProductEntitlement,
    ProductType,
)
from entitled.models.subscriber import (
    GrantSource,
    Subscriber,
    SubscriberEntitlement,
)
from entitled.models.purchase import (
    Environment,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)
from entitled.models.webhook import (
    DeliveryStatus,
    StoreNotification,
    WebhookDelivery,
)

__all__ = [
    # App catalog
    "App",
    "Entitlement",
    "Platform",
    "Product",
    "ProductEntitlement",
    "ProductType",
    # Subscribers
    "GrantSource",
    "Subscriber",
    "SubscriberEntitlement",
    # Ledger
    "Environment",
    "Purchase",
    "PurchaseStatus",
    "Subscription",
    "SubscriptionStatus",
    # Webhooks
    "DeliveryStatus",
    "StoreNotification",
    "WebhookDelivery",
]
