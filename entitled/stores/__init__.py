"""
Store Adapters
==============

One ``StoreAdapter`` per platform. Callers pick one with
``build_store_adapter`` and only ever see normalized ``Transaction``s.
"""

from typing import Any

from entitled.models.app import App, Platform
from entitled.stores.apple import AppleStoreAdapter
from entitled.stores.base import StoreAdapter, Transaction
from entitled.stores.google import GooglePlayAdapter


def build_store_adapter(app: App, platform: Platform, **kwargs: Any) -> StoreAdapter:
    """
    Build the adapter for ``platform`` from the app's stored credentials.

    Raises:
        StoreConfigurationError: the app has no credentials for that store.
    """
    if platform == Platform.IOS:
        return AppleStoreAdapter.from_app(app, **kwargs)
    if platform == Platform.ANDROID:
        return GooglePlayAdapter.from_app(app, **kwargs)
    raise ValueError(f"Unsupported platform {platform!r}")


__all__ = [
    "AppleStoreAdapter",
    "GooglePlayAdapter",
    "StoreAdapter",
    "Transaction",
    "build_store_adapter",
]
