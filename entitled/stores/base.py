"""
Store Adapter Base
==================

The normalized ``Transaction`` shape every downstream component consumes,
and the ``StoreAdapter`` interface each store implements.

Nothing outside ``entitled.stores`` should look at Apple or Google payload
shapes; services only see ``Transaction`` and ``SubscriptionStatus``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from entitled.config import settings
from entitled.core.errors import (
    StoreConfigurationError,
    StoreRequestError,
    StoreTransientError,
)
from entitled.models.app import Platform
from entitled.models.purchase import Environment, PurchaseStatus, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transaction:
    """A store transaction normalized across platforms."""

    platform: Platform
    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    original_purchase_date: datetime
    expires_date: Optional[datetime] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    is_trial_period: bool = False
    is_intro_offer_period: bool = False
    auto_renew_enabled: bool = False
    status: PurchaseStatus = PurchaseStatus.COMPLETED
    environment: Environment = Environment.PRODUCTION
    is_subscription: bool = False
    # Live subscription state as reported by the store (subscriptions only)
    store_status: Optional[SubscriptionStatus] = None
    grace_period_expires_date: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_refunded(self) -> bool:
        return self.status == PurchaseStatus.REFUNDED


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def from_millis(value: Any) -> Optional[datetime]:
    """Epoch milliseconds (int or numeric string) to an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def from_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp such as ``2026-01-02T03:04:05.123456789Z``.

    Fractions beyond microseconds are truncated.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# StoreAdapter
# ---------------------------------------------------------------------------

class StoreAdapter(ABC):
    """
    One implementation per store.

    Adapters own an ``httpx.AsyncClient`` unless one is injected; callers
    should ``await adapter.aclose()`` (or use ``async with``) when done.
    """

    platform: Platform

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.STORE_HTTP_TIMEOUT_SECONDS),
        )

    async def __aenter__(self) -> "StoreAdapter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @abstractmethod
    async def fetch_transaction(
        self,
        reference: str,
        *,
        product_id: Optional[str] = None,
        is_subscription: bool = True,
    ) -> Transaction:
        """
        Fetch authoritative state for a purchase and normalize it.

        Args:
            reference: Apple transaction id or Google purchase token.
            product_id: Store product id (required by Google).
            is_subscription: Google only; selects the subscriptions or
                one-time products API.

        Raises:
            StoreConfigurationError: credentials missing or rejected.
            StoreTransientError: network failure, timeout, 5xx or 429.
            StoreRequestError: the store rejected the reference.
        """

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue a store API call and classify failures."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise StoreTransientError(
                f"{self.platform.value} store API timed out",
            ) from exc
        except httpx.TransportError as exc:
            raise StoreTransientError(
                f"{self.platform.value} store API unreachable: {exc}",
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "%s store API %s %s returned %d",
                self.platform.value,
                method,
                url,
                response.status_code,
            )
            raise StoreTransientError(
                f"{self.platform.value} store API returned {response.status_code}",
                store_status=response.status_code,
            )
        if response.status_code in (401, 403):
            raise StoreConfigurationError(
                f"{self.platform.value} store API rejected our credentials "
                f"({response.status_code})",
            )
        if response.status_code >= 400:
            raise StoreRequestError(
                f"{self.platform.value} store API returned {response.status_code}",
                store_status=response.status_code,
            )
        return response
