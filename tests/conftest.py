"""
Shared Test Fixtures
====================

- A throwaway SQLite database (aiosqlite, one file per test) with the
  full schema, installed as the application's session factory
- A seeded app with an iOS and an Android catalog
- A mocked Redis client
- A fake store adapter serving canned ``Transaction`` objects
- An HTTP client bound to the FastAPI app
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from entitled.db.base import Base
from entitled.db.session import get_db, set_session_factory
from entitled.models import App, Entitlement, Product, ProductEntitlement
from entitled.models.app import Platform, ProductType
from entitled.models.purchase import SubscriptionStatus
from entitled.services import cache
from entitled.stores.base import StoreAdapter, Transaction

API_KEY = "ent_test_key"
WEBHOOK_URL = "https://hooks.example.com/entitled"
WEBHOOK_SECRET = "whsec_test_secret"
BUNDLE_ID = "com.example.app"
PACKAGE_NAME = "com.example.app"

MONTHLY_SKU = "com.example.premium.monthly"
LIFETIME_SKU = "com.example.lifetime"
ANDROID_MONTHLY_SKU = "premium_monthly"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utc(**delta) -> datetime:
    """Now plus ``delta`` (timedelta kwargs), timezone-aware."""
    return datetime.now(timezone.utc) + timedelta(**delta)


def make_txn(**overrides) -> Transaction:
    """A normalized active iOS monthly subscription transaction."""
    values = {
        "platform": Platform.IOS,
        "transaction_id": "2000000001",
        "original_transaction_id": "2000000001",
        "product_id": MONTHLY_SKU,
        "purchase_date": utc(days=-1),
        "original_purchase_date": utc(days=-1),
        "expires_date": utc(days=29),
        "auto_renew_enabled": True,
        "is_subscription": True,
        "store_status": SubscriptionStatus.ACTIVE,
    }
    values.update(overrides)
    return Transaction(**values)


class FakeStoreAdapter(StoreAdapter):
    """Serves canned transactions (or raises canned errors) by reference."""

    platform = Platform.IOS

    def __init__(self, transactions: Optional[dict] = None):
        self.transactions = transactions if transactions is not None else {}
        self.calls: list[str] = []

    async def fetch_transaction(self, reference, *, product_id=None, is_subscription=True):
        self.calls.append(reference)
        result = self.transactions[reference]
        if isinstance(result, list):
            result = result.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'entitled.db'}",
        poolclass=NullPool,
    )

    # Let SQLAlchemy drive transactions so savepoints work on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    set_session_factory(factory)
    yield factory
    set_session_factory(None)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app_record(db_session: AsyncSession) -> App:
    """An app with an iOS and Android catalog wired to ``premium``."""
    app = App(
        app_id=uuid.uuid4(),
        name="Example",
        api_key=API_KEY,
        bundle_id=BUNDLE_ID,
        package_name=PACKAGE_NAME,
        webhook_url=WEBHOOK_URL,
        webhook_secret=WEBHOOK_SECRET,
    )
    premium = Entitlement(
        entitlement_id=uuid.uuid4(),
        app_id=app.app_id,
        identifier="premium",
        display_name="Premium",
    )
    products = [
        Product(
            product_id=uuid.uuid4(),
            app_id=app.app_id,
            identifier="premium_monthly",
            store_product_id=MONTHLY_SKU,
            platform=Platform.IOS,
            product_type=ProductType.AUTO_RENEWABLE,
        ),
        Product(
            product_id=uuid.uuid4(),
            app_id=app.app_id,
            identifier="lifetime",
            store_product_id=LIFETIME_SKU,
            platform=Platform.IOS,
            product_type=ProductType.NON_CONSUMABLE,
        ),
        Product(
            product_id=uuid.uuid4(),
            app_id=app.app_id,
            identifier="premium_monthly_android",
            store_product_id=ANDROID_MONTHLY_SKU,
            platform=Platform.ANDROID,
            product_type=ProductType.AUTO_RENEWABLE,
        ),
    ]
    db_session.add_all([app, premium, *products])
    await db_session.flush()
    db_session.add_all([
        ProductEntitlement(product_id=p.product_id, entitlement_id=premium.entitlement_id)
        for p in products
    ])
    await db_session.commit()
    return app


@pytest_asyncio.fixture
async def monthly_product(db_session: AsyncSession, app_record: App) -> Product:
    return (
        await db_session.execute(select(Product).where(Product.store_product_id == MONTHLY_SKU))
    ).scalar_one()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def mock_redis(monkeypatch) -> AsyncMock:
    """Redis client that always misses."""
    client = AsyncMock()
    client.get.return_value = None
    client.exists.return_value = 0
    client.delete.return_value = 0
    client.setex.return_value = True
    client.xadd.return_value = "1-0"
    monkeypatch.setattr(cache, "_redis_client", client)
    return client


# ---------------------------------------------------------------------------
# Store adapters
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_adapter() -> FakeStoreAdapter:
    return FakeStoreAdapter()


@pytest.fixture
def adapter_factory(fake_adapter: FakeStoreAdapter):
    return lambda app, platform: fake_adapter


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from entitled.main import app

    async def _get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
