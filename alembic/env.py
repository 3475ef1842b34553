"""
Alembic Environment
===================

Runs migrations for the entitled schema over the async engine. The URL
always comes from ``DATABASE_URL`` through application settings, so the
same value drives the API, the worker and migrations.
"""

import sys
from pathlib import Path

# Project root on sys.path so 'entitled' imports without an install
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import asyncio
import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from entitled.config import settings
from entitled.db.base import Base
from entitled.models import (  # noqa: F401  (registers tables on Base.metadata)
    App,
    Entitlement,
    Product,
    ProductEntitlement,
    Purchase,
    StoreNotification,
    Subscriber,
    SubscriberEntitlement,
    Subscription,
    WebhookDelivery,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# Options shared by offline and online runs
MIGRATION_OPTIONS = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "compare_server_default": True,
}


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting (``alembic upgrade --sql``)."""
    context.configure(
        url=settings.database_url_async,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **MIGRATION_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = settings.database_url_async

    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            logger.info("Migrating %s database", connection.dialect.name)
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
