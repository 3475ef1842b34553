"""
Entitled API - Main Application
===============================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitled.config import settings
from entitled.core.errors import setup_exception_handlers
from entitled.db.session import close_db, init_db
from entitled.services.cache import close_redis, init_redis
from entitled.services.delivery_worker import WebhookDeliveryWorker

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction.

    Raw ASGI keeps the route handler in the same task, so New Relic's
    contextvars-based spans for Redis, the database and store calls stay
    attached to the transaction.

    Captures: response status, latency, HTTP method, route pattern, and
    the calling app id (when authenticated).
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscribers/{app_user_id}") for grouping
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                # Set by the API key dependency
                state = scope.get("state")
                app_id = state.get("app_id") if isinstance(state, dict) else getattr(state, "app_id", None)
                if app_id:
                    newrelic.agent.add_custom_attribute("entitled.app_id", str(app_id))


_delivery_worker: WebhookDeliveryWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection
    - Webhook delivery background worker
    """
    global _delivery_worker

    # Startup
    logger.info("Starting Entitled API (%s)", settings.ENVIRONMENT)

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        # Continue startup even if DB fails (for health checks)
        logger.error("Database connection failed: %s", e)

    # Initialize Redis
    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    if settings.WEBHOOK_WORKER_ENABLED:
        _delivery_worker = WebhookDeliveryWorker()
        await _delivery_worker.start()

    yield

    # Shutdown
    logger.info("Shutting down Entitled API")
    if _delivery_worker is not None:
        await _delivery_worker.stop()
        _delivery_worker = None
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Entitled API",
    description="""
## In-app purchase and subscription reconciliation

Validates App Store and Google Play purchases, keeps a ledger of store
transactions, tracks subscription lifecycles and derives entitlements.

### Features
- **Receipts**: App Store Server API and Google Play Developer API validation
- **Store notifications**: App Store Server Notifications V2, Google RTDN
- **Entitlements**: derived from active subscriptions and purchases, plus manual grants
- **Webhooks**: signed outbound events with retries and a dead-letter stream

### Authentication
- App endpoints: `X-API-Key` header
- Cron endpoints: `Authorization: Bearer <CRON_SECRET>`
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"description": "Not authenticated"},
        404: {"description": "Resource not found"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
        503: {"description": "Store or dependency unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Entitled API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from entitled.api.v1 import cron, receipts, subscribers, webhooks

app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])
app.include_router(subscribers.router, prefix="/api/v1/subscribers", tags=["Subscribers"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/api/v1/cron", tags=["Cron"])
