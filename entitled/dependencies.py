"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.config import settings
from entitled.core.errors import AuthenticationError, ErrorCodes, ServiceUnavailableError
from entitled.db.session import get_db
from entitled.models.app import App

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for the cron trigger
security = HTTPBearer(auto_error=False)


# =============================================================================
# App resolution
# =============================================================================

async def get_current_app(
    request: Request,
    db: DBSession,
    x_api_key: Annotated[str, Header(alias="X-API-Key")] = "",
) -> App:
    """
    Resolve the calling app from its API key.

    Raises 401 if the key is missing or unknown.
    """
    if not x_api_key:
        raise AuthenticationError(message="Missing X-API-Key header")

    result = await db.execute(select(App).where(App.api_key == x_api_key))
    app = result.scalar_one_or_none()
    if app is None:
        logger.warning("Rejected request with unknown API key on %s", request.url.path)
        raise AuthenticationError(message="Invalid API key")

    # Picked up by the New Relic middleware
    request.state.app_id = app.app_id
    return app


async def verify_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """
    Check ``Authorization: Bearer <CRON_SECRET>`` on cron endpoints.

    Raises 503 when no secret is configured, 401 when it does not match.
    """
    if not settings.CRON_SECRET:
        raise ServiceUnavailableError(message="Cron trigger is not configured")

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.CRON_SECRET.encode("utf-8"),
    ):
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_CRON_SECRET,
            message="Invalid cron secret",
        )


# Type alias for authenticated app dependency
CurrentApp = Annotated[App, Depends(get_current_app)]
CronAuth = Depends(verify_cron_secret)
