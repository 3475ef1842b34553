"""
Webhooks API Endpoints
======================

Inbound server notifications from the stores and outbound delivery stats.

Authentication:
    Apple pushes are JWS-signed; the notification is acted on only after
    the referenced transaction is re-fetched from the App Store API.
    Google pushes arrive through Pub/Sub. When ``GOOGLE_PUBSUB_AUDIENCE``
    is set, the push must carry a Google-signed OIDC token for it.

Idempotency:
    Each store notification has a unique id. Processed ids are kept in
    Redis (with TTL) and on the notification log row.
"""

import asyncio
import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import id_token

from entitled.config import settings
from entitled.core.errors import AuthenticationError, ValidationError
from entitled.dependencies import CurrentApp, DBSession
from entitled.schemas.common import ERROR_RESPONSES, BaseResponse, JSONObject
from entitled.services.store_notifications import StoreNotificationService
from entitled.services.webhook_notifier import get_webhook_stats

logger = logging.getLogger(__name__)

router = APIRouter(responses=ERROR_RESPONSES)

pubsub_bearer = HTTPBearer(auto_error=False)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Invalid notification payload: %s", e)
        raise ValidationError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Notification payload must be a JSON object")
    return payload


async def verify_pubsub_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(pubsub_bearer)],
) -> None:
    """Check the Pub/Sub push OIDC token when an audience is configured."""
    if not settings.GOOGLE_PUBSUB_AUDIENCE:
        return
    if credentials is None:
        raise AuthenticationError(message="Missing Pub/Sub push token")
    try:
        # google-auth fetches Google's certificates synchronously
        await asyncio.to_thread(
            id_token.verify_oauth2_token,
            credentials.credentials,
            GoogleAuthRequest(),
            settings.GOOGLE_PUBSUB_AUDIENCE,
        )
    except (ValueError, GoogleAuthError) as e:
        logger.warning("Rejected Pub/Sub push: %s", e)
        raise AuthenticationError(message="Invalid Pub/Sub push token")


@router.post("/apple", response_model=BaseResponse[JSONObject])
async def apple_notification(
    request: Request,
    db: DBSession,
):
    """
    Handle App Store Server Notifications V2.

    Body: ``{"signedPayload": "<JWS>"}``.

    Returns 200 for processed, duplicate, ignored and unsupported
    notifications; 503 when the App Store API is unreachable so Apple
    redelivers; 500 on unexpected errors.
    """
    payload = await _json_body(request)
    if not payload.get("signedPayload"):
        raise ValidationError("signedPayload is required", field="signedPayload")

    result = await StoreNotificationService(db).handle_apple(payload)
    return {"success": True, "data": result}


@router.post(
    "/google",
    response_model=BaseResponse[JSONObject],
    dependencies=[Depends(verify_pubsub_token)],
)
async def google_notification(
    request: Request,
    db: DBSession,
):
    """
    Handle Google Play Real-time Developer Notifications.

    Body: Pub/Sub push envelope ``{"message": {"data": <base64 JSON>,
    "messageId": ...}, "subscription": ...}``.
    """
    envelope = await _json_body(request)
    result = await StoreNotificationService(db).handle_google(envelope)
    return {"success": True, "data": result}


@router.get("/stats", response_model=BaseResponse[JSONObject])
async def webhook_stats(
    app: CurrentApp,
    db: DBSession,
):
    """Outbound delivery and inbound notification statistics for the calling app."""
    stats = await get_webhook_stats(db, app.app_id)
    return {"success": True, "data": stats}
