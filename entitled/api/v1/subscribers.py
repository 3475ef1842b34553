"""
Subscribers API Endpoints
=========================

Subscriber info, attributes, aliases and manual entitlement grants.
"""

import logging

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder

from entitled.config import settings
from entitled.dependencies import CurrentApp, DBSession
from entitled.schemas.common import ERROR_RESPONSES
from entitled.schemas.subscribers import (
    AliasRequest,
    AttributesRequest,
    EntitlementChangeResponse,
    GrantEntitlementRequest,
    SubscriberResponse,
)
from entitled.services.cache import CacheInvalidator, CacheKeys, CacheManager
from entitled.services.entitlements import EntitlementDeriver
from entitled.services.subscribers import SubscriberService
from entitled.services.webhook_notifier import WebhookDispatcher, WebhookEventType

logger = logging.getLogger(__name__)

router = APIRouter(responses=ERROR_RESPONSES)


@router.get(
    "/{app_user_id}",
    response_model=SubscriberResponse,
)
async def get_subscriber(
    app_user_id: str,
    app: CurrentApp,
    db: DBSession,
):
    """
    Get subscriber info: entitlements, subscriptions and purchases.

    Served from cache when available (invalidated on every change).
    """
    cache_key = CacheKeys.subscriber_info(str(app.app_id), app_user_id)
    cached = await CacheManager.get(cache_key)
    if cached is not None:
        return SubscriberResponse(data=cached)

    service = SubscriberService(db)
    subscriber = await service.get_or_404(app, app_user_id)
    info = jsonable_encoder(await service.get_subscriber_info(subscriber))

    await CacheManager.set(cache_key, info, ttl=settings.SUBSCRIBER_CACHE_TTL)
    return SubscriberResponse(data=info)


@router.post(
    "/{app_user_id}/attributes",
    response_model=SubscriberResponse,
)
async def update_attributes(
    app_user_id: str,
    request: AttributesRequest,
    app: CurrentApp,
    db: DBSession,
):
    """Merge subscriber attributes. A null value deletes the key."""
    service = SubscriberService(db)
    dispatcher = WebhookDispatcher(db)

    subscriber, created = await service.get_or_create(app, app_user_id)
    if created:
        dispatcher.record(app, WebhookEventType.SUBSCRIBER_CREATED, subscriber, {})
    attributes = await service.update_attributes(subscriber, request.attributes)
    dispatcher.record(
        app,
        WebhookEventType.SUBSCRIBER_UPDATED,
        subscriber,
        {"attributes": attributes, "changed": sorted(request.attributes)},
    )
    await db.commit()

    await dispatcher.flush()
    await CacheInvalidator.on_subscriber_change(app.app_id, subscriber.app_user_id, subscriber.aliases)
    return SubscriberResponse(data={"appUserId": subscriber.app_user_id, "attributes": attributes})


@router.post(
    "/{app_user_id}/alias",
    response_model=SubscriberResponse,
)
async def add_alias(
    app_user_id: str,
    request: AliasRequest,
    app: CurrentApp,
    db: DBSession,
):
    """Record another app user id for this subscriber."""
    service = SubscriberService(db)
    subscriber = await service.get_or_404(app, app_user_id)
    aliases = await service.add_alias(subscriber, request.alias)
    await db.commit()

    await CacheInvalidator.on_subscriber_change(app.app_id, subscriber.app_user_id, aliases)
    return SubscriberResponse(data={"appUserId": subscriber.app_user_id, "aliases": aliases})


@router.post(
    "/{app_user_id}/entitlements/{identifier}",
    response_model=EntitlementChangeResponse,
)
async def grant_entitlement(
    app_user_id: str,
    identifier: str,
    request: GrantEntitlementRequest,
    app: CurrentApp,
    db: DBSession,
):
    """
    Grant an entitlement by hand (support or promotion).

    The grant survives store-driven refreshes until it expires or is revoked.
    """
    subscriber = await SubscriberService(db).get_or_404(app, app_user_id)
    deriver = EntitlementDeriver(db)
    dispatcher = WebhookDispatcher(db)

    grant, newly_active = await deriver.grant_manual(
        subscriber,
        identifier,
        expires_date=request.expires_date,
        granted_by=request.granted_by,
        reason=request.reason,
        source=request.grant_source(),
    )
    if newly_active:
        dispatcher.record(
            app,
            WebhookEventType.ENTITLEMENT_GRANTED,
            subscriber,
            {"entitlementIdentifier": identifier, "grantSource": grant.grant_source.value},
        )
    await db.commit()

    await dispatcher.flush()
    await CacheInvalidator.on_subscriber_change(app.app_id, subscriber.app_user_id, subscriber.aliases)
    logger.info("Entitlement %s granted to %s by %s", identifier, app_user_id, request.granted_by)
    return EntitlementChangeResponse(
        data={
            "entitlementIdentifier": identifier,
            "isActive": True,
            "expiresDate": grant.expires_date,
            "grantSource": grant.grant_source.value,
        },
        message="Entitlement granted",
    )


@router.delete(
    "/{app_user_id}/entitlements/{identifier}",
    response_model=EntitlementChangeResponse,
)
async def revoke_entitlement(
    app_user_id: str,
    identifier: str,
    app: CurrentApp,
    db: DBSession,
):
    """
    Revoke an entitlement by hand.

    A grant backed by a live store purchase is restored by the next refresh.
    """
    subscriber = await SubscriberService(db).get_or_404(app, app_user_id)
    dispatcher = WebhookDispatcher(db)

    revoked = await EntitlementDeriver(db).revoke_manual(subscriber, identifier)
    if revoked:
        dispatcher.record(
            app,
            WebhookEventType.ENTITLEMENT_REVOKED,
            subscriber,
            {"entitlementIdentifier": identifier, "grantSource": "manual"},
        )
    await db.commit()

    await dispatcher.flush()
    await CacheInvalidator.on_subscriber_change(app.app_id, subscriber.app_user_id, subscriber.aliases)
    return EntitlementChangeResponse(
        data={"entitlementIdentifier": identifier, "isActive": False, "revoked": revoked},
        message="Entitlement revoked" if revoked else "Entitlement was not active",
    )
