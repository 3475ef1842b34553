"""
Cron API Endpoints
==================

Triggered by an external scheduler with ``Authorization: Bearer <CRON_SECRET>``.
"""

import logging

from fastapi import APIRouter

from entitled.dependencies import CronAuth, DBSession
from entitled.schemas.common import ERROR_RESPONSES, BaseResponse, JSONObject
from entitled.services.lifecycle import get_subscription_health, run_subscription_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[CronAuth], responses=ERROR_RESPONSES)


@router.post("/subscriptions", response_model=BaseResponse[JSONObject])
async def run_subscription_sweep(db: DBSession):
    """
    Run the subscription lifecycle sweep.

    Passes: expiring soon, trial endings, expired, grace period endings.
    Each pass commits on its own and reports processed / error counts.
    """
    summary = await run_subscription_lifecycle(db)
    logger.info(
        "Lifecycle sweep done: processed=%d errors=%d requeued=%d",
        summary["processed"],
        summary["errors"],
        summary["requeuedDeliveries"],
    )
    return {"success": True, "data": summary}


@router.get("/subscriptions/health", response_model=BaseResponse[JSONObject])
async def subscription_health(db: DBSession):
    """Subscription counts across all apps."""
    metrics = await get_subscription_health(db)
    return {"success": True, "data": metrics}
