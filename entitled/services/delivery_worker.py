"""
Webhook Delivery Worker
=======================

Background asyncio worker that consumes delivery ids from a Redis Stream
(``stream:webhooks:deliveries``) and POSTs the stored events to the
owning app.

Lifecycle:
    1. ``start()`` is called during the FastAPI lifespan startup.
    2. The worker creates a consumer group (idempotent) and enters
       an infinite read loop (``_process_loop``).
    3. ``stop()`` is called during shutdown; it signals the loop to
       exit and makes one last pass over pending messages.

Retry / DLQ:
    - ``WebhookNotifier`` retries each delivery with backoff. When every
      attempt fails the row is marked ``failed`` and the message is copied
      to the dead-letter stream (``stream:webhooks:dlq``) and ACKed.
    - An unexpected error (database down) leaves the message un-ACKed; it
      is claimed again on a later pass and moved to the DLQ after
      ``MAX_RETRIES`` deliveries.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitled.db.base import utcnow
from entitled.models.webhook import DeliveryStatus, WebhookDelivery
from entitled.services.cache import CacheKeys, get_redis
from entitled.services.webhook_notifier import WebhookNotifier, enqueue_delivery

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STREAM_KEY = CacheKeys.webhook_stream()
DLQ_STREAM = CacheKeys.webhook_dlq()
CONSUMER_GROUP = "webhook-workers"
CONSUMER_NAME = "worker-1"
MAX_RETRIES = 5
BLOCK_MS = 1000  # how long XREADGROUP blocks before returning empty
BATCH_SIZE = 20  # max messages per XREADGROUP call
RECLAIM_IDLE_MS = 60_000  # pending messages idle this long are retried
REQUEUE_AFTER = timedelta(minutes=10)


# ---------------------------------------------------------------------------
# WebhookDeliveryWorker
# ---------------------------------------------------------------------------

class WebhookDeliveryWorker:
    """Background worker that drains the webhook delivery stream."""

    def __init__(self, notifier: Optional[WebhookNotifier] = None) -> None:
        self.notifier = notifier or WebhookNotifier()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Create consumer group and start the processing loop."""
        try:
            client = await get_redis()
            # XGROUP CREATE with MKSTREAM fails with BUSYGROUP when it exists
            try:
                await client.xgroup_create(
                    STREAM_KEY, CONSUMER_GROUP, id="0", mkstream=True,
                )
                logger.info("Created consumer group '%s'", CONSUMER_GROUP)
            except Exception as exc:
                logger.debug("Consumer group '%s' not created: %s", CONSUMER_GROUP, exc)

            self._running = True
            self._task = asyncio.create_task(self._process_loop())
            logger.info("WebhookDeliveryWorker started")
        except Exception as exc:
            logger.error("WebhookDeliveryWorker failed to start: %s", exc)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("WebhookDeliveryWorker did not stop in time; cancelling")
                self._task.cancel()
            except Exception as exc:
                logger.error("WebhookDeliveryWorker stopped with error: %s", exc)
        logger.info("WebhookDeliveryWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _process_loop(self) -> None:
        """
        Continuously read from the stream and process messages.

        On each iteration we first deal with pending messages that have
        been idle for too long, then read new messages.
        """
        while self._running:
            try:
                await self._reclaim_pending()
                await self._read_and_process()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("WebhookDeliveryWorker loop error: %s", exc)
                await asyncio.sleep(1)  # back off on unexpected errors

        # Drain pass
        try:
            await self._reclaim_pending()
        except Exception as exc:
            logger.warning("Final pending pass failed: %s", exc)

    async def _read_and_process(self) -> None:
        """Read a batch of new messages and process them."""
        client = await get_redis()
        messages = await client.xreadgroup(
            CONSUMER_GROUP,
            CONSUMER_NAME,
            {STREAM_KEY: ">"},
            count=BATCH_SIZE,
            block=BLOCK_MS,
        )
        if not messages:
            return

        for _stream_name, entries in messages:
            for msg_id, fields in entries:
                await self._handle_message(client, msg_id, fields)

    async def _reclaim_pending(self) -> None:
        """
        Move messages delivered ``MAX_RETRIES`` times to the DLQ and retry
        the other pending messages that have been idle long enough.
        """
        client = await get_redis()
        try:
            pending = await client.xpending_range(
                STREAM_KEY, CONSUMER_GROUP, "-", "+", count=BATCH_SIZE,
            )
        except Exception as exc:
            logger.debug("XPENDING failed: %s", exc)
            return

        for entry in pending:
            msg_id = entry["message_id"]
            times_delivered = entry["times_delivered"]

            if times_delivered >= MAX_RETRIES:
                try:
                    raw_msgs = await client.xrange(STREAM_KEY, msg_id, msg_id)
                    if raw_msgs:
                        _, fields = raw_msgs[0]
                        await self._dead_letter(
                            client, msg_id, fields, f"gave up after {times_delivered} deliveries",
                        )
                    await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
                    logger.warning(
                        "Moved message %s to DLQ after %d retries",
                        msg_id,
                        times_delivered,
                    )
                except Exception as exc:
                    logger.error("DLQ move error for %s: %s", msg_id, exc)
                continue

            if entry.get("time_since_delivered", 0) < RECLAIM_IDLE_MS:
                continue
            claimed = await client.xclaim(
                STREAM_KEY,
                CONSUMER_GROUP,
                CONSUMER_NAME,
                min_idle_time=RECLAIM_IDLE_MS,
                message_ids=[msg_id],
            )
            for claimed_id, fields in claimed:
                await self._handle_message(client, claimed_id, fields)

    # -- message handler ---------------------------------------------------

    async def _handle_message(
        self,
        client: Any,
        msg_id: str,
        fields: dict,
    ) -> None:
        """Deliver one event, ACK when the delivery reached a final state."""
        raw_id = fields.get("delivery_id", "")
        try:
            delivery_id = uuid.UUID(raw_id)
        except ValueError:
            logger.error("Bad delivery id %r in message %s, ACKing to skip", raw_id, msg_id)
            await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
            return

        try:
            result = await self.notifier.deliver_by_id(delivery_id)
        except Exception as exc:
            # Leave un-ACKed for retry on a later _reclaim_pending pass
            logger.error("Delivery %s failed (message %s): %s", delivery_id, msg_id, exc)
            return

        if result is not None and not result.success:
            await self._dead_letter(client, msg_id, fields, result.error or "delivery failed")
        await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)

    @staticmethod
    async def _dead_letter(client: Any, msg_id: str, fields: dict, reason: str) -> None:
        entry = dict(fields)
        entry["original_id"] = msg_id
        entry["error"] = reason[:500]
        await client.xadd(DLQ_STREAM, entry, maxlen=5000, approximate=True)


# ---------------------------------------------------------------------------
# Re-enqueueing
# ---------------------------------------------------------------------------

async def requeue_pending_deliveries(
    db: AsyncSession,
    older_than: timedelta = REQUEUE_AFTER,
    limit: int = 500,
) -> int:
    """
    Push pending deliveries that never made it onto the stream (Redis was
    down at commit time) back onto it.

    Returns:
        Number of delivery ids enqueued.
    """
    cutoff = utcnow() - older_than
    result = await db.execute(
        select(WebhookDelivery.delivery_id)
        .where(
            WebhookDelivery.status == DeliveryStatus.PENDING,
            WebhookDelivery.created_at <= cutoff,
        )
        .order_by(WebhookDelivery.created_at)
        .limit(limit)
    )
    enqueued = 0
    for delivery_id in result.scalars():
        if await enqueue_delivery(delivery_id):
            enqueued += 1
    if enqueued:
        logger.info("Re-enqueued %d pending webhook deliveries", enqueued)
    return enqueued
