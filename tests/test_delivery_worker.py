"""
Webhook Delivery Worker Tests
=============================

Tests for stream message handling, dead-lettering and pending reclaim.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from entitled.services.delivery_worker import (
    CONSUMER_GROUP,
    DLQ_STREAM,
    MAX_RETRIES,
    RECLAIM_IDLE_MS,
    STREAM_KEY,
    WebhookDeliveryWorker,
)
from entitled.services.webhook_notifier import DeliveryResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _worker(result=None, error=None):
    notifier = MagicMock()
    notifier.deliver_by_id = AsyncMock(return_value=result, side_effect=error)
    return WebhookDeliveryWorker(notifier=notifier), notifier


def _fields(delivery_id=None):
    return {"delivery_id": str(delivery_id or uuid.uuid4())}


# ---------------------------------------------------------------------------
# Message handling
# ---------------------------------------------------------------------------

class TestHandleMessage:
    """Tests for WebhookDeliveryWorker._handle_message"""

    @pytest.mark.asyncio
    async def test_delivered_message_is_acked(self, mock_redis):
        delivery_id = uuid.uuid4()
        worker, notifier = _worker(DeliveryResult(success=True, attempts=1, status_code=200))

        await worker._handle_message(mock_redis, "1-0", _fields(delivery_id))

        notifier.deliver_by_id.assert_awaited_once_with(delivery_id)
        mock_redis.xack.assert_awaited_once_with(STREAM_KEY, CONSUMER_GROUP, "1-0")
        mock_redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_delivery_goes_to_dlq(self, mock_redis):
        worker, _ = _worker(DeliveryResult(success=False, attempts=3, status_code=500, error="HTTP 500"))
        fields = _fields()

        await worker._handle_message(mock_redis, "1-0", fields)

        stream, entry = mock_redis.xadd.await_args.args
        assert stream == DLQ_STREAM
        assert entry == {**fields, "original_id": "1-0", "error": "HTTP 500"}
        mock_redis.xack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skipped_delivery_is_acked_without_dlq(self, mock_redis):
        worker, _ = _worker(DeliveryResult(success=True, attempts=0, skipped=True))

        await worker._handle_message(mock_redis, "1-0", _fields())

        mock_redis.xack.assert_awaited_once_with(STREAM_KEY, CONSUMER_GROUP, "1-0")
        mock_redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_or_settled_delivery_is_acked(self, mock_redis):
        worker, _ = _worker(None)

        await worker._handle_message(mock_redis, "1-0", _fields())

        mock_redis.xack.assert_awaited_once()
        mock_redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_delivery_id_is_skipped(self, mock_redis):
        worker, notifier = _worker()

        await worker._handle_message(mock_redis, "1-0", {"delivery_id": "not-a-uuid"})

        notifier.deliver_by_id.assert_not_awaited()
        mock_redis.xack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_leaves_message_pending(self, mock_redis):
        worker, _ = _worker(error=RuntimeError("database unavailable"))

        await worker._handle_message(mock_redis, "1-0", _fields())

        mock_redis.xack.assert_not_awaited()


# ---------------------------------------------------------------------------
# Pending reclaim
# ---------------------------------------------------------------------------

class TestReclaimPending:
    """Tests for WebhookDeliveryWorker._reclaim_pending"""

    @pytest.mark.asyncio
    async def test_poison_message_moves_to_dlq(self, mock_redis):
        fields = _fields()
        mock_redis.xpending_range.return_value = [
            {"message_id": "5-0", "consumer": "worker-1", "time_since_delivered": 120000,
             "times_delivered": MAX_RETRIES},
        ]
        mock_redis.xrange.return_value = [("5-0", fields)]
        worker, notifier = _worker()

        await worker._reclaim_pending()

        stream, entry = mock_redis.xadd.await_args.args
        assert stream == DLQ_STREAM
        assert entry["original_id"] == "5-0"
        assert "5 deliveries" in entry["error"]
        mock_redis.xack.assert_awaited_once_with(STREAM_KEY, CONSUMER_GROUP, "5-0")
        notifier.deliver_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_idle_message_is_claimed_and_retried(self, mock_redis):
        fields = _fields()
        mock_redis.xpending_range.return_value = [
            {"message_id": "6-0", "consumer": "worker-1", "time_since_delivered": RECLAIM_IDLE_MS + 1,
             "times_delivered": 2},
            {"message_id": "7-0", "consumer": "worker-1", "time_since_delivered": 10,
             "times_delivered": 1},
        ]
        mock_redis.xclaim.return_value = [("6-0", fields)]
        worker, notifier = _worker(DeliveryResult(success=True, attempts=1, status_code=200))

        await worker._reclaim_pending()

        mock_redis.xclaim.assert_awaited_once()
        assert mock_redis.xclaim.await_args.kwargs["message_ids"] == ["6-0"]
        notifier.deliver_by_id.assert_awaited_once()
        mock_redis.xack.assert_awaited_once_with(STREAM_KEY, CONSUMER_GROUP, "6-0")

    @pytest.mark.asyncio
    async def test_xpending_failure_is_tolerated(self, mock_redis):
        mock_redis.xpending_range.side_effect = ConnectionError("redis down")
        worker, notifier = _worker()

        await worker._reclaim_pending()

        notifier.deliver_by_id.assert_not_awaited()


class TestReadAndProcess:
    """Tests for WebhookDeliveryWorker._read_and_process"""

    @pytest.mark.asyncio
    async def test_batch_is_processed(self, mock_redis):
        first, second = _fields(), _fields()
        mock_redis.xreadgroup.return_value = [(STREAM_KEY, [("1-0", first), ("2-0", second)])]
        worker, notifier = _worker(DeliveryResult(success=True, attempts=1, status_code=200))

        await worker._read_and_process()

        assert notifier.deliver_by_id.await_count == 2
        assert mock_redis.xack.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_read(self, mock_redis):
        mock_redis.xreadgroup.return_value = []
        worker, notifier = _worker()

        await worker._read_and_process()

        notifier.deliver_by_id.assert_not_awaited()
