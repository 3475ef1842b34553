"""
Redis Cache Service
===================

Redis connection management, the subscriber-info read cache and the
notification idempotency keys.

Redis is an accelerator here, never the source of truth: every operation
logs and degrades to a miss when Redis is unavailable.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from entitled.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = await redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheManager:
    """
    Redis cache manager with common operations.

    Key naming convention:
        cache:{resource}:{identifier}

    TTL Guidelines:
        - Subscriber info: SUBSCRIBER_CACHE_TTL (5 minutes)
        - Processed notification markers: NOTIFICATION_IDEMPOTENCY_TTL (7 days)
    """

    TTL_SHORT = 300  # 5 minutes

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value if exists and valid, None otherwise
        """
        try:
            client = await get_redis()
            value = await client.get(key)
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning("Cache get error for key %s: %s", key, e)
            return None

    @staticmethod
    async def set(key: str, value: Any, ttl: int = TTL_SHORT) -> bool:
        """
        Set value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        try:
            client = await get_redis()
            await client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        """Delete key from cache."""
        try:
            client = await get_redis()
            return await client.delete(key) > 0
        except Exception as e:
            logger.warning("Cache delete error for key %s: %s", key, e)
            return False

    @staticmethod
    async def exists(key: str) -> bool:
        """Check if key exists in cache."""
        try:
            client = await get_redis()
            return await client.exists(key) > 0
        except Exception as e:
            logger.warning("Cache exists error for key %s: %s", key, e)
            return False


# =============================================================================
# Cache Key Builders
# =============================================================================

class CacheKeys:
    """Cache key builders for consistent naming."""

    @staticmethod
    def subscriber_info(app_id: str, app_user_id: str) -> str:
        """Serialized subscriber info response."""
        return f"cache:subscriber:{app_id}:{app_user_id}"

    @staticmethod
    def notification(platform: str, notification_id: str) -> str:
        """Marker for a store notification that was fully processed."""
        return f"cache:notification:{platform}:{notification_id}"

    @staticmethod
    def webhook_stream() -> str:
        """Redis Stream feeding the outbound webhook delivery worker."""
        return "stream:webhooks:deliveries"

    @staticmethod
    def webhook_dlq() -> str:
        """Dead-letter stream for deliveries that exhausted their retries."""
        return "stream:webhooks:dlq"


# =============================================================================
# Cache Invalidation Helpers
# =============================================================================

class CacheInvalidator:
    """Helpers for invalidating related cache entries."""

    @staticmethod
    async def on_subscriber_change(app_id: Any, app_user_id: str, aliases: Optional[list] = None) -> None:
        """Invalidate cached subscriber info under the primary id and every alias."""
        await CacheManager.delete(CacheKeys.subscriber_info(str(app_id), app_user_id))
        for alias in aliases or []:
            await CacheManager.delete(CacheKeys.subscriber_info(str(app_id), alias))
