"""
Redis client singleton for debounce persistence and hold tracking.

Redis Key Patterns:
    - Pending debounce batches: debounce:pending:{contact_id} (TTL 5 min)
    - Contacts with a live hold: holds:active (set)
"""

import logging
from functools import lru_cache

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError

from shared.config import get_settings

ACTIVE_HOLDS_KEY = "holds:active"

logger = logging.getLogger(__name__)


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance.

    Connection pooling, retry on timeout and periodic health checks are
    configured here so callers never build their own clients.
    """
    settings = get_settings()

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        logger.info(f"Redis client initialized: {settings.REDIS_URL}")
        return client

    except RedisConnectionError as e:
        logger.error(f"Redis connection failed: {e}", exc_info=True)
        raise


async def track_active_hold(contact_id: str) -> None:
    """Register a contact whose hold must be swept by the expiration worker."""
    await get_redis_client().sadd(ACTIVE_HOLDS_KEY, contact_id)


async def untrack_active_hold(contact_id: str) -> None:
    await get_redis_client().srem(ACTIVE_HOLDS_KEY, contact_id)


async def get_active_hold_contacts() -> list[str]:
    members = await get_redis_client().smembers(ACTIVE_HOLDS_KEY)
    return sorted(members)
