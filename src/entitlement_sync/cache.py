"""Redis caching utilities.

Every helper here is best effort: Redis errors are logged and reported as a
miss or a no-op, never raised.
"""

from typing import Any

import structlog
from pydantic import BaseModel

from entitlement_sync.config import settings
from entitlement_sync.redis_client import RedisClient

logger = structlog.get_logger()

# Outlives every entry keyed by a generation, so an expired counter cannot revive one
GENERATION_TTL = 86400


class _CacheClientManager:
    """Manager for shared Redis client with lazy initialization."""

    _instance: RedisClient | None = None

    @classmethod
    async def get(cls) -> RedisClient:
        """Get or create the Redis cache client."""
        if cls._instance is None:
            client = RedisClient(settings.REDIS_URL)
            await client.connect()
            cls._instance = client
        return cls._instance

    @classmethod
    async def close(cls) -> None:
        if cls._instance is not None:
            await cls._instance.disconnect()
            cls._instance = None


async def get_cache_client() -> RedisClient:
    """Get the Redis cache client, initializing if needed."""
    return await _CacheClientManager.get()


async def close_cache_client() -> None:
    await _CacheClientManager.close()


async def cache_get(key: str) -> Any | None:
    """Get a value from cache by full key."""
    try:
        client = await get_cache_client()
        result = await client.get_json(key)
    except Exception as e:
        logger.warning("Cache get error", key=key, error=str(e))
        return None
    else:
        return result


async def cache_set(key: str, value: Any, ttl: int = 300) -> bool:
    """Set a value in cache.

    Args:
        key: Cache key
        value: Value to cache (will be JSON serialized)
        ttl: Time-to-live in seconds

    Returns:
        True if successful
    """
    result = False
    try:
        client = await get_cache_client()
        cache_data = value.model_dump(mode="json") if isinstance(value, BaseModel) else value
        await client.set_json(key, cache_data, ex=ttl)
        result = True
    except Exception as e:
        logger.warning("Cache set error", key=key, error=str(e))
    return result


async def cache_generation(key: str) -> int | None:
    """Read a generation counter; a missing key is generation 0, a Redis error is None."""
    try:
        client = await get_cache_client()
        value = await client.get(key)
    except Exception as e:
        logger.warning("Cache generation read error", key=key, error=str(e))
        return None
    return int(value) if value else 0


async def bump_generation(key: str, ttl: int = GENERATION_TTL) -> int | None:
    """Advance a generation counter so entries built under older generations go unread."""
    try:
        client = await get_cache_client()
        return await client.incr(key, ex=ttl)
    except Exception as e:
        logger.warning("Cache generation bump error", key=key, error=str(e))
        return None


async def invalidate_pattern(pattern: str) -> int:
    """Invalidate all cache keys matching a pattern.

    Args:
        pattern: Redis pattern relative to CACHE_PREFIX (e.g., "billing:audit:<user>:*")

    Returns:
        Number of keys deleted
    """
    deleted_count = 0
    try:
        client = await get_cache_client()
        full_pattern = f"{settings.CACHE_PREFIX}{pattern}"

        # SCAN instead of KEYS to avoid blocking Redis
        cursor = 0
        while True:
            cursor, keys = await client.client.scan(cursor, match=full_pattern, count=100)
            if keys:
                deleted_count += await client.delete(*keys)
            if cursor == 0:
                break

        if deleted_count:
            logger.debug("Cache pattern invalidated", pattern=full_pattern, count=deleted_count)
    except Exception as e:
        logger.warning("Cache pattern invalidation error", error=str(e))
    return deleted_count


# Cache key builders


def billing_generation_key(user_id: str) -> str:
    """Build key of the counter bumped on every billing write for a user."""
    return f"{settings.CACHE_PREFIX}billing:gen:{user_id}"


def billing_status_key(user_id: str, generation: int) -> str:
    """Build cache key for a user's entitlement view."""
    return f"{settings.CACHE_PREFIX}billing:status:{user_id}:g{generation}"


def billing_audit_key(user_id: str, generation: int, limit: int) -> str:
    """Build cache key for a page of a user's audit log."""
    return f"{settings.CACHE_PREFIX}billing:audit:{user_id}:g{generation}:limit:{limit}"


def billing_status_pattern(user_id: str) -> str:
    """Pattern (without CACHE_PREFIX) matching every status entry of a user."""
    return f"billing:status:{user_id}:*"


def billing_audit_pattern(user_id: str) -> str:
    """Pattern (without CACHE_PREFIX) matching all audit pages of a user."""
    return f"billing:audit:{user_id}:*"
