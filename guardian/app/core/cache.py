"""
Shared Redis connection for cross-worker chat counters.

Every helper returns None (or False) when Redis cannot be reached, and the
caller keeps going on in-process state.

    count = await incr_window("chat:<emergency>:<user>", window_seconds=60)
    if count is None:
        ...  # count in memory instead
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from guardian.app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None


async def _get_redis() -> Optional[aioredis.Redis]:
    global _redis_client
    if _redis_client is None:
        try:
            _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        except ValueError as e:
            logger.warning("Bad REDIS_URL, chat limits stay per-process: %s", e)
            return None
        logger.info("Redis client created for %s", settings.REDIS_URL.rsplit("@", 1)[-1])
    return _redis_client


async def incr_window(key: str, window_seconds: int) -> Optional[int]:
    """
    Increment a fixed-window counter and return the new value.

    The key expires ``window_seconds`` after the first hit in the window.
    Returns None when Redis cannot be reached.
    """
    client = await _get_redis()
    if not client:
        return None
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)
    except Exception as e:
        logger.warning("Redis INCR error for %s: %s", key, e)
        return None


async def ttl(key: str) -> Optional[int]:
    """Remaining lifetime of a key in seconds, or None if unknown."""
    client = await _get_redis()
    if not client:
        return None
    try:
        remaining = await client.ttl(key)
        return remaining if remaining and remaining > 0 else None
    except Exception as e:
        logger.warning("Redis TTL error for %s: %s", key, e)
        return None


async def ping_redis() -> bool:
    """True when Redis answers PING."""
    client = await _get_redis()
    if not client:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING error: %s", e)
        return False


async def close_redis() -> None:
    """Called from the application shutdown hook."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
