"""
Redis Client - async singleton plus the scheduler's best-effort tick lock
"""
import asyncio
import uuid
from urllib.parse import urlparse

import redis.asyncio as aioredis

from parkwash.core.config import settings
from parkwash.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:****@host:6379 for logs"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Shared client (connection pool, decoded responses)"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_lock(name: str, ttl_seconds: int) -> str | None:
    """
    SET NX EX lock. Returns the owner token, or None if someone holds it.

    Best effort only: callers must stay correct without it.
    """
    redis = await get_redis()
    token = uuid.uuid4().hex
    acquired = await redis.set(f"lock:{name}", token, nx=True, ex=ttl_seconds)
    return token if acquired else None


async def release_lock(name: str, token: str) -> None:
    """Delete the lock only if we still own it"""
    redis = await get_redis()
    key = f"lock:{name}"
    if await redis.get(key) == token:
        await redis.delete(key)
