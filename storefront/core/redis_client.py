"""
Redis client for the storefront

Provides cross-instance webhook deduplication and the sweeper run lock.
The process owns the client lifecycle (opened in lifespan, closed on shutdown);
core components receive the client as a constructor argument.
"""
import logging
import uuid
from typing import Optional

import redis.asyncio as redis

from storefront.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured (graceful degradation).
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Falling back to in-memory.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


# ----- Webhook Dedup -----

WEBHOOK_KEY_PREFIX = "webhook"


def webhook_key(provider: str, event_id: str) -> str:
    return f"{WEBHOOK_KEY_PREFIX}:{provider}:{event_id}"


async def claim_webhook_event(client: redis.Redis, provider: str, event_id: str, ttl_seconds: int) -> bool:
    """Atomically mark an event as seen.

    SET NX EX: returns True only for the first caller inside the window.
    Errors propagate; the webhook must not be admitted on a Redis failure.
    """
    result = await client.set(webhook_key(provider, event_id), "1", nx=True, ex=ttl_seconds)
    return bool(result)


async def release_webhook_event(client: redis.Redis, provider: str, event_id: str) -> None:
    await client.delete(webhook_key(provider, event_id))


# ----- Distributed Lock -----

LOCK_KEY_PREFIX = "lock"


async def acquire_lock(client: redis.Redis, name: str, ttl_seconds: int) -> Optional[str]:
    """Try to take a named lock. Returns the owner token, or None if held elsewhere."""
    token = uuid.uuid4().hex
    acquired = await client.set(f"{LOCK_KEY_PREFIX}:{name}", token, nx=True, ex=ttl_seconds)
    return token if acquired else None


# Only delete the key if we still own it
_RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


async def release_lock(client: redis.Redis, name: str, token: str) -> bool:
    try:
        released = await client.eval(_RELEASE_LOCK_SCRIPT, 1, f"{LOCK_KEY_PREFIX}:{name}", token)
        return bool(released)
    except Exception as e:
        # Lock expires on its own TTL
        logger.warning(f"Redis lock release failed for {name}: {e}")
        return False
