"""
Webhook Deduplicator

At-most-once admission of (provider, event id) inside the dedup window. The
check and the mark are one atomic step (Redis SET NX EX, or the in-memory
equivalent), so concurrent deliveries of the same event admit exactly one.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from storefront.core.redis_client import claim_webhook_event, release_webhook_event

logger = logging.getLogger(__name__)


class DedupStore(ABC):

    @abstractmethod
    async def claim(self, provider: str, event_id: str, ttl_seconds: int) -> bool:
        pass

    @abstractmethod
    async def release(self, provider: str, event_id: str) -> None:
        pass


class RedisDedupStore(DedupStore):
    """Shared across instances. Redis errors propagate (fail closed)."""

    def __init__(self, client: redis.Redis):
        self.client = client

    async def claim(self, provider: str, event_id: str, ttl_seconds: int) -> bool:
        return await claim_webhook_event(self.client, provider, event_id, ttl_seconds)

    async def release(self, provider: str, event_id: str) -> None:
        await release_webhook_event(self.client, provider, event_id)


class MemoryDedupStore(DedupStore):
    """Single-process store with the same expiry semantics."""

    def __init__(self):
        self._seen: Dict[Tuple[str, str], float] = {}
        self._lock = asyncio.Lock()

    async def claim(self, provider: str, event_id: str, ttl_seconds: int) -> bool:
        key = (provider, event_id)
        async with self._lock:
            now = time.monotonic()
            expires_at = self._seen.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._seen[key] = now + ttl_seconds
            self._evict(now)
            return True

    async def release(self, provider: str, event_id: str) -> None:
        async with self._lock:
            self._seen.pop((provider, event_id), None)

    def _evict(self, now: float) -> None:
        expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]


class WebhookDeduplicator:

    def __init__(self, store: DedupStore, window_hours: int = 24):
        self.store = store
        self.ttl_seconds = window_hours * 3600

    async def admit(self, provider: str, event_id: str) -> bool:
        """True only for the first sighting of this event inside the window."""
        admitted = await self.store.claim(provider, event_id, self.ttl_seconds)
        if not admitted:
            logger.info(f"Duplicate webhook {provider}:{event_id} ignored")
        return admitted

    async def forget(self, provider: str, event_id: str) -> None:
        """Give the slot back so a provider retry is admitted again."""
        await self.store.release(provider, event_id)
        logger.info(f"Released dedup slot for webhook {provider}:{event_id}")


def build_deduplicator(client: Optional[redis.Redis], window_hours: int) -> WebhookDeduplicator:
    if client is None:
        logger.warning("REDIS_URL not configured; webhook dedup is process-local")
        return WebhookDeduplicator(MemoryDedupStore(), window_hours)
    return WebhookDeduplicator(RedisDedupStore(client), window_hours)
