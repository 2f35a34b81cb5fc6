"""Optional Redis-backed response cache.

With no ``REDIS_URL`` configured the cache runs in no-cache mode: every read
is a miss and writes are dropped. Redis errors are logged and never raised,
so a cache outage degrades to uncached behaviour.
"""
from __future__ import annotations

import logging

import redis.asyncio as redis

log = logging.getLogger(__name__)


class ResponseCache:
    """Key-value cache with ``get`` / ``setex`` semantics."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or ""
        self._redis = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    async def _client(self):
        if self._redis is None:
            self._redis = await redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> str | None:
        if not self.enabled:
            return None
        try:
            client = await self._client()
            return await client.get(key)
        except Exception as exc:
            log.warning("Cache read failed for %s: %s", key, exc)
            return None

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        if not self.enabled:
            return
        try:
            client = await self._client()
            await client.setex(key, ttl_seconds, value)
        except Exception as exc:
            log.warning("Cache write failed for %s: %s", key, exc)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
