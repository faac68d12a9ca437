# --- START OF FILE: src/healguard/infrastructure/cache.py ---
"""
Shared TTL cache on Redis.

Every instance of the service talks to the same Redis, so an invalidation issued by one
worker is visible to all of them. Redis errors are logged and behave like a cache miss.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from healguard.config import settings

log = logging.getLogger(__name__)


class RedisCache:
    def __init__(self, client: Optional[Any] = None, redis_url: Optional[str] = None,
                 prefix: Optional[str] = None, default_ttl: Optional[int] = None):
        if client is None:
            url = redis_url or settings.REDIS_URL
            client = redis.from_url(url, decode_responses=True) if url else None
        self.redis = client
        self.prefix = prefix or settings.CACHE_PREFIX
        self.default_ttl = default_ttl if default_ttl is not None else settings.CACHE_TTL_SECONDS

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            data = await self.redis.get(self._key(key))
            if data is None:
                return None
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            return json.loads(data)
        except Exception as e:
            log.warning(f"Cache get failed for '{key}': {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if self.redis is None:
            return
        try:
            serialized = json.dumps(value, default=str)
            await self.redis.setex(self._key(key), ttl or self.default_ttl, serialized)
        except Exception as e:
            log.warning(f"Cache set failed for '{key}': {e}")

    async def invalidate(self, key: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(self._key(key))
        except Exception as e:
            log.warning(f"Cache invalidate failed for '{key}': {e}")

    async def invalidate_prefix(self, prefix: str = "") -> int:
        """Deletes every key under `prefix` (all keys of this cache when empty). Returns the count."""
        if self.redis is None:
            return 0
        removed = 0
        try:
            batch = []
            async for key in self.redis.scan_iter(match=f"{self._key(prefix)}*", count=200):
                batch.append(key)
                if len(batch) >= 200:
                    removed += await self.redis.delete(*batch)
                    batch = []
            if batch:
                removed += await self.redis.delete(*batch)
        except Exception as e:
            log.warning(f"Cache prefix invalidation failed for '{prefix}': {e}")
        return removed

    async def ping(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            log.warning(f"Cache ping failed: {e}")
            return False

    async def close(self) -> None:
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as e:
                log.debug(f"Cache close: {e}")


def stats_key(owner_id: str, view: str, hours: int) -> str:
    return f"stats:{owner_id}:{view}:{hours}"


def stats_prefix(owner_id: str) -> str:
    return f"stats:{owner_id}:"
# --- END OF FILE ---
