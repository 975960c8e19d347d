from __future__ import annotations

import logging

from redis.exceptions import RedisError

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import StoreError
from svg_rasterizer.core.stores import StoreNames
from svg_rasterizer.repositories.base import BaseStore

logger = logging.getLogger(__name__)


def cache_key(source_url: str, width: int, height: int, prefix: str | None = None) -> str:
    """Return the cache key for a render of *source_url* at *width* x *height*."""
    prefix = prefix if prefix is not None else settings.cache_key_prefix
    return f"{prefix}:{source_url}:{width}x{height}"


class Cache(BaseStore):
    """TTL-bounded blob store for rendered images (cache-aside).

    Entries are opaque bytes written with ``SET ... EX``; they are never
    invalidated explicitly and disappear only when their TTL runs out.
    """

    STORE_NAME = StoreNames.CACHE

    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes for *key*, or ``None`` if unset or expired."""
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            logger.error("Cache read failed for key=%s: %s", key, exc)
            raise StoreError("Cache read error") from exc

    async def put(self, key: str, data: bytes, ttl: int | None = None) -> None:
        """Store *data* under *key*, overwriting any entry and resetting its TTL."""
        ttl = ttl if ttl is not None else settings.cache_ttl_seconds
        try:
            await self._redis.set(key, data, ex=ttl)
        except RedisError as exc:
            logger.error("Cache write failed for key=%s: %s", key, exc)
            raise StoreError("Cache write error") from exc
