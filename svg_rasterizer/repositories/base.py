"""Base class for the Redis-backed stores.

Every store in this project extends ``BaseStore``.

Adding a new store:
    1. Add the store name to ``StoreNames``.
    2. Subclass ``BaseStore`` and set ``STORE_NAME``.
    3. Build it with ``from_manager(redis_manager)`` wherever it is needed.

Example::

    class SessionStore(BaseStore):
        STORE_NAME = StoreNames.SESSIONS

        async def touch(self, session_id: str) -> None:
            await self._redis.expire(session_id, 3600)
"""

from __future__ import annotations

import logging
from abc import ABC
from typing import ClassVar, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from svg_rasterizer.core.errors import StoreError
from svg_rasterizer.core.redis_store import RedisManager
from svg_rasterizer.core.stores import StoreNames

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseStore")


class BaseStore(ABC):
    """Base class that wires a store to its Redis client.

    Subclasses declare ``STORE_NAME``, the ``StoreNames`` member whose
    client they use.  The ``from_manager`` classmethod is the standard
    factory used by the API dependencies and the health check.
    """

    STORE_NAME: ClassVar[StoreNames]

    def __init__(self, client: Redis) -> None:
        self._redis = client

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_manager(cls: type[T], manager: RedisManager, **kwargs) -> T:
        """Instantiate the store using the live ``RedisManager``.

        Usage::

            cache = Cache.from_manager(redis_manager)
        """
        return cls(manager.get_client(cls.STORE_NAME), **kwargs)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def probe(self) -> None:
        """Ping the backing server.  Raises :class:`StoreError` if unreachable."""
        try:
            await self._redis.ping()
        except RedisError as exc:
            logger.error("Redis %s store probe failed: %s", self.STORE_NAME.value, exc)
            raise StoreError(f"{self.STORE_NAME.value} store unreachable") from exc
