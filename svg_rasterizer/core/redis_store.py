from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.stores import StoreNames

logger = logging.getLogger(__name__)


class RedisManager:
    """Singleton owner of the pooled Redis clients.

    Use the module-level ``redis_manager`` instance; do not instantiate
    directly.  The cache and the rate limiter each get their own client so
    the two stores can be pointed at different servers.

    Lifecycle::

        await redis_manager.connect()     # call once at startup
        ...
        await redis_manager.disconnect()  # call once at shutdown
    """

    _instance: RedisManager | None = None
    _clients: dict[StoreNames, Redis]

    def __new__(cls) -> RedisManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._clients = {}
        return cls._instance

    def _create_client(self, url: str) -> Redis:
        return Redis.from_url(
            url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )

    async def connect(self) -> None:
        """Open both clients and verify connectivity with a ping.

        The ping is retried with exponential backoff so the service can
        start alongside a Redis that is still coming up.
        """
        urls = {
            StoreNames.CACHE: settings.redis_url,
            StoreNames.RATE_LIMIT: settings.counter_store_url,
        }
        for name, url in urls.items():
            client = self._create_client(url)
            self._clients[name] = client
            await self._ping(client)
            logger.info("Connected to Redis %s store.", name.value)

    async def _ping(self, client: Redis) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            stop=stop_after_attempt(settings.redis_connect_retries + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await client.ping()

    async def disconnect(self) -> None:
        """Close the clients and release all pooled connections."""
        for name, client in list(self._clients.items()):
            await client.aclose()
            logger.info("Disconnected from Redis %s store.", name.value)
        self._clients.clear()

    def get_client(self, name: StoreNames) -> Redis:
        """Return the client backing the store *name*."""
        try:
            return self._clients[name]
        except KeyError:
            raise RuntimeError(
                "RedisManager is not connected. Call connect() first."
            ) from None


#: Module-level singleton; import and use this everywhere.
redis_manager: RedisManager = RedisManager()
