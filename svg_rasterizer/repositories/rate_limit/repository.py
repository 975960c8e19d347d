from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import StoreError
from svg_rasterizer.core.stores import StoreNames
from svg_rasterizer.repositories.base import BaseStore

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


class RateLimiter(BaseStore):
    """Fixed-window admission gate backed by a Redis counter per scope.

    The counter update goes out in a single ``MULTI``/``EXEC`` round trip
    so concurrent callers never lose an increment or leave a counter
    without a TTL.

    By default the window opens with ``SET key 0 EX window NX`` followed
    by ``INCR``: the TTL is set once and never pushed back, so the counter
    resets exactly ``window_seconds`` after the first admitted call.  With
    ``sliding_ttl=True`` an ``EXPIRE`` re-applies the TTL on every call,
    and continuous traffic keeps the window from ever resetting.
    """

    STORE_NAME = StoreNames.RATE_LIMIT

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int | None = None,
        window_seconds: int | None = None,
        fail_open: bool | None = None,
        sliding_ttl: bool | None = None,
        key_prefix: str | None = None,
    ) -> None:
        super().__init__(client)
        self.max_requests = (
            max_requests if max_requests is not None else settings.rate_limit_max_requests
        )
        self.window_seconds = (
            window_seconds if window_seconds is not None else settings.rate_limit_window_seconds
        )
        self.fail_open = fail_open if fail_open is not None else settings.rate_limit_fail_open
        self.sliding_ttl = (
            sliding_ttl if sliding_ttl is not None else settings.rate_limit_sliding_ttl
        )
        self.key_prefix = key_prefix if key_prefix is not None else settings.rate_limit_key_prefix

    def key_for(self, scope: str) -> str:
        return f"{self.key_prefix}:{scope}"

    async def admit(self, scope: str = GLOBAL_SCOPE) -> bool:
        """Count one call against *scope* and return whether it is admitted.

        When the counter store is unreachable the outcome depends on
        ``fail_open``: admit and log, or raise :class:`StoreError`.
        """
        key = self.key_for(scope)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                if self.sliding_ttl:
                    pipe.incr(key)
                    pipe.expire(key, self.window_seconds)
                    count, _ = await pipe.execute()
                else:
                    # INCR keeps the TTL the window opened with
                    pipe.set(key, 0, ex=self.window_seconds, nx=True)
                    pipe.incr(key)
                    _, count = await pipe.execute()
        except RedisError as exc:
            if self.fail_open:
                logger.warning("Rate limit check failed for %s, admitting: %s", key, exc)
                return True
            logger.error("Rate limit check failed for %s: %s", key, exc)
            raise StoreError("Rate limit store error") from exc

        admitted = count <= self.max_requests
        if not admitted:
            logger.warning(
                "Rate limit exceeded for %s (%d > %d)", key, count, self.max_requests
            )
        return admitted
