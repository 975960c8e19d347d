from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import AdmissionDenied, StoreError
from svg_rasterizer.models.rasterize.schemas import RenderRequest, RenderResult, ResolvedDimensions
from svg_rasterizer.repositories.cache.repository import Cache, cache_key
from svg_rasterizer.repositories.rate_limit.repository import RateLimiter
from svg_rasterizer.services.rasterize.dimensions import resolve_dimensions
from svg_rasterizer.workers import rasterizer
from svg_rasterizer.workers.fetcher import fetch_svg
from svg_rasterizer.workers.sanitizer import Sanitizer, get_sanitizer

logger = logging.getLogger(__name__)

# Cache key -> pending render shared by concurrent identical requests.
_inflight: dict[str, asyncio.Future[bytes]] = {}


class RasterizeService:
    """Per-request pipeline: admit, look up, fetch, sanitize, render, store."""

    def __init__(
        self,
        cache: Cache,
        rate_limiter: RateLimiter,
        sanitizer: Sanitizer | None = None,
        coalesce: bool | None = None,
    ) -> None:
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._sanitizer = sanitizer or get_sanitizer()
        self._coalesce = coalesce if coalesce is not None else settings.coalesce_requests

    async def rasterize(self, request: RenderRequest, scope: str) -> RenderResult:
        """Return the PNG for *request*, from the cache when possible.

        Raises:
            AdmissionDenied: *scope* is over its rate limit.
            ValidationError, UpstreamError, ProcessingError: propagated
                unchanged from the fetch, sanitize and render stages.
            StoreError: the cache could not be read.  A failed write after
                a successful render is logged and ignored.
        """
        if not await self._rate_limiter.admit(scope):
            raise AdmissionDenied()

        url = str(request.url)
        dims = resolve_dimensions(request.width, request.height)
        key = cache_key(url, dims.width, dims.height)

        cached = await self._cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for key: %s", key)
            return RenderResult(
                content=cached, width=dims.width, height=dims.height, cache_hit=True
            )
        logger.debug("Cache miss for key: %s", key)

        png = await self._run_once(key, lambda: self._render_and_store(url, dims, key))
        return RenderResult(content=png, width=dims.width, height=dims.height)

    async def _render_and_store(self, url: str, dims: ResolvedDimensions, key: str) -> bytes:
        logger.info("Converting SVG from URL: %s (%dx%d)", url, dims.width, dims.height)
        start = time.perf_counter()

        document = await fetch_svg(url)
        clean = await self._sanitizer.clean(document.text)
        png = await asyncio.to_thread(rasterizer.render, clean, dims.width, dims.height)
        logger.info(
            "SVG conversion completed in %.3fs, %d bytes", time.perf_counter() - start, len(png)
        )

        try:
            await self._cache.put(key, png, settings.cache_ttl_seconds)
        except StoreError as exc:
            logger.warning("Failed to cache result for %s (non-fatal): %s", key, exc)
        return png

    async def _run_once(self, key: str, compute: Callable[[], Awaitable[bytes]]) -> bytes:
        """Run *compute*, letting concurrent callers with the same key share it."""
        if not self._coalesce:
            return await compute()

        pending = _inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(compute())
            _inflight[key] = pending
            pending.add_done_callback(lambda task: _settle(key, task))
        else:
            logger.debug("Joining in-flight render for key: %s", key)

        # shield: a caller going away, the first one included, must not
        # cancel the render the others are waiting on
        return await asyncio.shield(pending)


def _settle(key: str, task: asyncio.Future[bytes]) -> None:
    if _inflight.get(key) is task:
        del _inflight[key]
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Shared render for %s failed: %r", key, task.exception())
