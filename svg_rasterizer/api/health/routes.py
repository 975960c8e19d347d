from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from svg_rasterizer.core.config import APP_VERSION
from svg_rasterizer.core.errors import StoreError
from svg_rasterizer.core.redis_store import redis_manager
from svg_rasterizer.models.common import HealthResponse
from svg_rasterizer.repositories.base import BaseStore
from svg_rasterizer.repositories.cache.repository import Cache
from svg_rasterizer.repositories.rate_limit.repository import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _probe(store_cls: type[BaseStore]) -> str:
    try:
        await store_cls.from_manager(redis_manager).probe()
    except (StoreError, RuntimeError) as exc:
        logger.error("Health check failed for %s store: %s", store_cls.STORE_NAME.value, exc)
        return "error"
    return "ok"


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Report store connectivity: ``ok`` when every store answers, else ``degraded``."""
    dependencies = {
        Cache.STORE_NAME.value: await _probe(Cache),
        RateLimiter.STORE_NAME.value: await _probe(RateLimiter),
    }
    status = "ok" if all(v == "ok" for v in dependencies.values()) else "degraded"
    return HealthResponse(
        status=status,
        version=APP_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )
