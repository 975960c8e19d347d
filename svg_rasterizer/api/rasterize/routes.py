from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from pydantic import ValidationError as PydanticValidationError

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import InternalError, ServiceError, ValidationError
from svg_rasterizer.core.redis_store import redis_manager
from svg_rasterizer.models.common import ErrorResponse
from svg_rasterizer.models.rasterize.schemas import RenderRequest
from svg_rasterizer.repositories.cache.repository import Cache
from svg_rasterizer.repositories.rate_limit.repository import GLOBAL_SCOPE, RateLimiter
from svg_rasterizer.services.rasterize.service import RasterizeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rasterize"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_service() -> RasterizeService:
    """FastAPI dependency that builds a ``RasterizeService`` for each request."""
    return RasterizeService(
        Cache.from_manager(redis_manager),
        RateLimiter.from_manager(redis_manager),
    )


def _admission_scope(request: Request) -> str:
    """Identity the rate limit is counted against."""
    if settings.rate_limit_scope == "client" and request.client is not None:
        return f"client:{request.client.host}"
    return GLOBAL_SCOPE


# ---------------------------------------------------------------------------
# GET /rasterize-svg
# ---------------------------------------------------------------------------


@router.get(
    "/rasterize-svg",
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}}},
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Render a remote SVG to PNG",
)
async def rasterize_svg(
    url: str = Query(..., description="Absolute URL of the SVG document"),
    width: int | None = Query(None, description="Output width in pixels"),
    height: int | None = Query(None, description="Output height in pixels"),
    scope: str = Depends(_admission_scope),
    service: RasterizeService = Depends(_get_service),
) -> Response:
    """Fetch the SVG at ``url`` and return it rendered as a PNG.

    The image is scaled to fit ``width`` x ``height`` (clamped to the
    configured bounds) without distortion and centered on a transparent
    canvas.

    - **200** — PNG image
    - **400** — invalid parameters, oversized or malformed SVG
    - **429** — rate limit exceeded
    - **500** — cache / rate-limit store failure
    - **502** — the origin could not be fetched
    """
    try:
        render_request = RenderRequest(url=url, width=width, height=height)
    except PydanticValidationError:
        raise ValidationError(f"Invalid URL: {url}")

    logger.info("Processing SVG request: url=%s width=%s height=%s", url, width, height)
    try:
        result = await service.rasterize(render_request, scope)
    except ServiceError as exc:
        logger.warning("GET /rasterize-svg failed for %s: %s: %s", url, exc.kind, exc)
        raise
    except Exception as exc:
        logger.exception("GET /rasterize-svg unexpected error for %s", url)
        raise InternalError() from exc

    return Response(
        content=result.content,
        media_type="image/png",
        headers={
            "Cache-Control": f"public, max-age={settings.cache_ttl_seconds}",
            "X-Cache": "HIT" if result.cache_hit else "MISS",
        },
    )
