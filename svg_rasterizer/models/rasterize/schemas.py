from __future__ import annotations

from pydantic import BaseModel, HttpUrl


class RenderRequest(BaseModel):
    """Query parameters of GET /rasterize-svg."""

    url: HttpUrl
    width: int | None = None
    height: int | None = None


class ResolvedDimensions(BaseModel):
    """Output size after clamping to the configured bounds."""

    width: int
    height: int


class RenderResult(BaseModel):
    """Rendered PNG plus whether it was served from the cache."""

    content: bytes
    width: int
    height: int
    cache_hit: bool = False
