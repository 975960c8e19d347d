from __future__ import annotations

from svg_rasterizer.core.config import Settings, settings as default_settings
from svg_rasterizer.models.rasterize.schemas import ResolvedDimensions


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))


def resolve_dimensions(
    width: int | None, height: int | None, config: Settings | None = None
) -> ResolvedDimensions:
    """Clamp the requested size, or the configured default, into bounds."""
    config = config or default_settings
    w = width if width is not None else config.default_width
    h = height if height is not None else config.default_height
    return ResolvedDimensions(
        width=_clamp(w, config.min_dimension, config.max_width),
        height=_clamp(h, config.min_dimension, config.max_height),
    )
