"""SVG → PNG rendering.

Content is scaled uniformly to fit inside the target canvas and centered,
leaving transparent padding on the shorter axis.  Output must be
byte-identical for identical input because cache keys do not include a
hash of the document.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

import cairosvg
from lxml import etree

from svg_rasterizer.core.errors import ProcessingError
from svg_rasterizer.workers.sanitizer import parse_svg

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"

# CSS absolute units in px at 96 dpi.
UNIT_TO_PX = {
    "": 1.0,
    "px": 1.0,
    "pt": 96.0 / 72.0,
    "pc": 16.0,
    "in": 96.0,
    "cm": 96.0 / 2.54,
    "mm": 96.0 / 25.4,
    "q": 96.0 / 101.6,
}

_LENGTH = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*([a-zA-Z]*)\s*$")
_LIST_SEPARATOR = re.compile(r"[\s,]+")


@dataclass(frozen=True)
class ViewBox:
    min_x: float
    min_y: float
    width: float
    height: float


@dataclass(frozen=True)
class Placement:
    """Where the scaled content lands on the canvas."""

    scale: float
    offset_x: float
    offset_y: float
    content_width: float
    content_height: float


def compute_placement(
    intrinsic_width: float, intrinsic_height: float, width: int, height: int
) -> Placement:
    """Aspect-fit *intrinsic* size into a *width* x *height* canvas, centered."""
    if not (math.isfinite(intrinsic_width) and math.isfinite(intrinsic_height)):
        raise ProcessingError("SVG has non-finite dimensions")
    if intrinsic_width <= 0 or intrinsic_height <= 0:
        raise ProcessingError("SVG has zero or negative dimensions")

    scale = min(width / intrinsic_width, height / intrinsic_height)
    content_width = intrinsic_width * scale
    content_height = intrinsic_height * scale
    return Placement(
        scale=scale,
        offset_x=(width - content_width) / 2,
        offset_y=(height - content_height) / 2,
        content_width=content_width,
        content_height=content_height,
    )


def intrinsic_box(root: etree._Element) -> ViewBox:
    """Return the document's user-space box: its viewBox, else width/height."""
    view_box = root.get("viewBox")
    if view_box is not None:
        parts = [p for p in _LIST_SEPARATOR.split(view_box.strip()) if p]
        if len(parts) != 4:
            raise ProcessingError(f"Invalid viewBox: {view_box!r}")
        try:
            min_x, min_y, box_width, box_height = (float(p) for p in parts)
        except ValueError as exc:
            raise ProcessingError(f"Invalid viewBox: {view_box!r}") from exc
        return ViewBox(min_x, min_y, box_width, box_height)

    return ViewBox(0.0, 0.0, _length(root.get("width")), _length(root.get("height")))


def _length(value: str | None) -> float:
    if value is None:
        raise ProcessingError("SVG has no viewBox and no width/height")
    match = _LENGTH.match(value)
    if match is None or match.group(2).lower() not in UNIT_TO_PX:
        raise ProcessingError(f"Unsupported SVG length: {value!r}")
    return float(match.group(1)) * UNIT_TO_PX[match.group(2).lower()]


def _fmt(value: float) -> str:
    text = f"{value:.9f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def _wrap(
    root: etree._Element, box: ViewBox, placement: Placement, width: int, height: int
) -> etree._Element:
    """Nest *root* inside a canvas-sized ``<svg>`` at *placement*."""
    root.set("width", _fmt(box.width))
    root.set("height", _fmt(box.height))
    for attr in ("x", "y"):
        root.attrib.pop(attr, None)

    canvas = etree.Element(f"{{{SVG_NS}}}svg", nsmap={None: SVG_NS})
    canvas.set("width", str(width))
    canvas.set("height", str(height))
    canvas.set("viewBox", f"0 0 {width} {height}")
    group = etree.SubElement(canvas, f"{{{SVG_NS}}}g")
    group.set(
        "transform",
        f"translate({_fmt(placement.offset_x)} {_fmt(placement.offset_y)}) "
        f"scale({_fmt(placement.scale)})",
    )
    group.append(root)
    return canvas


def render(svg_text: str, width: int, height: int) -> bytes:
    """Render sanitized *svg_text* onto a transparent *width* x *height* PNG.

    The document keeps its own viewBox, so percentage lengths still
    resolve against it.  It is pinned to its intrinsic size and nested
    inside a ``width`` x ``height`` outer ``<svg>`` under
    ``translate(offset) scale(scale)``.

    Raises:
        ProcessingError: the document cannot be parsed, has an unusable
            intrinsic size, or fails to render.
    """
    root = parse_svg(svg_text)
    box = intrinsic_box(root)
    placement = compute_placement(box.width, box.height, width, height)
    logger.debug(
        "Intrinsic size %sx%s, scale=%s, offset=(%s, %s)",
        box.width, box.height, placement.scale, placement.offset_x, placement.offset_y,
    )

    document = etree.tostring(_wrap(root, box, placement, width, height), encoding="utf-8")
    try:
        png = cairosvg.svg2png(
            bytestring=document,
            output_width=width,
            output_height=height,
            background_color=None,
            unsafe=False,
        )
    except Exception as exc:
        logger.warning("cairosvg failed to render document: %s", exc)
        raise ProcessingError(f"Failed to render SVG: {exc}") from exc

    logger.debug("PNG encoded, size: %d bytes", len(png))
    return png
