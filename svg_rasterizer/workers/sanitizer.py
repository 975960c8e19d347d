"""SVG sanitizers.

The pipeline only depends on the :class:`Sanitizer` capability
(``await clean(text) -> text``).  Two implementations ship:

- :class:`LxmlSanitizer` cleans the document in-process with lxml.
- :class:`ExternalSanitizer` pipes the document through an external
  program such as ``svg-hush``.

Either way the output is all-or-nothing: any failure raises
:class:`ProcessingError` and nothing partially cleaned is handed on.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from abc import ABC, abstractmethod

from lxml import etree

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import ProcessingError

logger = logging.getLogger(__name__)

XLINK_HREF = "{http://www.w3.org/1999/xlink}href"

# Elements that execute code or embed foreign (HTML) content.
FORBIDDEN_ELEMENTS = frozenset(
    {"script", "foreignObject", "iframe", "embed", "object", "handler", "listener"}
)

# Animation elements that can rewrite attributes at render time.
ANIMATION_ELEMENTS = frozenset({"set", "animate"})

LINK_ATTRIBUTES = ("href", XLINK_HREF, "src")
SCRIPT_SCHEMES = ("javascript:", "vbscript:", "data:text/html")
SAFE_EMBEDDED_PREFIX = "data:image/"

_CONTROL_CHARS = re.compile(r"[\x00-\x20]+")
_CSS_URL = re.compile(r"url\(\s*(['\"]?)(.*?)\1\s*\)", re.IGNORECASE | re.DOTALL)
_CSS_IMPORT = re.compile(r"@import[^;]*;?", re.IGNORECASE)
_CSS_EXPRESSION = re.compile(r"expression\s*\(", re.IGNORECASE)


def secure_parser() -> etree.XMLParser:
    """Return an XML parser that never resolves entities or touches the network.

    Parsers are not safe for concurrent use, so each call gets a fresh one.
    """
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        huge_tree=False,
        remove_pis=True,
    )


def parse_svg(text: str) -> etree._Element:
    """Parse *text* with :func:`secure_parser` and return the ``<svg>`` root."""
    try:
        root = etree.fromstring(text.encode("utf-8"), parser=secure_parser())
    except etree.XMLSyntaxError as exc:
        raise ProcessingError(f"Failed to parse SVG: {exc}") from exc
    if root is None or not isinstance(root.tag, str) or etree.QName(root).localname != "svg":
        raise ProcessingError("Document root is not an <svg> element")
    return root


class Sanitizer(ABC):
    """Capability that strips active content from an SVG document."""

    @abstractmethod
    async def clean(self, text: str) -> str:
        """Return the cleaned document.  Raises :class:`ProcessingError`."""


class LxmlSanitizer(Sanitizer):
    """In-process sanitizer.

    Removes script blocks, event handlers, script-scheme and external
    links, and entity references.  Shapes, paths, gradients, text and the
    attributes that position them are left exactly as they were.
    """

    async def clean(self, text: str) -> str:
        try:
            return await asyncio.to_thread(sanitize_svg, text)
        except ProcessingError:
            raise
        except Exception as exc:
            logger.exception("Sanitizer failed: %s", exc)
            raise ProcessingError("Failed to sanitize SVG") from exc


def sanitize_svg(text: str) -> str:
    root = parse_svg(text)

    for element in list(root.iter()):
        if element is root:
            _clean_attributes(element)
            continue
        if not isinstance(element.tag, str):
            # Entity references left unresolved by the parser.
            if isinstance(element, etree._Entity):
                _remove(element)
            continue
        name = etree.QName(element).localname
        if name in FORBIDDEN_ELEMENTS or _is_link_animation(element, name):
            _remove(element)
            continue
        if name == "style" and element.text:
            element.text = _clean_css(element.text)
        _clean_attributes(element)

    # Serializing the root alone drops the DOCTYPE and its internal subset.
    return etree.tostring(root, encoding="unicode")


def _remove(element: etree._Element) -> None:
    """Detach *element* while keeping the text that follows it."""
    parent = element.getparent()
    if parent is None:
        return
    if element.tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + element.tail
        else:
            parent.text = (parent.text or "") + element.tail
    parent.remove(element)


def _is_link_animation(element: etree._Element, name: str) -> bool:
    if name not in ANIMATION_ELEMENTS:
        return False
    target = (element.get("attributeName") or "").strip().lower()
    return target in ("href", "xlink:href", "src") or target.startswith("on")


def _clean_attributes(element: etree._Element) -> None:
    for attr in list(element.attrib):
        local = etree.QName(attr).localname
        if local.lower().startswith("on"):
            del element.attrib[attr]
        elif attr in LINK_ATTRIBUTES and not _is_safe_link(element.attrib[attr]):
            logger.debug("Dropping %s=%r", attr, element.attrib[attr][:80])
            del element.attrib[attr]
        elif local == "style":
            element.attrib[attr] = _clean_css(element.attrib[attr])


def _is_safe_link(value: str) -> bool:
    """Only same-document fragments and embedded raster images are kept."""
    normalized = _CONTROL_CHARS.sub("", value).lower()
    if normalized.startswith(SCRIPT_SCHEMES):
        return False
    return normalized.startswith("#") or normalized.startswith(SAFE_EMBEDDED_PREFIX)


def _clean_css(css: str) -> str:
    css = _CSS_IMPORT.sub("", css)
    css = _CSS_EXPRESSION.sub("invalid(", css)

    def _replace(match: re.Match) -> str:
        return match.group(0) if _is_safe_link(match.group(2)) else "none"

    return _CSS_URL.sub(_replace, css)


class ExternalSanitizer(Sanitizer):
    """Runs an external cleaner with the document on stdin.

    The cleaned SVG is read from stdout.  A missing executable, a non-zero
    exit status or a run longer than *timeout* seconds fails the request.
    """

    def __init__(self, command: str | None = None, timeout: float | None = None) -> None:
        self.command = shlex.split(command or settings.sanitizer_command)
        self.timeout = timeout if timeout is not None else settings.sanitizer_timeout

    async def clean(self, text: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Cannot start sanitizer %s: %s", self.command[0], exc)
            raise ProcessingError("SVG sanitizer is unavailable") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(text.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProcessingError("SVG sanitizer timed out") from exc

        if process.returncode != 0:
            logger.warning(
                "Sanitizer exited with %d: %s",
                process.returncode,
                stderr.decode("utf-8", "replace").strip(),
            )
            raise ProcessingError("SVG sanitizer rejected the document")
        try:
            return stdout.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProcessingError("SVG sanitizer produced invalid UTF-8") from exc


def get_sanitizer() -> Sanitizer:
    """Return the sanitizer selected by ``settings.sanitizer``."""
    if settings.sanitizer == "external":
        return ExternalSanitizer()
    return LxmlSanitizer()
