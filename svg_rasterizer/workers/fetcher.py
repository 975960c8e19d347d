"""Async SVG fetcher.

Responsible solely for retrieving the source document from its origin
while keeping the amount of data read bounded.

Uses httpx.AsyncClient which is meant to be long-lived and reused.
A single shared client is managed by the module; see ``get_http_client``
and ``close_http_client`` for lifecycle hooks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import UpstreamError, ValidationError
from svg_rasterizer.models.rasterize.document import FetchedDocument

logger = logging.getLogger(__name__)

SVG_ROOT_MARKER = "<svg"

# Module-level shared client
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared AsyncClient.  Creates one if missing."""
    global _http_client  # noqa: PLW0603
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.fetch_timeout),
            follow_redirects=True,
            verify=settings.http_verify_ssl,
            headers={"User-Agent": "SvgRasterizer/1.0"},
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared AsyncClient gracefully."""
    global _http_client  # noqa: PLW0603
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
        logger.info("HTTP client closed.")


async def fetch_svg(url: str) -> FetchedDocument:
    """Fetch the SVG document at *url*.

    The whole exchange (preflight included) is bounded by
    ``settings.fetch_timeout``; httpx's own timeout only applies per
    operation, which a slow-drip origin could otherwise stretch forever.

    Raises:
        ValidationError: the document is too large, not UTF-8, not SVG,
            or the URL itself is unusable.
        UpstreamError: the origin could not be reached, answered with an
            error status, or did not finish in time.
    """
    try:
        return await asyncio.wait_for(_do_fetch(url), timeout=settings.fetch_timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("Fetching %s timed out after %ss", url, settings.fetch_timeout)
        raise UpstreamError(f"Timed out fetching {url}") from exc


async def _do_fetch(url: str) -> FetchedDocument:
    client = get_http_client()
    try:
        if settings.fetch_preflight:
            await _preflight(client, url)
        content, content_type = await _stream_body(client, url)
    except httpx.InvalidURL as exc:
        raise ValidationError(f"Invalid URL '{url}': {exc}") from exc
    except httpx.UnsupportedProtocol as exc:
        raise ValidationError(f"Unsupported URL scheme in '{url}'") from exc
    except httpx.HTTPError as exc:
        logger.warning("Request error for %s: %r", url, exc)
        raise UpstreamError(f"Request error for '{url}': {exc}") from exc

    document = FetchedDocument(url=url, content=content, content_type=content_type)
    logger.debug(
        "Fetched %s (%d bytes, content-type=%s)", url, document.size, content_type
    )
    _validate(document)
    return document


async def _preflight(client: httpx.AsyncClient, url: str) -> None:
    """Reject documents whose declared size is already over the ceiling.

    ``Content-Length`` is advisory: a missing or garbled header, or an
    origin that does not support HEAD, lets the streamed read decide.
    """
    response = await client.head(url)
    if response.is_error:
        logger.debug("HEAD %s returned %d, skipping preflight", url, response.status_code)
        return
    declared = _parse_content_length(response.headers.get("content-length"))
    if declared is not None and declared > settings.max_document_bytes:
        raise ValidationError(
            f"SVG file too large: {declared} bytes (max {settings.max_document_bytes})"
        )


async def _stream_body(client: httpx.AsyncClient, url: str) -> tuple[bytes, str | None]:
    """Read the body chunk by chunk, aborting once it outgrows the stream ceiling."""
    async with client.stream("GET", url) as response:
        if response.is_error:
            raise UpstreamError(f"Origin answered HTTP {response.status_code} for {url}")

        content_type = response.headers.get("content-type")
        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > settings.max_stream_bytes:
                raise ValidationError(
                    f"Response too large: exceeded {settings.max_stream_bytes} bytes"
                )
            chunks.append(chunk)
    return b"".join(chunks), content_type


def _validate(document: FetchedDocument) -> None:
    if document.size > settings.max_document_bytes:
        raise ValidationError(
            f"SVG file too large: {document.size} bytes (max {settings.max_document_bytes})"
        )
    try:
        text = document.content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"Invalid UTF-8 content: {exc}") from exc
    if SVG_ROOT_MARKER not in text:
        raise ValidationError("Response does not contain SVG content")


def _parse_content_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        return None
    return length if length >= 0 else None
