from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

import svg_rasterizer.workers.fetcher as fetcher_module
from svg_rasterizer.core.config import settings
from svg_rasterizer.core.errors import (
    AdmissionDenied,
    ProcessingError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from svg_rasterizer.models.rasterize.document import FetchedDocument
from svg_rasterizer.models.rasterize.schemas import RenderRequest
from svg_rasterizer.repositories.cache.repository import Cache
from svg_rasterizer.repositories.rate_limit.repository import RateLimiter
from svg_rasterizer.services.rasterize import service as service_module
from svg_rasterizer.services.rasterize.service import RasterizeService
from svg_rasterizer.workers import rasterizer as rasterizer_module
from svg_rasterizer.workers.fetcher import fetch_svg
from svg_rasterizer.workers.sanitizer import Sanitizer

URL = "https://origin.example/logo.svg"
SVG = b'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 10 10"><rect width="10" height="10"/></svg>'


@pytest.fixture(autouse=True)
def fresh_http_client():
    """Each test gets its own shared client so respx sees a clean transport."""
    fetcher_module._http_client = None
    yield
    fetcher_module._http_client = None


# ---------------------------------------------------------------------------
# Fetcher tests
# ---------------------------------------------------------------------------


class TestFetcher:
    @respx.mock
    async def test_successful_fetch(self):
        respx.head(URL).mock(
            return_value=httpx.Response(200, headers={"content-length": str(len(SVG))})
        )
        respx.get(URL).mock(
            return_value=httpx.Response(
                200, content=SVG, headers={"content-type": "image/svg+xml"}
            )
        )
        result = await fetch_svg(URL)
        assert result.content == SVG
        assert result.content_type == "image/svg+xml"
        assert result.url == URL

    @respx.mock
    async def test_declared_size_over_ceiling_fails_before_body(self):
        respx.head(URL).mock(
            return_value=httpx.Response(
                200, headers={"content-length": str(settings.max_document_bytes + 1)}
            )
        )
        get_route = respx.get(URL).mock(return_value=httpx.Response(200, content=SVG))
        with pytest.raises(ValidationError, match="too large"):
            await fetch_svg(URL)
        assert not get_route.called

    @respx.mock
    async def test_garbled_content_length_is_ignored(self):
        respx.head(URL).mock(return_value=httpx.Response(200, headers={"content-length": "lots"}))
        respx.get(URL).mock(return_value=httpx.Response(200, content=SVG))
        assert (await fetch_svg(URL)).content == SVG

    @respx.mock
    async def test_head_error_status_skips_preflight(self):
        respx.head(URL).mock(return_value=httpx.Response(405))
        respx.get(URL).mock(return_value=httpx.Response(200, content=SVG))
        assert (await fetch_svg(URL)).content == SVG

    @respx.mock
    async def test_preflight_can_be_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "fetch_preflight", False)
        head_route = respx.head(URL).mock(return_value=httpx.Response(200))
        respx.get(URL).mock(return_value=httpx.Response(200, content=SVG))
        await fetch_svg(URL)
        assert not head_route.called

    @respx.mock
    async def test_stream_over_ceiling_aborts(self, monkeypatch):
        monkeypatch.setattr(settings, "max_document_bytes", 256)
        monkeypatch.setattr(settings, "max_stream_bytes", 1024)
        body = b"<svg>" + b" " * 4096 + b"</svg>"
        # Origin lies about its size; the streamed count decides.
        respx.head(URL).mock(return_value=httpx.Response(200, headers={"content-length": "10"}))
        respx.get(URL).mock(return_value=httpx.Response(200, content=body))
        with pytest.raises(ValidationError, match="Response too large"):
            await fetch_svg(URL)

    @respx.mock
    async def test_document_over_ceiling_after_stream_is_rejected(self, monkeypatch):
        monkeypatch.setattr(settings, "max_document_bytes", 64)
        monkeypatch.setattr(settings, "max_stream_bytes", 4096)
        respx.head(URL).mock(return_value=httpx.Response(200))
        respx.get(URL).mock(return_value=httpx.Response(200, content=SVG + b" " * 100))
        with pytest.raises(ValidationError, match="too large"):
            await fetch_svg(URL)

    @respx.mock
    async def test_non_svg_content_is_rejected(self):
        respx.head(URL).mock(return_value=httpx.Response(200))
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"<html></html>"))
        with pytest.raises(ValidationError, match="SVG"):
            await fetch_svg(URL)

    @respx.mock
    async def test_invalid_utf8_is_rejected(self):
        respx.head(URL).mock(return_value=httpx.Response(200))
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"<svg>\xff\xfe</svg>"))
        with pytest.raises(ValidationError, match="UTF-8"):
            await fetch_svg(URL)

    @respx.mock
    async def test_error_status_is_upstream_error(self):
        respx.head(URL).mock(return_value=httpx.Response(404))
        respx.get(URL).mock(return_value=httpx.Response(404))
        with pytest.raises(UpstreamError):
            await fetch_svg(URL)

    @respx.mock
    async def test_connect_error_is_upstream_error(self):
        respx.head(URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(UpstreamError):
            await fetch_svg(URL)

    @respx.mock
    async def test_read_timeout_is_upstream_error(self):
        respx.head(URL).mock(return_value=httpx.Response(200))
        respx.get(URL).mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(UpstreamError):
            await fetch_svg(URL)

    async def test_overall_deadline_is_upstream_error(self, monkeypatch):
        async def _slow(url):
            await asyncio.sleep(5)

        monkeypatch.setattr(settings, "fetch_timeout", 0.05)
        with patch("svg_rasterizer.workers.fetcher._do_fetch", side_effect=_slow):
            with pytest.raises(UpstreamError, match="Timed out"):
                await fetch_svg(URL)

    async def test_invalid_url_is_validation_error(self):
        with patch("svg_rasterizer.workers.fetcher.get_http_client") as mock_get:
            mock_client = AsyncMock()
            mock_client.head = AsyncMock(side_effect=httpx.InvalidURL("invalid url"))
            mock_get.return_value = mock_client
            with pytest.raises(ValidationError, match="Invalid URL"):
                await fetch_svg("http://[bad")

    async def test_upstream_error_hides_detail(self):
        with patch("svg_rasterizer.workers.fetcher.get_http_client") as mock_get:
            mock_client = AsyncMock()
            mock_client.head = AsyncMock(side_effect=httpx.ConnectError("10.0.0.7 refused"))
            mock_get.return_value = mock_client
            with pytest.raises(UpstreamError) as exc_info:
                await fetch_svg(URL)
        assert "10.0.0.7" not in exc_info.value.public_message


# ---------------------------------------------------------------------------
# RasterizeService tests
# ---------------------------------------------------------------------------


class TestRasterizeService:
    @pytest.fixture
    def cache(self):
        cache = AsyncMock(spec=Cache)
        cache.get.return_value = None
        return cache

    @pytest.fixture
    def limiter(self):
        limiter = AsyncMock(spec=RateLimiter)
        limiter.admit.return_value = True
        return limiter

    @pytest.fixture
    def sanitizer(self):
        sanitizer = AsyncMock(spec=Sanitizer)
        sanitizer.clean.side_effect = lambda text: text
        return sanitizer

    @pytest.fixture
    def service(self, cache, limiter, sanitizer):
        return RasterizeService(cache, limiter, sanitizer, coalesce=True)

    @pytest.fixture
    def fetch(self):
        with patch.object(
            service_module,
            "fetch_svg",
            new_callable=AsyncMock,
            return_value=FetchedDocument(url=URL, content=SVG),
        ) as mock_fetch:
            yield mock_fetch

    @pytest.fixture
    def render(self):
        with patch.object(rasterizer_module, "render", return_value=b"PNG") as mock_render:
            yield mock_render

    @staticmethod
    def _request(**kwargs) -> RenderRequest:
        return RenderRequest(url=URL, **kwargs)

    async def test_denied_admission_short_circuits(self, service, limiter, cache, fetch):
        limiter.admit.return_value = False
        with pytest.raises(AdmissionDenied):
            await service.rasterize(self._request(), "global")
        cache.get.assert_not_called()
        fetch.assert_not_called()

    async def test_scope_is_passed_to_limiter(self, service, limiter, fetch, render):
        await service.rasterize(self._request(), "client:10.1.2.3")
        limiter.admit.assert_called_once_with("client:10.1.2.3")

    async def test_cache_hit_skips_pipeline(self, service, cache, fetch):
        cache.get.return_value = b"CACHED"
        result = await service.rasterize(self._request(width=64, height=64), "global")
        assert result.content == b"CACHED"
        assert result.cache_hit is True
        cache.get.assert_called_once_with(f"svg:{URL}:64x64")
        fetch.assert_not_called()

    async def test_miss_runs_pipeline_and_stores(self, service, cache, sanitizer, fetch, render):
        result = await service.rasterize(self._request(width=64, height=48), "global")
        assert result.content == b"PNG"
        assert result.cache_hit is False
        fetch.assert_called_once_with(URL)
        sanitizer.clean.assert_called_once_with(SVG.decode())
        render.assert_called_once_with(SVG.decode(), 64, 48)
        cache.put.assert_called_once_with(
            f"svg:{URL}:64x48", b"PNG", settings.cache_ttl_seconds
        )

    async def test_dimensions_are_clamped_before_keying(self, service, cache, fetch, render):
        await service.rasterize(self._request(width=1, height=10**6), "global")
        key = cache.get.call_args.args[0]
        assert key.endswith(f":{settings.min_dimension}x{settings.max_height}")

    async def test_cache_write_failure_is_not_fatal(self, service, cache, fetch, render):
        cache.put.side_effect = StoreError("write failed")
        result = await service.rasterize(self._request(), "global")
        assert result.content == b"PNG"

    async def test_cache_read_failure_propagates(self, service, cache, fetch):
        cache.get.side_effect = StoreError("read failed")
        with pytest.raises(StoreError):
            await service.rasterize(self._request(), "global")
        fetch.assert_not_called()

    async def test_fetch_error_propagates_unchanged(self, service, cache, sanitizer, fetch):
        fetch.side_effect = ValidationError("SVG file too large")
        with pytest.raises(ValidationError, match="too large"):
            await service.rasterize(self._request(), "global")
        sanitizer.clean.assert_not_called()
        cache.put.assert_not_called()

    async def test_sanitizer_error_stops_pipeline(self, service, cache, sanitizer, fetch, render):
        sanitizer.clean.side_effect = ProcessingError("rejected")
        with pytest.raises(ProcessingError):
            await service.rasterize(self._request(), "global")
        render.assert_not_called()
        cache.put.assert_not_called()

    async def test_concurrent_identical_requests_share_one_render(
        self, service, fetch, render
    ):
        gate = asyncio.Event()

        async def _slow_fetch(url):
            await gate.wait()
            return FetchedDocument(url=url, content=SVG)

        fetch.side_effect = _slow_fetch
        tasks = [
            asyncio.create_task(service.rasterize(self._request(width=64, height=64), "global"))
            for _ in range(3)
        ]
        await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert [r.content for r in results] == [b"PNG"] * 3
        assert fetch.call_count == 1
        assert service_module._inflight == {}

    async def test_joined_requests_share_the_error(self, service, fetch):
        gate = asyncio.Event()

        async def _failing_fetch(url):
            await gate.wait()
            raise UpstreamError("origin down")

        fetch.side_effect = _failing_fetch
        tasks = [
            asyncio.create_task(service.rasterize(self._request(), "global"))
            for _ in range(2)
        ]
        await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, UpstreamError) for r in results)
        assert fetch.call_count == 1
        assert service_module._inflight == {}

    async def test_cancelling_first_request_does_not_fail_joined_ones(
        self, service, cache, fetch, render
    ):
        gate = asyncio.Event()

        async def _slow_fetch(url):
            await gate.wait()
            return FetchedDocument(url=url, content=SVG)

        fetch.side_effect = _slow_fetch
        first = asyncio.create_task(service.rasterize(self._request(), "global"))
        await asyncio.sleep(0.01)
        joined = asyncio.create_task(service.rasterize(self._request(), "global"))
        await asyncio.sleep(0.01)

        first.cancel()
        await asyncio.sleep(0)
        gate.set()
        result = await joined

        assert result.content == b"PNG"
        assert first.cancelled()
        assert fetch.call_count == 1
        cache.put.assert_awaited_once()
        assert service_module._inflight == {}

    async def test_without_coalescing_each_request_renders(
        self, cache, limiter, sanitizer, fetch, render
    ):
        service = RasterizeService(cache, limiter, sanitizer, coalesce=False)
        await asyncio.gather(
            service.rasterize(self._request(), "global"),
            service.rasterize(self._request(), "global"),
        )
        assert fetch.call_count == 2
