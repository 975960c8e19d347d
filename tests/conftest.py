from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient

from svg_rasterizer.main import app

SQUARE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 100">'
    '<rect x="0" y="0" width="100" height="100" fill="#ff0000"/>'
    "</svg>"
)

WIDE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 200 100">'
    '<rect x="0" y="0" width="200" height="100" fill="#0000ff"/>'
    "</svg>"
)


@pytest.fixture
def client():
    """TestClient with lifespan startup/shutdown hooks fully mocked."""
    with (
        patch(
            "svg_rasterizer.core.redis_store.RedisManager.connect",
            new_callable=AsyncMock,
        ),
        patch(
            "svg_rasterizer.core.redis_store.RedisManager.disconnect",
            new_callable=AsyncMock,
        ),
        patch(
            "svg_rasterizer.core.redis_store.RedisManager.get_client",
            return_value=MagicMock(),
        ),
        patch(
            "svg_rasterizer.main.close_http_client",
            new_callable=AsyncMock,
        ),
    ):
        with TestClient(app) as c:
            yield c


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    """In-memory async Redis client backed by its own server."""
    return fakeredis.FakeAsyncRedis(server=redis_server)


@pytest.fixture
def square_svg() -> str:
    return SQUARE_SVG


@pytest.fixture
def wide_svg() -> str:
    return WIDE_SVG
