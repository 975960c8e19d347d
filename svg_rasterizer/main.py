from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from svg_rasterizer.api.router import router
from svg_rasterizer.core.config import APP_VERSION, settings
from svg_rasterizer.core.errors import ServiceError, ValidationError
from svg_rasterizer.core.redis_store import redis_manager
from svg_rasterizer.models.common import ErrorResponse
from svg_rasterizer.workers.fetcher import close_http_client

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure the ``svg_rasterizer`` logger namespace.

    ``logging.basicConfig`` is a no-op when the root logger already has
    handlers (e.g. when uvicorn sets up its own handlers before our lifespan
    runs).  Configuring the ``svg_rasterizer`` namespace directly, with
    ``propagate = False``, ensures all application logs reach stdout
    regardless of uvicorn's root-logger setup.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    app_log = logging.getLogger("svg_rasterizer")
    app_log.setLevel(level)
    if not app_log.handlers:
        app_log.addHandler(handler)
    app_log.propagate = False


_configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # ── Startup ──────────────────────────────────────────────────────
    logger.info("Starting SVG rasterizer service...")
    await redis_manager.connect()
    yield
    # ── Shutdown ─────────────────────────────────────────────────────
    await close_http_client()
    await redis_manager.disconnect()


app = FastAPI(
    title="SVG Rasterizer",
    description="Fetches remote SVG documents and renders them to PNG.",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.include_router(router)


def _error_response(exc: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.kind, message=exc.public_message).model_dump(),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'request'}: {err['msg']}"
        for err in exc.errors()
    )
    return _error_response(ValidationError(f"Invalid query parameters: {problems}"))
