from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..gen.config import StudioConfig
from ..gen.errors import StudioError
from ..gen.events import EventSink, LoggingEventSink
from ..gen.provider import GenerativeProvider
from ..gen.registry import ProviderRegistry
from .routes import gemini, imagen, veo

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "Failed to process the request"


def create_app(
    config: Optional[StudioConfig] = None,
    provider: Optional[GenerativeProvider] = None,
    events: Optional[EventSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    """Build the proxy app. Without an explicit provider the config's default is used."""
    config = config or StudioConfig()
    registry: Optional[ProviderRegistry] = None
    if provider is None:
        registry = ProviderRegistry(config)
        provider = registry.get_default_provider()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if registry is not None:
            registry.close()

    app = FastAPI(title="genstudio", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.provider = provider
    app.state.events = events or LoggingEventSink(logger)
    app.state.sleep = sleep

    app.include_router(gemini.router)
    app.include_router(imagen.router)
    app.include_router(veo.router)

    @app.exception_handler(StudioError)
    async def studio_error_handler(request: Request, exc: StudioError) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=exc.http_status)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s crashed", request.method, request.url.path)
        return JSONResponse({"error": UNEXPECTED_ERROR}, status_code=500)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "provider": provider.provider_id}

    return app
