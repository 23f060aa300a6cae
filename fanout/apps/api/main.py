from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fanout.apps.api.errors import (
    fanout_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fanout.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from fanout.apps.api.routes.alerts import router as alerts_router
from fanout.apps.api.routes.broadcasts import router as broadcasts_router
from fanout.apps.api.routes.health import router as health_router
from fanout.apps.api.routes.metrics import router as metrics_router
from fanout.apps.api.routes.ops import router as ops_router
from fanout.core.config import Settings, get_settings
from fanout.core.errors import FanoutError
from fanout.core.logging import configure_logging
from fanout.services.notifications.engine import BroadcastEngine, build_broadcast_engine
from fanout.services.telemetry import RequestTelemetry


logger = logging.getLogger(__name__)


def _bind_engine(app: FastAPI, engine: BroadcastEngine) -> None:
    app.state.engine = engine
    telemetry: RequestTelemetry = app.state.telemetry
    engine.metrics.active_requests.set_function(lambda: telemetry.active_requests)


def create_app(*, settings: Settings | None = None, engine: BroadcastEngine | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # An injected engine belongs to the caller; only an engine built here is stopped here.
        owned = app.state.engine is None
        if owned:
            _bind_engine(app, build_broadcast_engine(settings))
        await app.state.engine.start()
        logger.info("api_started app=%s owned_engine=%s", settings.app_name, owned)
        try:
            yield
        finally:
            if owned:
                await app.state.engine.stop()
                app.state.engine = None

    app = FastAPI(title="Fanout Delivery API", lifespan=lifespan)
    app.state.settings = settings
    app.state.telemetry = RequestTelemetry()
    app.state.engine = None
    if engine is not None:
        _bind_engine(app, engine)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        telemetry: RequestTelemetry = request.app.state.telemetry
        telemetry.request_started()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            telemetry.request_finished(
                path=request.url.path,
                status_code=status_code,
                latency_ms=(time.monotonic() - start) * 1000.0,
            )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(FanoutError)
    async def _fanout_exception_handler(request: Request, exc: FanoutError):
        return await fanout_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(broadcasts_router, prefix=f"/{API_VERSION}")
    app.include_router(alerts_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    # Prometheus scrapes the unversioned path.
    app.include_router(metrics_router)
    return app


app = create_app()
