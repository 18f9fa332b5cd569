from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from appforge.apps.api.errors import (
    app_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from appforge.apps.api.rate_limit import get_rate_limiter, sweep_idle_buckets_forever
from appforge.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from appforge.apps.api.routes.admin import router as admin_router
from appforge.apps.api.routes.auth import router as auth_router
from appforge.apps.api.routes.data import router as data_router
from appforge.apps.api.routes.health import router as health_router
from appforge.core.config import get_settings
from appforge.core.errors import AppForgeError
from appforge.core.logging import configure_logging
from appforge.persistence.db import engine, init_models


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.db_auto_create:
        await init_models()
    sweeper: asyncio.Task | None = None
    if settings.rate_limit_enabled and settings.rl_backend.lower() == "memory":
        # Idle-bucket eviction runs on its own timer, independent of traffic.
        sweeper = asyncio.create_task(
            sweep_idle_buckets_forever(
                interval_s=settings.rl_sweep_interval_s, idle_s=settings.rl_idle_evict_s
            )
        )
    logger.info("app_started name=%s rl_backend=%s", settings.app_name, settings.rl_backend)
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        limiter = get_rate_limiter()
        close = getattr(limiter, "close", None)
        if close is not None:
            await close()
        await engine.dispose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="AppForge Data API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(AppForgeError)
    async def _app_error_handler(request: Request, exc: AppForgeError):
        return await app_error_handler(request, exc)

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

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(data_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth and the app header into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="AppForge Data API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {f"/{API_VERSION}/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}, {}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
