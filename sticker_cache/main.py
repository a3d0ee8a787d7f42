from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sticker_cache.errors import ApiError, StoreUnavailableError
from sticker_cache.metrics import MetricsAggregator
from sticker_cache.retention import RetentionSweeper
from sticker_cache.routes._deps import trace_id_from_request
from sticker_cache.routes.admin import router as admin_router
from sticker_cache.routes.internal import router as internal_router
from sticker_cache.runtime_profile import is_development
from sticker_cache.schemas import error_envelope, success_envelope
from sticker_cache.settings import MetricsSettings, RetentionSettings, TriggerAuthSettings
from sticker_cache.worker_runtime import create_worker_runtime_from_env

logger = logging.getLogger(__name__)


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def create_app(
    *,
    store: Any | None = None,
    completion: Any | None = None,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    env = os.environ if environ is None else environ
    if store is None:
        from sticker_cache.store import store as default_store

        store = default_store

    app = FastAPI(title="Sticker Generation Cache", version="0.1.0")
    app.state.store = store
    app.state.trigger_auth = TriggerAuthSettings.from_env(env)
    app.state.development_mode = is_development(env)
    app.state.worker_runtime = create_worker_runtime_from_env(store=store, completion=completion, environ=env)
    app.state.retention_sweeper = RetentionSweeper(store=store, settings=RetentionSettings.from_env(env))
    app.state.metrics = MetricsAggregator(store=store, settings=MetricsSettings.from_env(env))

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code == "AUTH_UNAUTHORIZED":
            logger.warning("trigger_auth_rejected path=%s", request.url.path)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("store_unavailable path=%s backend=%s error=%s", request.url.path, exc.backend, exc)
        return _error_response(
            request,
            code="STORE_UNAVAILABLE",
            message="backing store unavailable",
            error_class="transient",
            retryable=True,
            status_code=503,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok", "backend": store.backend}, trace_id_from_request(request))

    app.include_router(internal_router)
    app.include_router(admin_router)
    return app


app = create_app()
