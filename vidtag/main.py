from __future__ import annotations

import logging
import traceback
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from time import perf_counter
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from vidtag.api.routes import router
from vidtag.dependencies import (
    build_sweep_scheduler,
    get_run_dispatcher,
    get_settings,
    get_telemetry,
)
from vidtag.logging_config import configure_application_logging
from vidtag.models.tagging_contracts import DebugInfo, ErrorResponse, FieldError
from vidtag.services.resilience import CircuitOpenError, InvalidInputError
from vidtag.services.sweep import SweepScheduler

LOGGER = logging.getLogger("vidtag.api")

_MAX_REJECTED_VALUE_LENGTH = 200


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    scheduler: SweepScheduler | None = build_sweep_scheduler(settings)
    if scheduler is not None:
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        if get_run_dispatcher.cache_info().currsize:
            get_run_dispatcher().shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="vidtag API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        request.state.request_id = request_id
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    _register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    async def handle_validation_error(request: Request, exc: Exception) -> Response:
        field_errors: list[FieldError] = []
        if isinstance(exc, RequestValidationError):
            field_errors = [_field_error(error) for error in exc.errors()]
        return _error_response(
            request,
            status=400,
            error_code="validation_failed",
            message="Request validation failed.",
            field_errors=field_errors,
        )

    async def handle_invalid_input(request: Request, exc: Exception) -> Response:
        return _error_response(
            request,
            status=400,
            error_code="invalid_input",
            message=str(exc),
            exc=exc,
        )

    async def handle_circuit_open(request: Request, exc: Exception) -> Response:
        retry_after = exc.retry_after_seconds if isinstance(exc, CircuitOpenError) else 1
        return _error_response(
            request,
            status=503,
            error_code="circuit_open",
            message=str(exc),
            exc=exc,
            headers={"Retry-After": str(max(1, retry_after))},
        )

    async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
        LOGGER.error(
            "unhandled error path=%s",
            request.url.path,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return _error_response(
            request,
            status=500,
            error_code="internal_error",
            message="An unexpected error occurred.",
            exc=exc,
        )

    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(InvalidInputError, handle_invalid_input)
    app.add_exception_handler(CircuitOpenError, handle_circuit_open)
    app.add_exception_handler(Exception, handle_unexpected_error)


def _field_error(error: dict[str, Any]) -> FieldError:
    location = [str(part) for part in error.get("loc", ()) if part != "body"]
    rejected = error.get("input")
    rejected_value: str | None = None
    if rejected is not None and not isinstance(rejected, dict | list):
        rejected_value = str(rejected)[:_MAX_REJECTED_VALUE_LENGTH]
    return FieldError(
        field=".".join(location) or "body",
        message=str(error.get("msg", "invalid value")),
        rejected_value=rejected_value,
    )


def _error_response(
    request: Request,
    *,
    status: int,
    error_code: str,
    message: str,
    field_errors: list[FieldError] | None = None,
    exc: Exception | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    body = ErrorResponse(
        error_code=error_code,
        message=message,
        status=status,
        timestamp=datetime.now(UTC),
        request_id=request_id,
        path=request.url.path,
        field_errors=field_errors or [],
        debug_info=_debug_info(exc),
    )
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=status,
        content=body.model_dump(mode="json"),
        headers=response_headers,
    )


def _debug_info(exc: Exception | None) -> DebugInfo | None:
    settings = get_settings()
    if exc is None or not settings.debug_mode:
        return None
    stack_trace = "".join(traceback.format_exception(exc))
    limit = settings.error_max_stack_trace_length
    return DebugInfo(
        exception_type=type(exc).__name__,
        stack_trace=stack_trace[:limit] if limit > 0 else None,
    )


app = create_app()
