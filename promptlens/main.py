"""
Main Application - FastAPI application setup.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from promptlens.api.dependencies import close_payment_provider
from promptlens.api.routes import router
from promptlens.config import settings
from promptlens.db.session import close_engines, get_write_engine
from promptlens.exceptions import AccessCoreError, ServiceUnavailableError, TokenVerificationError
from promptlens.models.api import ErrorBody, ErrorResponse
from promptlens.observability import get_logger, metrics, setup_logging, setup_tracing
from promptlens.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        environment=settings.environment,
        payment_provider_configured=settings.payment_provider_configured,
        tracing_enabled=settings.tracing_enabled,
    )

    if settings.webhook_event_key_strategy == "event_type":
        logger.warning(
            "webhook_event_key_strategy_event_type",
            detail="distinct deliveries of the same event type share one ledger key; "
            "later ones are acknowledged without being applied",
        )

    if settings.run_migrations_on_startup:
        from promptlens.db.migration_runner import run_migrations

        run_migrations()

    if settings.tracing_enabled:
        instrument_sqlalchemy(get_write_engine())

    yield

    logger.info("application_shutting_down")
    await close_payment_provider()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Error envelope
# ============================================================================


def error_response(
    status_code: int,
    message: str,
    code: str | None,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorBody(message=message, code=code, details=details),
        timestamp=datetime.now(UTC),
    )
    return JSONResponse(
        status_code=status_code, content=body.model_dump(mode="json"), headers=headers
    )


@app.exception_handler(AccessCoreError)
async def access_core_exception_handler(request: Request, exc: AccessCoreError) -> JSONResponse:
    """Render domain errors as the standard error envelope."""
    metrics.record_error(type(exc).__name__, request.url.path)

    if isinstance(exc, ServiceUnavailableError):
        # Full detail stays in the logs
        logger.error("dependency_unavailable", path=request.url.path, error=exc.message)
        return error_response(exc.status_code, "Service temporarily unavailable", exc.code)

    headers = None
    if isinstance(exc, TokenVerificationError):
        headers = {"WWW-Authenticate": "Bearer"}
        logger.info(
            "token_rejected",
            path=request.url.path,
            reason=exc.reason,
            diagnostics=list(exc.diagnostics),
        )
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)

    return error_response(exc.status_code, exc.message, exc.code, exc.details, headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors and return them in the envelope."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return error_response(400, "Validation Error", "VALIDATION_ERROR", sanitized_errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return error_response(
            404, f"Route {request.method} {request.url.path} not found", "NOT_FOUND"
        )
    return error_response(exc.status_code, str(exc.detail), None)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    message = str(exc) if settings.is_development else "Internal Server Error"
    return error_response(500, message, "INTERNAL_ERROR")


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from the load balancer
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and a bound request id."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    endpoint = request.url.path
    method = request.method

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    try:
        response = await call_next(request)
    except Exception as e:
        duration = time.perf_counter() - start_time
        if settings.metrics_enabled:
            metrics.record_http_request(endpoint, method, 500, duration)
        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            exc_info=True,
        )
        raise
    finally:
        structlog.contextvars.clear_contextvars()

    duration = time.perf_counter() - start_time
    if settings.metrics_enabled:
        metrics.record_http_request(endpoint, method, response.status_code, duration)
    logger.info(
        "request_completed",
        method=method,
        path=endpoint,
        status_code=response.status_code,
        duration_seconds=duration,
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "promptlens.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
