"""
Shared API Middleware
=====================

Common middleware and exception handlers for the FastAPI application.
"""

import time
import uuid
from typing import Callable
from datetime import datetime, timezone

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from civictrack.core import (
    AlreadyRatedException,
    ApplicationException,
    InvalidTransitionException,
    NotReporterException,
    NotResolvedException,
    ResourceNotFoundException,
    StaleWriteException,
    ValidationException,
)
from civictrack.shared.infrastructure.logging import get_context_logger, get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins.
STATUS_BY_EXCEPTION = (
    (ValidationException, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (ResourceNotFoundException, status.HTTP_404_NOT_FOUND),
    (NotReporterException, status.HTTP_403_FORBIDDEN),
    (InvalidTransitionException, status.HTTP_409_CONFLICT),
    (AlreadyRatedException, status.HTTP_409_CONFLICT),
    (NotResolvedException, status.HTTP_409_CONFLICT),
    (StaleWriteException, status.HTTP_409_CONFLICT),
)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Adds correlation ID to requests for tracing.

    An incoming X-Correlation-ID header is reused, otherwise one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status code and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        log = get_context_logger(__name__, getattr(request.state, "correlation_id", None))
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            log.error(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - start_time) * 1000)
                }
            )
            raise

        response.headers["X-Response-Time"] = f"{time.perf_counter() - start_time:.3f}s"
        log.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


def status_for_exception(exc: ApplicationException) -> int:
    for exc_type, code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Map domain and application errors to HTTP responses."""
    code = status_for_exception(exc)
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    if code >= 500:
        logger.error(
            "Application error",
            extra={"correlation_id": correlation_id, "error_type": type(exc).__name__, "error": exc.message}
        )
    else:
        logger.info(
            "Request rejected",
            extra={
                "correlation_id": correlation_id,
                "status_code": code,
                "error_type": type(exc).__name__,
                "error": exc.message,
            }
        )

    return JSONResponse(
        status_code=code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Returns consistent error responses for all exceptions.
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        }
    )

    # Don't expose internal details in production
    is_dev = getattr(getattr(request.app.state, "settings", None), "environment", None) == "development"

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )
