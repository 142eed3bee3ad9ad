"""
Request logging middleware with correlation ID support.

Never logs IPs, session keys or proof bytes.
"""

import secrets
import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate an 8-character correlation ID."""
    return secrets.token_hex(4)


def bind_correlation_id() -> str:
    """Start a fresh log context for one request or connection."""
    correlation_id = generate_correlation_id()
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs request start and completion and sets ``X-Correlation-ID``.

    Websocket connections bypass BaseHTTPMiddleware; the gate route binds
    its own correlation ID for those.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = bind_correlation_id()
        start_time = time.perf_counter()
        logger = structlog.get_logger()

        # path only; query strings are never logged
        logger.info("request_started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=round(duration_ms, 2),
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
