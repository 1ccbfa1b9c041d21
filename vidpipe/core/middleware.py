"""FastAPI middleware for correlation IDs and request tracing."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from vidpipe.core.logging import clear_correlation_id, set_correlation_id
from vidpipe.core.tracing import create_span

logger = logging.getLogger("vidpipe.requests")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request's correlation ID to the logging context."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.CORRELATION_ID_HEADER, str(uuid.uuid4()))
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """Wraps each request in a span and logs its outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path
        start_time = time.perf_counter()

        with create_span(f"{method} {path}", attributes={"http.method": method, "http.route": path}) as span:
            response = await call_next(request)
            span.set_attribute("http.status_code", response.status_code)

        logger.info(
            "Request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return response
