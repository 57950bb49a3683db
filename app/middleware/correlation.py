# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Correlation ID middleware for request tracing in OrderDesk.

Every request gets a correlation id, taken from the inbound
``X-Correlation-Id`` header or generated. The id is stored on the request
state, exposed through a context variable for code that has no request
(audit sink, error handlers), echoed on the response and attached to the
request span.
"""

import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.observability.metrics import http_request_duration_seconds
from app.observability.tracing import get_tracer


# ==== MODULE INITIALIZATION ==== #

tracer = get_tracer(__name__)

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


# ==== CORRELATION MIDDLEWARE CLASS ==== #

class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to requests and responses.

    Provides request correlation tracking with automatic ID generation,
    distributed tracing integration and latency metrics.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with correlation ID tracking and observability.

        Args:
            request (Request): Incoming HTTP request
            call_next (Callable): Next middleware/handler in chain

        Returns:
            Response: HTTP response with correlation ID header
        """
        # --► CORRELATION ID MANAGEMENT
        correlation_id = request.headers.get("X-Correlation-Id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)

        start_time = time.perf_counter()

        try:
            # --► DISTRIBUTED TRACING
            with tracer.start_as_current_span("http_request") as span:
                span.set_attribute("http.method", request.method)
                span.set_attribute("http.url", str(request.url))
                span.set_attribute("correlation_id", correlation_id)

                response = await call_next(request)

                response.headers["X-Correlation-Id"] = correlation_id
                span.set_attribute("http.status_code", response.status_code)

            http_request_duration_seconds.labels(
                method=request.method,
                status_class=f"{response.status_code // 100}xx"
            ).observe(time.perf_counter() - start_time)
            return response
        finally:
            correlation_id_var.reset(token)
