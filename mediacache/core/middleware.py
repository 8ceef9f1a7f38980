"""FastAPI middleware for correlation IDs, metrics, logging and security headers."""

import logging
import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from mediacache.core.logging import (
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from mediacache.core.metrics import HTTP_REQUESTS_TOTAL
from mediacache.core.tracing import add_span_attributes, create_span

_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware counting HTTP requests by method, path and status."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        method = request.method
        path = self._normalize_path(request.url.path)
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=path, status_code=str(status_code)
            ).inc()

    def _normalize_path(self, path: str) -> str:
        """Normalize path to reduce cardinality.

        Replaces UUIDs and numeric IDs with placeholders.
        """
        path = _UUID_PATTERN.sub("{id}", path)
        return _NUMERIC_SEGMENT.sub("/{id}", path)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware for managing correlation IDs."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        correlation_id = request.headers.get(
            self.CORRELATION_ID_HEADER,
            str(uuid.uuid4()),
        )

        set_correlation_id(correlation_id)

        try:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    REDACTED_PARAMS = frozenset({"code"})

    def __init__(self, app: ASGIApp, log_query: bool = True):
        super().__init__(app)
        self.log_query = log_query

    def _query(self, request: Request) -> Optional[str]:
        if not self.log_query:
            return None
        return "&".join(
            f"{k}=***" if k in self.REDACTED_PARAMS else f"{k}={v}"
            for k, v in request.query_params.multi_items()
        )

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        logger = logging.getLogger("mediacache.requests")

        start_time = time.perf_counter()

        logger.info(
            "Request started",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query": self._query(request),
                "client_ip": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            logger.error(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration * 1000, 2),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            }
        )
        return response


class TracingMiddleware(BaseHTTPMiddleware):
    """Middleware opening a server span per request."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        method = request.method
        path = request.url.path

        # Query strings are left out; /monitor accepts its access code there
        with create_span(
            f"{method} {path}",
            attributes={
                "http.method": method,
                "http.route": path,
                "http.scheme": request.url.scheme,
                "http.host": request.url.hostname or "",
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ):
            response = await call_next(request)
            add_span_attributes({"http.status_code": response.status_code})
            return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers to every response."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
    }

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        return response


__all__ = [
    "MetricsMiddleware",
    "CorrelationIdMiddleware",
    "RequestLoggingMiddleware",
    "TracingMiddleware",
    "SecurityHeadersMiddleware",
]
