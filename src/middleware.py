"""
Custom middleware for the auth and token service.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.observability import record_http_metrics

logger = structlog.get_logger()

CORRELATION_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request/response logging with correlation ID support.
    """

    def __init__(self, app, exclude_paths: set = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or {"/healthz", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or f"req_{uuid.uuid4().hex[:16]}"
        request.state.correlation_id = correlation_id

        if request.url.path in self.exclude_paths:
            return await call_next(request)

        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        start_time = time.time()
        # Query strings are not logged; they may carry references or tokens.
        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("User-Agent", "unknown")
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                process_time_ms=round(process_time * 1000, 2)
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "code": "internal",
                    "message": "An unexpected error occurred",
                    "correlation_id": correlation_id,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                },
                headers={CORRELATION_HEADER: correlation_id}
            )

        process_time = time.time() - start_time
        logger.info(
            "Request completed",
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2)
        )

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to responses.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers.update({
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store"
        })

        return response


class RequestStats:
    """Process-wide request counters behind /metrics."""

    def __init__(self):
        self.request_count = 0
        self.error_count = 0
        self.total_processing_time = 0.0

    def record(self, status_code: int, processing_time: float) -> None:
        self.request_count += 1
        self.total_processing_time += processing_time
        if status_code >= 400:
            self.error_count += 1

    def snapshot(self) -> Dict[str, Any]:
        avg_processing_time = (
            self.total_processing_time / self.request_count
            if self.request_count > 0 else 0
        )
        return {
            "total_requests": self.request_count,
            "error_count": self.error_count,
            "error_rate": self.error_count / self.request_count if self.request_count > 0 else 0,
            "avg_processing_time_ms": round(avg_processing_time * 1000, 2)
        }


request_stats = RequestStats()


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect basic metrics about requests.
    """

    def __init__(self, app, stats: RequestStats = None):
        super().__init__(app)
        self.stats = stats or request_stats

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            self.stats.record(500, time.time() - start_time)
            raise

        processing_time = time.time() - start_time
        self.stats.record(response.status_code, processing_time)
        record_http_metrics(request.method, request.url.path, response.status_code, processing_time)
        return response


def get_metrics() -> Dict[str, Any]:
    """Get current application metrics."""
    return request_stats.snapshot()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple rate limiting middleware (in-memory, per client IP).
    """

    def __init__(self, app, max_requests: int = 100, window_seconds: int = 60, exempt_paths: set = None):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.exempt_paths = exempt_paths or {"/healthz", "/api/mpesa/callback"}
        self.requests: Dict[str, List[float]] = {}
        self._last_sweep = 0.0

    def _sweep(self, current_time: float) -> None:
        """Forget clients with no request inside the window."""
        stale = [
            client_ip for client_ip, times in self.requests.items()
            if not times or current_time - times[-1] >= self.window_seconds
        ]
        for client_ip in stale:
            del self.requests[client_ip]
        self._last_sweep = current_time

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        current_time = time.time()

        if current_time - self._last_sweep >= self.window_seconds:
            self._sweep(current_time)

        recent = [
            req_time for req_time in self.requests.get(client_ip, [])
            if current_time - req_time < self.window_seconds
        ]

        if len(recent) >= self.max_requests:
            self.requests[client_ip] = recent
            logger.warning(
                "Rate limit exceeded",
                client_ip=client_ip,
                request_count=len(recent),
                max_requests=self.max_requests
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "RateLimitExceeded",
                    "code": "rate_limited",
                    "message": f"Too many requests. Limit: {self.max_requests} per {self.window_seconds} seconds",
                    "correlation_id": request.headers.get(CORRELATION_HEADER, "unknown"),
                    "timestamp": datetime.now(timezone.utc).isoformat()
                }
            )

        recent.append(current_time)
        self.requests[client_ip] = recent
        return await call_next(request)
