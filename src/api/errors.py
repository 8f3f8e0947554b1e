"""
HTTP translation of the service error taxonomy.
"""

from datetime import datetime, timezone
from typing import Dict

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.errors import ErrorKind, ServiceError
from src.models.api_models import ErrorResponse

logger = structlog.get_logger()

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.ALREADY_VERIFIED: 409,
    ErrorKind.UNVERIFIED: 403,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.EXPIRED: 410,
    ErrorKind.INSUFFICIENT_TOKENS: 402,  # Payment Required
    ErrorKind.DISPATCH_FAILED: 502,
    ErrorKind.INTERNAL: 500,
}


def correlation_id_for(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or request.headers.get("X-Request-ID", "unknown")


def create_error_response(exc: ServiceError, correlation_id: str) -> JSONResponse:
    """Create standardized error response."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    # Storage details are logged, never returned.
    message = exc.message if exc.kind != ErrorKind.INTERNAL else "An unexpected error occurred. Please try again."

    error_response = ErrorResponse(
        error=type(exc).__name__,
        code=exc.kind.value,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.now(timezone.utc),
        details=exc.details if exc.kind != ErrorKind.INTERNAL else None,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True)
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register the ServiceError handler on the FastAPI app."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        correlation_id = correlation_id_for(request)
        log = logger.error if exc.kind == ErrorKind.INTERNAL else logger.info
        log(
            "Service error",
            path=request.url.path,
            error_type=type(exc).__name__,
            code=exc.kind.value,
            error=exc.message,
            correlation_id=correlation_id
        )
        return create_error_response(exc, correlation_id)
