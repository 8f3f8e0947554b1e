"""Main FastAPI application for the SmartPlanner auth and token service."""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.api.auth import router as auth_router
from src.api.errors import register_error_handlers
from src.api.mpesa import router as mpesa_router
from src.api.tokens import router as tokens_router
from src.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    MetricsMiddleware,
    RateLimitMiddleware,
    get_metrics
)
from src.models.api_models import HealthResponse
from src.observability import (
    setup_observability,
    instrument_fastapi_app,
    TracingContextMiddleware
)
from src.services.context import Services, build_default_context, build_services

SERVICE_NAME = "smartplanner-auth"
SERVICE_VERSION = "1.0.0"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure stdlib logging and structlog to emit JSON lines."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting auth and token service",
        port=settings.port,
        host=settings.host,
        environment=settings.environment
    )

    if getattr(app.state, "services", None) is None:
        try:
            app.state.services = build_services(build_default_context(settings))
            logger.info("Service context built")
        except Exception as e:
            logger.error("Service context construction failed", error=str(e))
            raise

    yield

    logger.info("Shutting down auth and token service")


def create_app(services: Optional[Services] = None, observability: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services; when None they are built at startup
        observability: Whether to set up OpenTelemetry export and instrumentation
    """
    app = FastAPI(
        title="SmartPlanner Auth Service",
        description="Phone OTP authentication, sessions and prepaid token ledger",
        version=SERVICE_VERSION,
        lifespan=lifespan
    )
    app.state.services = services

    # Add middleware (order matters - last added is executed first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TracingContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(auth_router)
    app.include_router(tokens_router)
    app.include_router(mpesa_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=SERVICE_VERSION
        )

    @app.get("/metrics")
    async def metrics_endpoint():
        """Application metrics endpoint."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": get_metrics()
        }

    if observability:
        setup_observability(
            service_name=SERVICE_NAME,
            service_version=SERVICE_VERSION,
            otlp_endpoint=settings.otlp_endpoint,
            enable_console_export=settings.otel_console_export
        )
        instrument_fastapi_app(app)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
