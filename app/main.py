# ==== ORDERDESK MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for OrderDesk.

This module provides the FastAPI application with middleware,
observability and error handling for the order lifecycle and payment
engine: order transitions, invoicing, reminders and payment
reconciliation.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text

from app.business.errors import OrderDeskError
from app.settings import settings
from app.storage.db import close_database, get_session, init_database, verify_schema_version
from app.observability.tracing import init_tracing
from app.observability.metrics import init_metrics, metrics_router
from app.observability.logging import get_logger, init_logging
from app.middleware.correlation import CorrelationMiddleware
from app.routes import invoices, orders, payments, reminders
from app.routes import settings as settings_routes


logger = get_logger(__name__)

APP_VERSION = "0.1.0"


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Initializes logging, tracing and the database, then refuses to start
    if the database schema version does not match this build.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: Control back to FastAPI during application runtime
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_TO_FILES)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    version = await verify_schema_version()
    logger.info("OrderDesk started", schema_version=version, environment=settings.APP_ENV)

    yield

    # --► SHUTDOWN SEQUENCE
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="OrderDesk",
        description="Order lifecycle, invoicing and payment reconciliation",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    app.add_middleware(CorrelationMiddleware)

    # --► HEALTH CHECK ENDPOINTS
    _register_health_endpoints(app)

    # --► ROUTER REGISTRATION
    _register_routers(app)

    # --► EXCEPTION HANDLERS
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register health check endpoints for liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        """Liveness probe; does not touch the database."""
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check():
        """
        Readiness probe endpoint for container orchestration.

        Returns:
            dict: Readiness status, or 503 when the database is unreachable
        """
        try:
            async with get_session() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Readiness check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "service": settings.SERVICE_NAME, "database": "disconnected"}
            )

        return {
            "status": "ready",
            "service": settings.SERVICE_NAME,
            "environment": settings.APP_ENV,
            "database": "connected"
        }


def _register_routers(app: FastAPI) -> None:
    """
    Register all application routers with appropriate prefixes and tags.

    Args:
        app (FastAPI): FastAPI application instance
    """
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
    app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
    app.include_router(settings_routes.router, prefix="/api/settings", tags=["settings"])
    app.include_router(reminders.router, prefix="/api/reminders", tags=["reminders"])
    app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
    app.include_router(payments.webhook_router, prefix="/api/webhooks", tags=["webhooks"])


# ==== EXCEPTION HANDLERS ==== #


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register global exception handlers.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(OrderDeskError)
    async def domain_exception_handler(request: Request, exc: OrderDeskError) -> JSONResponse:
        """
        Render a domain error with its taxonomy kind, code and message.

        Args:
            request (Request): HTTP request that caused the exception
            exc (OrderDeskError): Domain error raised by a service

        Returns:
            JSONResponse: Structured error with the correlation id
        """
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        if exc.status_code >= 500:
            logger.error("Request failed", code=exc.code, error=exc.message, path=request.url.path)
        else:
            logger.info("Request rejected", code=exc.code, error=exc.message, path=request.url.path)

        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "correlation_id": correlation_id}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Args:
            request (Request): HTTP request that caused the exception
            exc (Exception): Exception that occurred

        Returns:
            JSONResponse: Standardized error response without internal detail
        """
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {},
                "correlation_id": correlation_id
            }
        )


# ==== APPLICATION INSTANCE ==== #


app = create_app()
