"""FastAPI application entry-point for the revenue API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from revenue_api import __version__
from revenue_api.config import load_api_settings
from revenue_api.container import ServiceContainer
from revenue_api.dependencies import dispose_container, init_container
from revenue_api.middleware.json_formatter import configure_json_logging
from revenue_api.middleware.logging import RequestLoggingMiddleware
from revenue_api.middleware.prometheus import PrometheusMiddleware
from revenue_api.routers import api_keys, connections, health, revenue, stats
from revenue_api.routers import metrics as metrics_router
from revenue_engine.config import load_settings
from revenue_engine.errors import NotFoundError, SigningError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON logging when configured.
    - Build the service container (engine, vault, signing service, HTTP
      client, orchestrator, scheduler) and install it for injection.
    - Create tables for local SQLite; PostgreSQL uses Alembic migrations.
    - Start the background sync scheduler.

    On shutdown:
    - Stop the scheduler, letting an in-flight pass finish within the
      grace period.
    - Close the HTTP client and dispose the engine pool.
    """
    api_settings = load_api_settings()
    if api_settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    settings = load_settings()
    container = init_container(ServiceContainer(settings, api_settings))
    await container.start()

    yield

    await dispose_container()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Revenue API",
        description="Verified revenue telemetry from payment processors.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added is outermost) ---------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(connections.router, prefix="/api/v1")
    app.include_router(revenue.router, prefix="/api/v1")
    app.include_router(stats.router, prefix="/api/v1")
    app.include_router(api_keys.router, prefix="/api/v1")

    # Metrics endpoint outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Rejected input on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "INVALID_INPUT", "message": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "NOT_FOUND", "message": str(exc)})

    @app.exception_handler(SigningError)
    async def signing_error_handler(request: Request, exc: SigningError) -> JSONResponse:
        logger.error("Signing unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"error": "SIGNING_UNAVAILABLE", "message": "Signing key is unavailable"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "message": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn revenue_api.main:app``.
app = create_app()
