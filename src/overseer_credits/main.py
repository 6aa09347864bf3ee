"""Overseer credits service - FastAPI application."""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from overseer_credits.config import Settings, get_settings
from overseer_credits.routes import batch, billing
from overseer_credits.sentry import SentryConfig, configure_logging, flush, init_sentry
from overseer_credits.services import ServiceContainer

SERVICE_NAME = "overseer-credits"

logger = structlog.get_logger()


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a generic 500 so internal details never reach the client.

    The exception is logged with an error ID the client can quote.
    """
    error_id = str(uuid.uuid4())[:8]

    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application.

    The service container is created in the lifespan, so tests may assign
    ``app.state.services`` themselves and skip it.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        init_sentry(SentryConfig.from_settings(SERVICE_NAME, settings))
        configure_logging(
            SERVICE_NAME,
            settings.LOG_LEVEL,
            json_format=settings.LOG_JSON,
            environment=settings.ENVIRONMENT,
        )
        logger.info("Starting overseer credits", version=settings.VERSION)

        services = ServiceContainer.from_settings(settings)
        await services.start()
        app.state.services = services

        yield

        logger.info("Shutting down overseer credits")
        await services.close()
        flush()

    app = FastAPI(
        title="Overseer Credits",
        description="Credit ledger and batch job API for agent workloads.",
        version=settings.VERSION,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.add_exception_handler(Exception, _global_exception_handler)

    api_v1 = APIRouter()
    api_v1.include_router(billing.router)
    api_v1.include_router(batch.router)
    app.include_router(api_v1, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.VERSION}

    return app
