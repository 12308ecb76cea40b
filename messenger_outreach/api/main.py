"""FastAPI application factory and configuration."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from messenger_outreach.api.dependencies import get_storage
from messenger_outreach.api.routes import (
    ai_router,
    auth_router,
    automations_router,
    contact_timing_router,
    conversations_router,
    cron_router,
    diagnostics_router,
    health_router,
    messages_router,
    pages_router,
    pipeline_router,
    tags_router,
    uploads_router,
    webhooks_router,
)
from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import AppException
from messenger_outreach.core.logging import configure_logging
from messenger_outreach.services.facebook.client import get_graph_client

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info(
        "Starting Messenger Outreach API",
        environment=settings.app_env,
        debug=settings.app_debug,
    )

    storage = get_storage()
    logger.info("Storage backend ready", backend=type(storage).__name__)

    yield

    await get_graph_client().close()
    logger.info("Shutting down Messenger Outreach API")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Messenger Outreach API",
        description="Bulk Facebook Messenger outreach with batching, tagging and AI follow-ups",
        version="0.1.0",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Handle application-specific exceptions."""
        logger.warning(
            "Application exception",
            path=request.url.path,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(diagnostics_router)
    app.include_router(auth_router)
    app.include_router(pages_router)
    app.include_router(conversations_router)
    app.include_router(tags_router)
    app.include_router(messages_router)
    app.include_router(uploads_router)
    app.include_router(webhooks_router)
    app.include_router(automations_router)
    app.include_router(ai_router)
    app.include_router(contact_timing_router)
    app.include_router(pipeline_router)
    app.include_router(cron_router)

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": "Messenger Outreach API",
            "version": "0.1.0",
            "status": "running",
        }

    return app


# Create default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "messenger_outreach.api.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.is_development,
    )
