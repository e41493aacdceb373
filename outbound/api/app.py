"""FastAPI application for the outbound delivery service.

This module provides:
- create_app(): builds the application around an OutboundService
- Lifespan handling that starts and stops the service
- Error handling for store outages and unexpected errors
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from outbound.api.emails import router as emails_router
from outbound.api.webhooks import router as webhooks_router
from outbound.config import Settings
from outbound.errors import StoreUnavailableError
from outbound.logging import configure_logging
from outbound.service import OutboundService

logger = structlog.get_logger(__name__)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")


def create_app(
    service: OutboundService | None = None,
    *,
    title: str = "InsightHub Outbound API",
    version: str = "1.0.0",
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service to expose. When omitted, one is built from
            environment settings and logging is configured from them.
        title: API title.
        version: API version.

    Returns:
        Configured FastAPI application.
    """
    if service is None:
        settings = Settings.from_env()
        configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
        service = OutboundService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: ARG001
        """Start the service on startup and stop it on shutdown."""
        logger.info("application_starting")
        await service.start()

        yield

        logger.info("application_shutting_down")
        await service.stop()

    app = FastAPI(title=title, version=version, lifespan=lifespan)
    app.state.outbound = service

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("store_unavailable", operation=exc.operation, error=exc.message)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error="Service temporarily unavailable",
                detail=exc.operation,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Internal server error").model_dump(),
        )

    app.include_router(webhooks_router)
    app.include_router(emails_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {
            "status": "ok",
            "email_dispatcher_running": service.email_dispatcher.is_running,
            "pending_webhook_deliveries": service.webhook_dispatcher.pending_deliveries,
        }

    return app
