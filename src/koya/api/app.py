"""FastAPI application for Koya webhooks."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from koya import __version__
from koya.config import Settings
from koya.exceptions import (
    AuthenticationError,
    InvalidTransitionError,
    KoyaError,
    NotFoundError,
    ValidationError,
)
from koya.logging import configure_from_settings, get_logger
from koya.models import WebhookSource
from koya.service import WebhookService
from koya.webhooks import InboundHandler

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the WebhookService on startup and release it on shutdown."""
    settings: Settings = app.state.settings

    configure_from_settings(settings)
    logger.info(
        "koya_api_starting",
        storage_backend=settings.storage_backend,
        log_level=settings.log_level,
    )
    if not settings.is_job_auth_enabled:
        logger.warning("job_auth_disabled", env=settings.env)

    service = WebhookService.create(settings, handlers=app.state.handlers)
    await service.initialize()
    set_service(service)

    yield

    await service.close()
    set_service(None)


def register_exception_handlers(app: FastAPI) -> None:
    """Map Koya exceptions to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.warning(
            "validation_error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        logger.warning("authentication_failed", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=401, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.info(
            "resource_not_found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        logger.info("invalid_transition", record_id=exc.record_id, current=exc.current)
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(KoyaError)
    async def koya_error_handler(request: Request, exc: KoyaError) -> JSONResponse:
        """Handle all other Koya errors with 500 status."""
        logger.error("koya_error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())


def create_app(
    settings: Settings | None = None,
    handlers: dict[WebhookSource, InboundHandler] | None = None,
) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.
        handlers: Inbound handlers by source for the inbound retry job.

    Example:
        ```python
        from koya.api import create_app

        app = create_app(handlers={"stripe": handle_stripe_event})
        # Run with: uvicorn koya.api:app
        ```
    """
    app = FastAPI(
        title="Koya Webhooks",
        description="Outbound webhook delivery and inbound webhook recovery.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    app.state.handlers = handlers

    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
