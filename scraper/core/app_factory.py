"""
Application Factory Pattern

Creates the FastAPI app: logging first, then routers and the exception
handlers that map scheduling errors to HTTP responses.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from scraper.core.config import Settings, get_settings
from scraper.core.exceptions import (
    CapacityError,
    ConfigurationError,
    ConflictError,
    InvalidTargetTypeError,
    NotFoundError,
    SchedulingError,
    UpstreamError,
)
from scraper.core.logging import setup_logging

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    CapacityError: status.HTTP_409_CONFLICT,
    InvalidTargetTypeError: status.HTTP_400_BAD_REQUEST,
    UpstreamError: status.HTTP_502_BAD_GATEWAY,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for_error(error: SchedulingError) -> int:
    for error_class in type(error).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def setup_routers(app: FastAPI) -> list:
    """Include every router from the registry."""
    from scraper.api._registry import ROUTERS

    loaded = []
    for router in ROUTERS:
        app.include_router(router)
        loaded.append(router.prefix or "/")
    logger.info("Loaded {} routers: {}".format(len(loaded), ", ".join(loaded)))
    return loaded


def setup_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("{} {} failed: {}".format(request.method, request.url.path, exc.message))
        return JSONResponse(
            status_code=status_code,
            content={"detail": {"message": exc.message, "reason": exc.reason}},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"message": str(exc), "reason": "invalid_request"}},
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create FastAPI application with factory pattern.

    Args:
        settings: Optional settings; defaults to the cached environment settings

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    setup_logging(
        level=settings.log_level,
        use_json=settings.use_json_logging or settings.is_production,
        service_name=settings.service_name,
    )

    logger.info("Creating FastAPI application")
    logger.info("Environment: {}".format(settings.environment))

    app = FastAPI(
        title="Review Scraper Scheduling Service",
        description="Shared interval schedules for multi-tenant review collection",
        version="1.0.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )

    setup_routers(app)
    setup_exception_handlers(app)
    return app
