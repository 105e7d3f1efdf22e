"""FastAPI Application Factory.

Creates the push-notification API: request tracing, error mapping for
the notification exception hierarchy, and the /notifications router.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.logging_config import LoggingConfig, RequestTracingMiddleware, configure_logging
from src.notifications import routes
from src.notifications.errors import (
    InvalidRequestError,
    MaintenanceAlreadyRunningError,
    NotificationError,
)
from src.notifications.service import PushNotificationService
from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidRequestError)
    async def invalid_request(request: Request, exc: InvalidRequestError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": exc.message, "field": exc.field},
        )

    @app.exception_handler(MaintenanceAlreadyRunningError)
    async def maintenance_running(
        request: Request, exc: MaintenanceAlreadyRunningError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "error": exc.message,
                "running_job_id": exc.running_job_id,
                "retryable": exc.retryable,
            },
        )

    @app.exception_handler(NotificationError)
    async def notification_error(request: Request, exc: NotificationError) -> JSONResponse:
        logger.error("Unhandled notification error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=500, content={"error": exc.message})


def create_app(
    service: Optional[PushNotificationService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service instance to serve. Built from settings if omitted.
        settings: Process settings. Uses ``get_settings()`` if omitted.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()
    service = service or PushNotificationService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LoggingConfig.from_settings(settings))
        logger.info("Push notification API starting up")
        yield
        await service.close()
        logger.info("Push notification API shutting down")

    app = FastAPI(
        title="Xsite Push Notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.cron_secret = settings.cron_secret

    app.add_middleware(RequestTracingMiddleware)
    _install_error_handlers(app)
    app.include_router(routes.router)

    logger.info("Push notification API initialized")
    return app
