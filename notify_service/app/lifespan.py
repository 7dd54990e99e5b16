"""Application lifespan management.

Startup Order:
1. Core (logging, application info metric)
2. Database connectivity check
3. Dispatch scheduler (when NOTIFY_DISPATCHER_ENABLED)

Shutdown Order: reverse of startup, then live WebSocket connections.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING

from notify_service.core.settings import get_app_settings, get_notification_settings
from notify_service.features.notifications.scheduler import (
    DispatchScheduler,
    get_dispatch_scheduler,
    set_dispatch_scheduler,
)
from notify_service.infra.database import close_database, get_sessionmaker, init_database
from notify_service.infra.logging import setup_logging, shutdown
from notify_service.infra.metrics.prometheus import application_info
from notify_service.infra.realtime import get_connection_manager, stop_connection_manager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)


async def _startup_core() -> None:
    setup_logging()
    app_settings = get_app_settings()
    application_info.labels(
        version=app_settings.version,
        service=app_settings.service_name,
        environment=app_settings.environment,
    ).set(1)


async def _startup_dispatcher() -> None:
    settings = get_notification_settings()
    if not settings.dispatcher_enabled:
        logger.info("Dispatch scheduler disabled")
        return

    scheduler = DispatchScheduler.create(
        get_sessionmaker(),
        settings=settings,
        publisher=get_connection_manager(),
    )
    scheduler.start()
    set_dispatch_scheduler(scheduler)


async def _shutdown_dispatcher() -> None:
    scheduler = get_dispatch_scheduler()
    if scheduler is None:
        return
    await scheduler.stop()
    set_dispatch_scheduler(None)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle.

    Args:
        app: FastAPI application instance.

    Yields:
        None during application runtime.
    """
    _ = app

    await _startup_core()
    await init_database()
    await _startup_dispatcher()

    app_settings = get_app_settings()
    logger.info(
        "Application startup complete",
        extra={
            "service": app_settings.service_name,
            "environment": app_settings.environment,
            "version": app_settings.version,
        },
    )

    try:
        yield
    finally:
        logger.info("Application shutdown started")
        await _shutdown_dispatcher()
        await stop_connection_manager()
        await close_database()
        logger.info("Application shutdown complete")
        shutdown()
