"""Router registry and setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST

from notify_service.core.settings import get_app_settings
from notify_service.features.notifications.router import router as notifications_router
from notify_service.infra.metrics import REGISTRY, generate_latest

if TYPE_CHECKING:
    from fastapi import FastAPI

    from notify_service.core.settings.app import AppSettings

logger = logging.getLogger(__name__)

observability_router = APIRouter(tags=["observability"])


@observability_router.get(
    "/metrics",
    summary="Prometheus metrics",
    response_class=Response,
    include_in_schema=False,
)
async def metrics() -> Response:
    """Prometheus scrape endpoint for the service registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@observability_router.get("/health", summary="Liveness probe")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def setup_routers(app: FastAPI, app_settings: AppSettings | None = None) -> None:
    """Register all routers with the application.

    Args:
        app: FastAPI application instance.
        app_settings: Optional application settings override for the API prefix.
    """
    app_settings = app_settings or get_app_settings()
    api_prefix = app_settings.api_prefix

    # No prefix: scraped at /metrics
    app.include_router(observability_router)
    app.include_router(notifications_router, prefix=api_prefix)

    logger.info("Routers configured", extra={"api_prefix": api_prefix})
