"""Middleware configuration for FastAPI application."""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING

from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from notify_service.core.settings import get_app_settings
from notify_service.infra.logging import clear_log_context, set_log_context
from notify_service.infra.metrics.prometheus import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import FastAPI, Request, Response

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the request, the log context and the response.

    The id is taken from the X-Request-ID header or generated. The log
    context is cleared when the request finishes.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_log_context(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            clear_log_context()
        response.headers["X-Request-ID"] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collect HTTP metrics with trace correlation via exemplars.

    Route path templates are used as the endpoint label to keep cardinality
    low. When a valid span is active its trace id is attached as an exemplar.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        endpoint = request.url.path
        route = request.scope.get("route")
        if route is not None and hasattr(route, "path"):
            endpoint = route.path
        method = request.method

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Process-Time"] = str(time.perf_counter() - start_time)
            return response
        finally:
            duration = time.perf_counter() - start_time

            span_context = trace.get_current_span().get_span_context()
            exemplar = {"trace_id": format(span_context.trace_id, "032x")} if span_context.is_valid else None

            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                duration, exemplar=exemplar
            )
            http_requests_total.labels(method=method, endpoint=endpoint, status=status_code).inc(
                exemplar=exemplar
            )
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def configure_middleware(app: FastAPI) -> None:
    """Configure middleware for the application.

    Starlette runs the last added middleware first, so request ids are bound
    before metrics are recorded.
    """
    app_settings = get_app_settings()

    if app_settings.cors_origins:
        logger.info("Configuring CORS", extra={"origins": app_settings.cors_origins})
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            max_age=3600,
        )

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
