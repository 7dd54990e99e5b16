"""Logging infrastructure.

Structured JSONL logging with contextvars-based context injection and a
non-blocking QueueHandler/QueueListener pipeline.

Basic usage:
    import logging
    from notify_service.infra.logging import set_log_context

    logger = logging.getLogger(__name__)
    set_log_context(request_id="abc-123", user_id="u-1")
    logger.info("Processing request")  # includes request_id and user_id

    from notify_service.infra.logging import get_lazy_logger

    lazy_logger = get_lazy_logger(__name__)
    lazy_logger.debug(lambda: f"Candidates: {[str(n.id) for n in rows]}")
"""

from notify_service.infra.logging.config import configure_logging, setup_logging, shutdown
from notify_service.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from notify_service.infra.logging.formatters import JSONFormatter
from notify_service.infra.logging.lazy import LazyLoggerAdapter, get_lazy_logger

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "LazyLoggerAdapter",
    "clear_log_context",
    "configure_logging",
    "get_lazy_logger",
    "get_log_context",
    "log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
