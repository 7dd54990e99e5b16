"""Context propagation for structured logging.

A contextvar holds the current log context (request_id, user_id, cycle_id,
notification_id, channel...). ContextInjectingFilter copies it onto every
record, so dispatch logs carry the cycle and candidate they belong to
without threading those values through every call.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Add fields to the log context of the current task.

    Example:
        set_log_context(request_id="abc-123", user_id="u-1")
        logger.info("Listing notifications")  # carries request_id and user_id
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the current log context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Reset the log context of the current task."""
    _log_context.set({})


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Scope extra log context to a block and restore the previous context.

    Example:
        with log_context(notification_id=str(n.id), channel="push"):
            await processor.process(...)
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextInjectingFilter(logging.Filter):
    """Copy the contextvar log context onto each LogRecord.

    Attached to the root logger by configure_logging(). Existing record
    attributes (including ``extra=``) are never overwritten.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
