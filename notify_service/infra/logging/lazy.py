"""Lazy log message evaluation.

Repository and dispatch code log per-row debug lines; building those strings
for every candidate is wasted work when DEBUG is off. LazyLoggerAdapter
accepts callables for the message and arguments and only calls them when
the level is enabled.
"""

from __future__ import annotations

import logging
from typing import Any


class LazyLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that evaluates callable messages/args on demand.

    Example:
        lazy = LazyLoggerAdapter(logging.getLogger(__name__), {})
        lazy.debug(lambda: f"db.claim({notification_id}, {channel}) -> {won}")
    """

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        if not self.isEnabledFor(level):
            return
        if callable(msg):
            msg = msg()
        if args:
            args = tuple(arg() if callable(arg) else arg for arg in args)
        super().log(level, msg, *args, **kwargs)

    def debug(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)


def get_lazy_logger(name: str, **context: Any) -> LazyLoggerAdapter:
    """Get a logger adapter with lazy evaluation and optional bound context.

    Args:
        name: Logger name (usually __name__).
        **context: Fields added to every record's extra.
    """
    return LazyLoggerAdapter(logging.getLogger(name), context or {})
