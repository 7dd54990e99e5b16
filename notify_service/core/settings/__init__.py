"""Modular Pydantic Settings v2 configuration.

Each domain has its own settings class and env prefix:

- APP_     application / HTTP surface
- DB_      database (DATABASE_URL for a full DSN)
- LOG_     logging
- NOTIFY_  dispatcher, channel kill switches, retry policy
- PUSH_    push provider credentials and transport

Import settings via the cached loaders:
    from notify_service.core.settings import get_notification_settings
"""

from __future__ import annotations

from .loader import (
    clear_all_caches,
    get_app_settings,
    get_db_settings,
    get_logging_settings,
    get_notification_settings,
    get_push_settings,
)

__all__ = [
    "clear_all_caches",
    "get_app_settings",
    "get_db_settings",
    "get_logging_settings",
    "get_notification_settings",
    "get_push_settings",
]
