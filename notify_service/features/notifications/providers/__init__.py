"""Push provider adapters."""

from __future__ import annotations

from notify_service.features.notifications.providers.base import (
    DEVICE_NOT_REGISTERED,
    NETWORK_ERROR,
    PushBatchResult,
    PushMessage,
    PushProvider,
    PushTicket,
)
from notify_service.features.notifications.providers.expo import (
    ExpoPushProvider,
    is_expo_push_token,
)

__all__ = [
    "DEVICE_NOT_REGISTERED",
    "NETWORK_ERROR",
    "ExpoPushProvider",
    "PushBatchResult",
    "PushMessage",
    "PushProvider",
    "PushTicket",
    "is_expo_push_token",
]
