"""Channel processors for claimed deliveries."""

from __future__ import annotations

from notify_service.features.notifications.channels.base import (
    ChannelProcessor,
    DeliveryOutcome,
    load_preferences,
)
from notify_service.features.notifications.channels.in_app import InAppChannelProcessor
from notify_service.features.notifications.channels.push import (
    PushChannelProcessor,
    build_push_message,
)
from notify_service.features.notifications.channels.stubs import (
    NotConfiguredChannelProcessor,
    build_stub_processors,
)

__all__ = [
    "ChannelProcessor",
    "DeliveryOutcome",
    "InAppChannelProcessor",
    "NotConfiguredChannelProcessor",
    "PushChannelProcessor",
    "build_push_message",
    "build_stub_processors",
    "load_preferences",
]
