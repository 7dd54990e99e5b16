"""Enumerations and fixed codes for notification delivery."""

from __future__ import annotations

from enum import StrEnum


class Channel(StrEnum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class Audience(StrEnum):
    USER = "user"
    COMPANY = "company"
    BROADCAST = "broadcast"


class LifecycleStatus(StrEnum):
    """Aggregate notification status, derived from its deliveries."""

    DRAFT = "draft"
    QUEUED = "queued"
    DISPATCHING = "dispatching"
    PARTIALLY_SENT = "partially-sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(StrEnum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DevicePlatform(StrEnum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"
    UNKNOWN = "unknown"


KNOWN_CHANNELS: frozenset[str] = frozenset(c.value for c in Channel)
KNOWN_PRIORITIES: frozenset[str] = frozenset(p.value for p in Priority)

# Channels used when a request does not name any.
PRIORITY_DEFAULT_CHANNELS: dict[str, tuple[Channel, ...]] = {
    Priority.LOW: (Channel.IN_APP,),
    Priority.NORMAL: (Channel.IN_APP,),
    Priority.HIGH: (Channel.IN_APP, Channel.PUSH),
    Priority.CRITICAL: (Channel.IN_APP, Channel.PUSH),
}

# Provider-backed channels in dispatch order; in-app runs after them.
PROVIDER_CHANNELS: tuple[Channel, ...] = (
    Channel.PUSH,
    Channel.EMAIL,
    Channel.SMS,
    Channel.WEBHOOK,
)

# Lifecycle states the dispatcher still looks at.
DISPATCHABLE_STATUSES: tuple[LifecycleStatus, ...] = (
    LifecycleStatus.QUEUED,
    LifecycleStatus.DISPATCHING,
    LifecycleStatus.PARTIALLY_SENT,
)

TERMINAL_DELIVERY_STATUSES: frozenset[DeliveryStatus] = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
)

DEFAULT_PUSH_PROVIDER = "expo"
IN_APP_EVENT = "notification:new"
CRITICAL_ANDROID_CHANNEL = "critical-alerts"


class ErrorCode(StrEnum):
    """Machine-readable reasons stored on a delivery."""

    PUSH_DISABLED = "push_disabled"
    IN_APP_DISABLED = "in_app_disabled"
    MISSING_DEVICE_TOKEN = "missing_device_token"
    PUSH_SEND_FAILED = "push_send_failed"
    PUSH_EXCEPTION = "push_exception"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"


def globally_disabled_code(channel: str) -> str:
    return f"{channel}_globally_disabled"


def channel_disabled_code(channel: str) -> str:
    return f"{channel}_disabled"


def not_configured_code(channel: str) -> str:
    return f"{channel}_not_configured"


def processor_exception_code(channel: str) -> str:
    return f"{channel}_exception"


ERROR_MESSAGES: dict[str, str] = {
    ErrorCode.PUSH_DISABLED: "Push delivery disabled by preferences or policy.",
    ErrorCode.IN_APP_DISABLED: "In-app delivery disabled by preferences or policy.",
    ErrorCode.MISSING_DEVICE_TOKEN: "No active push token found for user.",
    ErrorCode.PUSH_SEND_FAILED: "Push provider failed to deliver.",
    ErrorCode.CANCELLED_BY_ADMIN: "Notification cancelled by an administrator.",
}
