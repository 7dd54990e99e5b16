"""Pydantic schemas for the notifications feature."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from notify_service.features.notifications.constants import (
    DEFAULT_PUSH_PROVIDER,
    KNOWN_PRIORITIES,
    Audience,
    DevicePlatform,
    Priority,
)
from notify_service.features.notifications.models import Notification, NotificationDelivery
from notify_service.utils.timeutils import ensure_utc

# ============================================================================
# Dispatch
# ============================================================================


class DeliveryPolicyIn(BaseModel):
    """Per-notification delivery flags."""

    allow_in_app: bool = True
    allow_push: bool = True
    respect_quiet_hours: bool = True
    allow_critical_override: bool = True
    max_retries: int | None = Field(
        default=None,
        ge=0,
        le=10,
        description="Attempt budget per channel; service default when omitted",
    )


class DispatchRequest(BaseModel):
    """Request to create and dispatch a notification."""

    title: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    event_key: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Namespaced business event, e.g. company.verification.approved",
    )
    topic: str = Field(default="general", min_length=1, max_length=100)
    priority: str = Field(
        default=Priority.NORMAL.value,
        description="low, normal, high or critical; anything else is treated as normal",
    )
    channels: list[str] | None = Field(
        default=None,
        description="Requested channels; defaults depend on priority. Unknown names are dropped.",
    )
    data: dict[str, Any] = Field(default_factory=dict)
    action: dict[str, Any] | None = None
    requires_ack: bool = False
    is_silent: bool = Field(default=False, description="Send push without sound")
    scheduled_at: datetime | None = Field(default=None, description="Do not dispatch before this instant")
    expires_at: datetime | None = Field(default=None, description="Purge after this instant")
    delivery_policy: DeliveryPolicyIn | None = None
    deduplication_key: str | None = Field(default=None, min_length=1, max_length=200)
    audience: Audience = Audience.USER
    recipient_user_id: str | None = Field(default=None, min_length=1, max_length=255)
    recipient_company_id: str | None = Field(default=None, max_length=255)
    recipients: list[str] = Field(
        default_factory=list,
        description="Explicit recipients; one notification is created per user",
    )

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> str:
        value = str(value).strip().lower() if value is not None else ""
        return value if value in KNOWN_PRIORITIES else Priority.NORMAL.value

    @field_validator("recipients")
    @classmethod
    def dedupe_recipients(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for recipient in value:
            recipient = recipient.strip()
            if recipient and recipient not in seen:
                seen.append(recipient)
        return seen

    def resolved_recipients(self) -> list[str]:
        """Explicit recipients, else the single recipient user, else nobody."""
        if self.recipients:
            return list(self.recipients)
        if self.recipient_user_id:
            return [self.recipient_user_id]
        return []


class DispatchResult(BaseModel):
    """Outcome of a dispatch request."""

    notification_ids: list[UUID]
    created: int = Field(description="Notifications created by this request")
    deduplicated: int = Field(description="Recipients answered with an existing notification")


# ============================================================================
# Read models
# ============================================================================


class DeliveryRead(BaseModel):
    channel: str
    status: str
    attempt_count: int
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failure_at: datetime | None = None
    next_retry_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def from_model(cls, delivery: NotificationDelivery) -> DeliveryRead:
        return cls(
            channel=delivery.channel,
            status=delivery.status,
            attempt_count=delivery.attempt_count,
            sent_at=ensure_utc(delivery.sent_at),
            delivered_at=ensure_utc(delivery.delivered_at),
            failure_at=ensure_utc(delivery.failure_at),
            next_retry_at=ensure_utc(delivery.next_retry_at),
            error_code=delivery.error_code,
            error_message=delivery.error_message,
        )


class NotificationRead(BaseModel):
    """Notification as shown to its recipient (list items and live events)."""

    id: UUID
    title: str
    body: str
    event_key: str
    topic: str
    priority: str
    data: dict[str, Any] = Field(default_factory=dict)
    action: dict[str, Any] | None = None
    channels: list[str]
    requires_ack: bool
    is_silent: bool = False
    ack_at: datetime | None = None
    status: Literal["read", "unread"]
    lifecycle_status: str
    read_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime
    deliveries: list[DeliveryRead] = Field(default_factory=list)

    @classmethod
    def from_model(cls, notification: Notification) -> NotificationRead:
        return cls(
            id=notification.id,
            title=notification.title,
            body=notification.body,
            event_key=notification.event_key,
            topic=notification.topic,
            priority=notification.priority,
            data=notification.data or {},
            action=notification.action,
            channels=list(notification.channels),
            requires_ack=notification.requires_ack,
            is_silent=notification.is_silent,
            ack_at=ensure_utc(notification.ack_at),
            status="read" if notification.read_at else "unread",
            lifecycle_status=notification.status,
            read_at=ensure_utc(notification.read_at),
            archived_at=ensure_utc(notification.archived_at),
            created_at=ensure_utc(notification.created_at),
            deliveries=[DeliveryRead.from_model(d) for d in notification.deliveries],
        )


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class NotificationListResponse(BaseModel):
    items: list[NotificationRead]
    pagination: Pagination


class NotificationListFilters(BaseModel):
    """Inbox filters; ``limit`` and ``offset`` are clamped rather than rejected."""

    status: Literal["unread", "read"] | None = None
    archived: bool = False
    topic: str | None = None
    priority: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    search: str | None = Field(default=None, max_length=200)
    limit: int = 20
    offset: int = 0

    @field_validator("limit", mode="after")
    @classmethod
    def clamp_limit(cls, value: int) -> int:
        return min(max(value, 1), 100)

    @field_validator("offset", mode="after")
    @classmethod
    def clamp_offset(cls, value: int) -> int:
        return max(value, 0)


class UnreadCountResponse(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int


# ============================================================================
# Devices
# ============================================================================


class DeviceRegister(BaseModel):
    push_token: str = Field(..., min_length=1, max_length=255)
    platform: DevicePlatform = DevicePlatform.UNKNOWN
    provider: str = Field(default=DEFAULT_PUSH_PROVIDER, max_length=50)
    device_id: str | None = Field(default=None, max_length=255)
    app_version: str | None = Field(default=None, max_length=50)


class DeviceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    push_token: str
    provider: str
    platform: str
    device_id: str | None = None
    app_version: str | None = None
    is_active: bool
    last_seen_at: datetime | None = None


# ============================================================================
# Preferences
# ============================================================================


class QuietHoursDocument(BaseModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"


class PreferencesRead(BaseModel):
    master_enabled: bool
    in_app_enabled: bool
    push_enabled: bool
    email_enabled: bool
    sms_enabled: bool
    quiet_hours: QuietHoursDocument
    topic_overrides: dict[str, dict[str, bool]] = Field(default_factory=dict)
    priority_overrides: dict[str, dict[str, bool]] = Field(default_factory=dict)


class QuietHoursUpdate(BaseModel):
    enabled: bool | None = None
    start: str | None = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    end: str | None = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    timezone: str | None = Field(default=None, min_length=1, max_length=64)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"Unknown timezone: {value}"
            raise ValueError(msg) from exc
        return value


class PreferencesUpdate(BaseModel):
    """Partial preference update.

    Override maps merge per key; sending ``null`` for a key removes that
    override.
    """

    master_enabled: bool | None = None
    in_app_enabled: bool | None = None
    push_enabled: bool | None = None
    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    quiet_hours: QuietHoursUpdate | None = None
    topic_overrides: dict[str, dict[str, bool] | None] | None = None
    priority_overrides: dict[str, dict[str, bool] | None] | None = None


# ============================================================================
# Admin
# ============================================================================


class AdminNotificationRead(NotificationRead):
    """Notification as shown to the operator who dispatched it."""

    audience: str
    recipient_user_id: str | None = None
    recipient_company_id: str | None = None
    created_by: str | None = None
    deduplication_key: str | None = None
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_model(cls, notification: Notification) -> AdminNotificationRead:
        base = NotificationRead.from_model(notification)
        return cls(
            **base.model_dump(),
            audience=notification.audience,
            recipient_user_id=notification.recipient_user_id,
            recipient_company_id=notification.recipient_company_id,
            created_by=notification.created_by,
            deduplication_key=notification.deduplication_key,
            scheduled_at=ensure_utc(notification.scheduled_at),
            expires_at=ensure_utc(notification.expires_at),
            cancelled_at=ensure_utc(notification.cancelled_at),
        )


class AdminNotificationListResponse(BaseModel):
    items: list[AdminNotificationRead]
    pagination: Pagination


class AdminNotificationFilters(BaseModel):
    """Operator console filters, scoped to the caller's own notifications."""

    recipient_user_id: str | None = None
    event_key: str | None = None
    topic: str | None = None
    priority: str | None = None
    status: str | None = Field(default=None, description="Lifecycle status")
    search: str | None = Field(default=None, max_length=200)
    limit: int = 20
    offset: int = 0

    @field_validator("priority", mode="after")
    @classmethod
    def drop_unknown_priority(cls, value: str | None) -> str | None:
        return value if value in KNOWN_PRIORITIES else None

    @field_validator("limit", mode="after")
    @classmethod
    def clamp_limit(cls, value: int) -> int:
        return min(max(value, 1), 100)

    @field_validator("offset", mode="after")
    @classmethod
    def clamp_offset(cls, value: int) -> int:
        return max(value, 0)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelResult(BaseModel):
    notification_id: UUID
    cancelled_channels: list[str]
    lifecycle_status: str
