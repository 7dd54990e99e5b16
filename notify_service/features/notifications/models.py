"""SQLAlchemy models for the notifications feature."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from notify_service.core.database import UUIDv7TimestampedBase
from notify_service.features.notifications.constants import (
    DEFAULT_PUSH_PROVIDER,
    Audience,
    DeliveryStatus,
    DevicePlatform,
    LifecycleStatus,
    Priority,
)

JSONType = JSONB().with_variant(JSON(), "sqlite")


class Notification(UUIDv7TimestampedBase):
    """Notification aggregate.

    One row per recipient (fan-out happens before creation). The per-channel
    delivery state lives in NotificationDelivery rows; ``status`` is derived
    from them by ``lifecycle.compute_lifecycle_status`` and is never set by
    callers.

    Indexes:
        - (recipient_user_id, archived_at, read_at) for inbox queries
        - (status, scheduled_at) for dispatch candidate scans
        - expires_at for TTL purges
        - created_by for the operator console
    """

    __tablename__ = "notifications"

    # Audience
    audience: Mapped[str] = mapped_column(
        String(20),
        default=Audience.USER.value,
        nullable=False,
        comment="Audience: user, company, broadcast",
    )
    recipient_user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Recipient user id (user audience and fan-out rows)",
    )
    recipient_company_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Recipient company id (company audience)",
    )
    recipients: Mapped[list[str]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
        comment="Explicit recipient list resolved by the caller",
    )

    # Classification
    event_key: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
        comment="Namespaced business event, e.g. company.verification.approved",
    )
    topic: Mapped[str] = mapped_column(
        String(100),
        default="general",
        nullable=False,
        comment="Coarse category used for preference overrides",
    )
    priority: Mapped[str] = mapped_column(
        String(20),
        default=Priority.NORMAL.value,
        nullable=False,
        comment="Priority: low, normal, high, critical",
    )

    # Content
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="User-facing title",
    )
    body: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        comment="User-facing body",
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
        comment="Opaque payload for client-side routing",
    )
    action: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Optional client action (e.g. {type, route, params})",
    )
    requires_ack: Mapped[bool] = mapped_column(
        Boolean(),
        default=False,
        nullable=False,
        comment="Whether the recipient must acknowledge",
    )
    is_silent: Mapped[bool] = mapped_column(
        Boolean(),
        default=False,
        nullable=False,
        comment="Push without sound",
    )

    # Provenance
    created_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="User id of the operator or producer that dispatched it",
    )

    # Delivery configuration
    channels: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Requested channels, deduplicated, never empty",
    )
    delivery_policy: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
        comment="Per-notification policy flags (allow_push, max_retries, ...)",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=LifecycleStatus.QUEUED.value,
        nullable=False,
        index=True,
        comment="Aggregate lifecycle status derived from deliveries",
    )
    deduplication_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="Idempotency key for one logical event and recipient",
    )

    # Timing
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Not dispatched before this instant",
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Purged once this instant has passed",
    )

    # Recipient-facing state
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the recipient read it",
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the recipient archived it",
    )
    ack_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the recipient acknowledged it",
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When an administrator cancelled it",
    )

    deliveries: Mapped[list[NotificationDelivery]] = relationship(
        "NotificationDelivery",
        back_populates="notification",
        cascade="all, delete-orphan",
        order_by="NotificationDelivery.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_notification_inbox", "recipient_user_id", "archived_at", "read_at"),
        Index("idx_notification_dispatch", "status", "scheduled_at"),
    )

    def delivery_for(self, channel: str) -> NotificationDelivery | None:
        """Return the delivery row for ``channel`` if the notification has one."""
        for delivery in self.deliveries:
            if delivery.channel == channel:
                return delivery
        return None


class NotificationDelivery(UUIDv7TimestampedBase):
    """Delivery lineage for one channel of one notification.

    Addressed by (notification_id, channel); the dispatcher's claim is a
    conditional UPDATE against that pair.

    Indexes:
        - unique (notification_id, channel)
        - (channel, status, next_retry_at) for candidate scans
    """

    __tablename__ = "notification_deliveries"

    notification_id: Mapped[UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent notification",
    )
    channel: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Channel: in_app, push, email, sms, webhook",
    )
    position: Mapped[int] = mapped_column(
        Integer(),
        default=0,
        nullable=False,
        comment="Index of the channel in the notification's channel list",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryStatus.QUEUED.value,
        nullable=False,
        comment="Status: queued, sending, sent, delivered, failed, cancelled",
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer(),
        default=0,
        nullable=False,
        comment="Incremented by every successful claim",
    )

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When delivery on this channel was requested",
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last claim / send start",
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When delivery succeeded",
    )
    failure_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When delivery failed permanently",
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Earliest instant a queued retry may be claimed",
    )

    error_code: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Last failure or cancellation reason code",
    )
    error_message: Mapped[str | None] = mapped_column(
        Text(),
        nullable=True,
        comment="Last failure or cancellation message",
    )
    provider_message_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Provider ticket/message id on success",
    )

    notification: Mapped[Notification] = relationship(
        "Notification",
        back_populates="deliveries",
        lazy="select",
    )

    __table_args__ = (
        UniqueConstraint("notification_id", "channel", name="uq_delivery_notification_channel"),
        Index("idx_delivery_channel_status_retry", "channel", "status", "next_retry_at"),
    )


class UserDevice(UUIDv7TimestampedBase):
    """Push registration for a user's device.

    Created and refreshed by client registration; the dispatcher only reads
    active tokens and deactivates tokens the provider reports as dead.
    """

    __tablename__ = "user_devices"

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user",
    )
    push_token: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Provider push token",
    )
    provider: Mapped[str] = mapped_column(
        String(50),
        default=DEFAULT_PUSH_PROVIDER,
        nullable=False,
        comment="Push provider (expo)",
    )
    platform: Mapped[str] = mapped_column(
        String(20),
        default=DevicePlatform.UNKNOWN.value,
        nullable=False,
        comment="Platform: ios, android, web, unknown",
    )
    device_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Client-supplied device identifier",
    )
    app_version: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Client app version at registration",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean(),
        default=True,
        nullable=False,
        comment="Whether the token is used for delivery",
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last registration refresh",
    )
    last_error_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the provider last rejected the token",
    )
    last_error_message: Mapped[str | None] = mapped_column(
        Text(),
        nullable=True,
        comment="Provider rejection message",
    )

    __table_args__ = (Index("idx_device_user_active", "user_id", "provider", "is_active"),)


class UserNotificationPreference(UUIDv7TimestampedBase):
    """Per-user delivery preferences.

    ``preferences`` holds the stored document; absent keys fall back to the
    defaults in ``policy.DeliveryPreferences``.
    """

    __tablename__ = "user_notification_preferences"

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Owning user",
    )
    preferences: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
        comment="Preference document (flags, quiet hours, overrides)",
    )
