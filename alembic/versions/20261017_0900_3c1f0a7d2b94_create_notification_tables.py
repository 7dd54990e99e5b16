"""create notification tables

Revision ID: 3c1f0a7d2b94
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1f0a7d2b94"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = postgresql.JSONB(astext_type=sa.Text()).with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False, comment="UUID v7 primary key (time-sortable)"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
            comment="Timestamp of record creation",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
            comment="Timestamp of last update",
        ),
    ]


def upgrade() -> None:
    """Create notifications, deliveries, devices and preferences."""
    op.create_table(
        "notifications",
        sa.Column("audience", sa.String(length=20), nullable=False, comment="Audience: user, company, broadcast"),
        sa.Column("recipient_user_id", sa.String(length=255), nullable=True, comment="Recipient user id"),
        sa.Column("recipient_company_id", sa.String(length=255), nullable=True, comment="Recipient company id"),
        sa.Column("recipients", JSON_TYPE, nullable=False, comment="Explicit recipient list"),
        sa.Column("event_key", sa.String(length=200), nullable=False, comment="Namespaced business event"),
        sa.Column("topic", sa.String(length=100), nullable=False, comment="Coarse category"),
        sa.Column("priority", sa.String(length=20), nullable=False, comment="Priority: low, normal, high, critical"),
        sa.Column("title", sa.String(length=500), nullable=False, comment="User-facing title"),
        sa.Column("body", sa.Text(), nullable=False, comment="User-facing body"),
        sa.Column("data", JSON_TYPE, nullable=False, comment="Opaque payload for client-side routing"),
        sa.Column("action", JSON_TYPE, nullable=True, comment="Optional client action"),
        sa.Column("requires_ack", sa.Boolean(), nullable=False, comment="Whether the recipient must acknowledge"),
        sa.Column("channels", JSON_TYPE, nullable=False, comment="Requested channels"),
        sa.Column("delivery_policy", JSON_TYPE, nullable=False, comment="Per-notification policy flags"),
        sa.Column("status", sa.String(length=20), nullable=False, comment="Aggregate lifecycle status"),
        sa.Column("deduplication_key", sa.String(length=255), nullable=True, comment="Idempotency key"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True, comment="Not dispatched before"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True, comment="Purged after"),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True, comment="When the recipient read it"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True, comment="When archived"),
        sa.Column("ack_at", sa.DateTime(timezone=True), nullable=True, comment="When acknowledged"),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True, comment="When cancelled"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_notifications")),
        sa.UniqueConstraint("deduplication_key", name=op.f("uq_notifications_deduplication_key")),
    )
    op.create_index(op.f("ix_notifications_recipient_user_id"), "notifications", ["recipient_user_id"])
    op.create_index(op.f("ix_notifications_event_key"), "notifications", ["event_key"])
    op.create_index(op.f("ix_notifications_status"), "notifications", ["status"])
    op.create_index(op.f("ix_notifications_expires_at"), "notifications", ["expires_at"])
    op.create_index(
        "idx_notification_inbox", "notifications", ["recipient_user_id", "archived_at", "read_at"]
    )
    op.create_index("idx_notification_dispatch", "notifications", ["status", "scheduled_at"])

    op.create_table(
        "notification_deliveries",
        sa.Column("notification_id", sa.Uuid(), nullable=False, comment="Parent notification"),
        sa.Column("channel", sa.String(length=20), nullable=False, comment="Channel"),
        sa.Column("position", sa.Integer(), nullable=False, comment="Index in the channel list"),
        sa.Column("status", sa.String(length=20), nullable=False, comment="Delivery status"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, comment="Incremented by every claim"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, comment="When requested"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True, comment="Last claim / send start"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True, comment="When delivered"),
        sa.Column("failure_at", sa.DateTime(timezone=True), nullable=True, comment="When failed permanently"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True, comment="Earliest retry"),
        sa.Column("error_code", sa.String(length=100), nullable=True, comment="Last failure code"),
        sa.Column("error_message", sa.Text(), nullable=True, comment="Last failure message"),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True, comment="Provider ticket id"),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["notification_id"],
            ["notifications.id"],
            name=op.f("fk_notification_deliveries_notification_id_notifications"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_notification_deliveries")),
        sa.UniqueConstraint("notification_id", "channel", name="uq_delivery_notification_channel"),
    )
    op.create_index(
        "idx_delivery_channel_status_retry",
        "notification_deliveries",
        ["channel", "status", "next_retry_at"],
    )

    op.create_table(
        "user_devices",
        sa.Column("user_id", sa.String(length=255), nullable=False, comment="Owning user"),
        sa.Column("push_token", sa.String(length=255), nullable=False, comment="Provider push token"),
        sa.Column("provider", sa.String(length=50), nullable=False, comment="Push provider"),
        sa.Column("platform", sa.String(length=20), nullable=False, comment="Platform"),
        sa.Column("device_id", sa.String(length=255), nullable=True, comment="Client device identifier"),
        sa.Column("app_version", sa.String(length=50), nullable=True, comment="Client app version"),
        sa.Column("is_active", sa.Boolean(), nullable=False, comment="Whether used for delivery"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True, comment="Last refresh"),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True, comment="Last provider rejection"),
        sa.Column("last_error_message", sa.Text(), nullable=True, comment="Provider rejection message"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_user_devices")),
        sa.UniqueConstraint("push_token", name=op.f("uq_user_devices_push_token")),
    )
    op.create_index(op.f("ix_user_devices_user_id"), "user_devices", ["user_id"])
    op.create_index("idx_device_user_active", "user_devices", ["user_id", "provider", "is_active"])

    op.create_table(
        "user_notification_preferences",
        sa.Column("user_id", sa.String(length=255), nullable=False, comment="Owning user"),
        sa.Column("preferences", JSON_TYPE, nullable=False, comment="Preference document"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_user_notification_preferences")),
        sa.UniqueConstraint("user_id", name=op.f("uq_user_notification_preferences_user_id")),
    )


def downgrade() -> None:
    """Drop the notification tables."""
    op.drop_table("user_notification_preferences")
    op.drop_index("idx_device_user_active", table_name="user_devices")
    op.drop_index(op.f("ix_user_devices_user_id"), table_name="user_devices")
    op.drop_table("user_devices")
    op.drop_index("idx_delivery_channel_status_retry", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("idx_notification_dispatch", table_name="notifications")
    op.drop_index("idx_notification_inbox", table_name="notifications")
    op.drop_index(op.f("ix_notifications_expires_at"), table_name="notifications")
    op.drop_index(op.f("ix_notifications_status"), table_name="notifications")
    op.drop_index(op.f("ix_notifications_event_key"), table_name="notifications")
    op.drop_index(op.f("ix_notifications_recipient_user_id"), table_name="notifications")
    op.drop_table("notifications")
