"""Notification lifecycle: channel normalisation, delivery transitions and the
aggregate status derived from them.

Everything here is synchronous and works on model instances already loaded
in a session; callers own the transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from notify_service.features.notifications.backoff import BackoffPolicy, is_exhausted
from notify_service.features.notifications.constants import (
    KNOWN_CHANNELS,
    PRIORITY_DEFAULT_CHANNELS,
    Channel,
    DeliveryStatus,
    LifecycleStatus,
)
from notify_service.features.notifications.models import Notification, NotificationDelivery
from notify_service.features.notifications.policy import normalize_priority

logger = logging.getLogger(__name__)


class DeliveryState(Protocol):
    status: str
    error_code: str | None


def normalize_channels(channels: Iterable[str] | None, priority: str | None) -> list[str]:
    """Deduplicate and filter requested channels, keeping request order.

    No request falls back to the priority defaults; a request with nothing
    known left in it falls back to in-app only.
    """
    if channels is None:
        return [c.value for c in PRIORITY_DEFAULT_CHANNELS[normalize_priority(priority)]]

    requested = list(channels)
    normalized: list[str] = []
    for channel in requested:
        value = str(channel).strip().lower() if channel is not None else ""
        if value in KNOWN_CHANNELS and value not in normalized:
            normalized.append(value)

    if not normalized:
        if requested:
            logger.info("No known channels requested, defaulting to in_app", extra={"requested": requested})
        return [Channel.IN_APP.value]
    return normalized


def build_initial_deliveries(channels: Sequence[str], now: datetime) -> list[NotificationDelivery]:
    """One queued delivery per channel, in channel order."""
    return [
        NotificationDelivery(
            channel=channel,
            position=position,
            status=DeliveryStatus.QUEUED.value,
            attempt_count=0,
            requested_at=now,
        )
        for position, channel in enumerate(channels)
    ]


def is_retry_pending(delivery: DeliveryState) -> bool:
    """A queued delivery carrying an error code is waiting on a retry."""
    return delivery.status == DeliveryStatus.QUEUED and bool(delivery.error_code)


def compute_lifecycle_status(deliveries: Sequence[DeliveryState]) -> LifecycleStatus:
    """Derive the aggregate status from a notification's deliveries.

    First match wins:

    1. every delivery cancelled -> cancelled
    2. every delivery delivered or cancelled -> completed
    3. a failed or retry-pending delivery next to another delivered or
       queued one -> partially-sent
    4. anything queued or sending -> dispatching
    5. otherwise (all failed, or failed next to cancelled) -> partially-sent

    No deliveries at all is ``queued``.
    """
    if not deliveries:
        return LifecycleStatus.QUEUED

    statuses = [d.status for d in deliveries]

    if all(s == DeliveryStatus.CANCELLED for s in statuses):
        return LifecycleStatus.CANCELLED

    if all(s in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED) for s in statuses):
        return LifecycleStatus.COMPLETED

    for index, delivery in enumerate(deliveries):
        if delivery.status != DeliveryStatus.FAILED and not is_retry_pending(delivery):
            continue
        others = statuses[:index] + statuses[index + 1 :]
        if any(s in (DeliveryStatus.DELIVERED, DeliveryStatus.QUEUED) for s in others):
            return LifecycleStatus.PARTIALLY_SENT

    if any(s in (DeliveryStatus.QUEUED, DeliveryStatus.SENDING) for s in statuses):
        return LifecycleStatus.DISPATCHING

    return LifecycleStatus.PARTIALLY_SENT


def refresh_lifecycle_status(notification: Notification) -> LifecycleStatus:
    """Recompute and store the aggregate status on ``notification``."""
    status = compute_lifecycle_status(notification.deliveries)
    if notification.status != status:
        logger.debug(
            "Lifecycle status changed",
            extra={
                "notification_id": str(notification.id),
                "from_status": notification.status,
                "to_status": status.value,
            },
        )
    notification.status = status.value
    return status


def apply_delivery_state(
    delivery: NotificationDelivery,
    status: DeliveryStatus,
    now: datetime,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
    provider_message_id: str | None = None,
    next_retry_at: datetime | None = None,
) -> NotificationDelivery:
    """Move a delivery to ``status`` and stamp the matching timestamps.

    ``sending`` is normally reached through the repository claim; it is
    accepted here for the in-app path, which delivers without a claim at
    creation time.
    """
    delivery.status = status.value

    if status == DeliveryStatus.DELIVERED:
        delivery.delivered_at = now
        delivery.sent_at = delivery.sent_at or now
        delivery.provider_message_id = provider_message_id or delivery.provider_message_id
        delivery.error_code = None
        delivery.error_message = None
        delivery.next_retry_at = None
    elif status == DeliveryStatus.SENT:
        delivery.sent_at = now
        delivery.provider_message_id = provider_message_id or delivery.provider_message_id
    elif status == DeliveryStatus.SENDING:
        delivery.sent_at = now
    elif status == DeliveryStatus.QUEUED:
        delivery.next_retry_at = next_retry_at
        delivery.error_code = error_code
        delivery.error_message = error_message
    elif status == DeliveryStatus.FAILED:
        delivery.failure_at = now
        delivery.next_retry_at = None
        delivery.error_code = error_code
        delivery.error_message = error_message
    elif status == DeliveryStatus.CANCELLED:
        delivery.next_retry_at = None
        delivery.error_code = error_code
        delivery.error_message = error_message

    return delivery


def schedule_retry_or_fail(
    delivery: NotificationDelivery,
    now: datetime,
    *,
    max_retries: int,
    backoff: BackoffPolicy,
    error_code: str,
    error_message: str,
) -> DeliveryStatus:
    """Handle a transient failure of the attempt that was just made.

    Requeues with a backoff delay while budget remains, otherwise fails the
    delivery permanently. Returns the status applied.
    """
    if is_exhausted(delivery.attempt_count, max_retries):
        apply_delivery_state(
            delivery,
            DeliveryStatus.FAILED,
            now,
            error_code=error_code,
            error_message=error_message,
        )
        return DeliveryStatus.FAILED

    apply_delivery_state(
        delivery,
        DeliveryStatus.QUEUED,
        now,
        error_code=error_code,
        error_message=error_message,
        next_retry_at=backoff.next_retry_at(delivery.attempt_count, now),
    )
    return DeliveryStatus.QUEUED
