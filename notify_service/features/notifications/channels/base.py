"""Protocol and shared helpers for channel processors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from notify_service.features.notifications.constants import DeliveryStatus
from notify_service.features.notifications.lifecycle import apply_delivery_state
from notify_service.features.notifications.policy import DeliveryPreferences
from notify_service.features.notifications.repository import (
    UserNotificationPreferenceRepository,
    get_user_notification_preference_repository,
)

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from notify_service.features.notifications.models import Notification, NotificationDelivery


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    """What a processor did with a claimed delivery.

    Attributes:
        channel: Channel processed
        status: Delivery status after processing
        error_code: Failure or cancellation code, if any
        error_message: Human-readable reason, if any
        provider_message_id: Provider ticket id on success
    """

    channel: str
    status: DeliveryStatus
    error_code: str | None = None
    error_message: str | None = None
    provider_message_id: str | None = None

    @property
    def retry_scheduled(self) -> bool:
        return self.status == DeliveryStatus.QUEUED


class ChannelProcessor(Protocol):
    """Processes one claimed delivery.

    Implementations mutate ``delivery`` through ``apply_delivery_state``;
    the caller recomputes the aggregate status and commits. Side effects
    that must not repeat if that commit fails belong in ``after_commit``.
    """

    channel: str

    async def process(
        self,
        session: AsyncSession,
        notification: Notification,
        delivery: NotificationDelivery,
        now: datetime,
    ) -> DeliveryOutcome: ...

    async def after_commit(self, notification: Notification, outcome: DeliveryOutcome) -> None: ...


async def load_preferences(
    session: AsyncSession,
    user_id: str | None,
    repository: UserNotificationPreferenceRepository | None = None,
) -> DeliveryPreferences:
    """Recipient preferences with defaults; notifications without a user get defaults."""
    if not user_id:
        return DeliveryPreferences()
    repository = repository or get_user_notification_preference_repository()
    return DeliveryPreferences.from_document(await repository.get_document(session, user_id))


def finish(
    delivery: NotificationDelivery,
    status: DeliveryStatus,
    now: datetime,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
    provider_message_id: str | None = None,
) -> DeliveryOutcome:
    """Apply a terminal status to ``delivery`` and describe it as an outcome."""
    apply_delivery_state(
        delivery,
        status,
        now,
        error_code=error_code,
        error_message=error_message,
        provider_message_id=provider_message_id,
    )
    return DeliveryOutcome(
        channel=delivery.channel,
        status=status,
        error_code=error_code,
        error_message=error_message,
        provider_message_id=provider_message_id,
    )
