"""Push channel: one provider call covering every active device of the recipient."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from notify_service.features.notifications.backoff import BackoffPolicy
from notify_service.features.notifications.channels.base import DeliveryOutcome, finish, load_preferences
from notify_service.features.notifications.constants import (
    CRITICAL_ANDROID_CHANNEL,
    ERROR_MESSAGES,
    Channel,
    DeliveryStatus,
    ErrorCode,
    Priority,
)
from notify_service.features.notifications.lifecycle import schedule_retry_or_fail
from notify_service.features.notifications.policy import DeliveryPolicy, should_deliver
from notify_service.features.notifications.providers.base import PushMessage
from notify_service.features.notifications.repository import (
    UserDeviceRepository,
    get_user_device_repository,
)

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from notify_service.features.notifications.models import Notification, NotificationDelivery
    from notify_service.features.notifications.providers.base import PushProvider

logger = logging.getLogger(__name__)


def build_push_message(notification: Notification, token: str) -> PushMessage:
    critical = notification.priority == Priority.CRITICAL
    return PushMessage(
        to=token,
        title=notification.title,
        body=notification.body,
        data={
            "notification_id": str(notification.id),
            "event_key": notification.event_key,
            "topic": notification.topic,
            "priority": notification.priority,
            "action": notification.action,
            "data": notification.data or {},
        },
        sound=None if notification.is_silent else "default",
        priority="high" if notification.priority in (Priority.HIGH, Priority.CRITICAL) else "default",
        channel_id=CRITICAL_ANDROID_CHANNEL if critical else "default",
    )


class PushChannelProcessor:
    """Deliver push notifications through a PushProvider.

    Outcomes:
        - policy denies: cancelled (push_disabled)
        - no active device: retry later (missing_device_token)
        - any device accepted: delivered with that ticket id
        - nothing accepted: retry later (push_send_failed)
        - provider raised: retry later (push_exception)

    Devices the provider reports as unregistered are deactivated.
    """

    channel = Channel.PUSH.value

    def __init__(
        self,
        provider: PushProvider,
        *,
        backoff: BackoffPolicy | None = None,
        default_max_retries: int = 4,
        device_repository: UserDeviceRepository | None = None,
    ) -> None:
        self._provider = provider
        self._backoff = backoff or BackoffPolicy()
        self._default_max_retries = default_max_retries
        self._devices = device_repository or get_user_device_repository()

    async def process(
        self,
        session: AsyncSession,
        notification: Notification,
        delivery: NotificationDelivery,
        now: datetime,
    ) -> DeliveryOutcome:
        preferences = await load_preferences(session, notification.recipient_user_id)
        if not should_deliver(preferences, notification, self.channel, now):
            return finish(
                delivery,
                DeliveryStatus.CANCELLED,
                now,
                error_code=ErrorCode.PUSH_DISABLED.value,
                error_message=ERROR_MESSAGES[ErrorCode.PUSH_DISABLED],
            )

        policy = DeliveryPolicy.from_document(
            notification.delivery_policy,
            default_max_retries=self._default_max_retries,
        )

        devices = []
        if notification.recipient_user_id:
            devices = await self._devices.list_active(
                session, notification.recipient_user_id, provider=self._provider.name
            )
        if not devices:
            return self._retry_or_fail(
                delivery,
                now,
                policy,
                ErrorCode.MISSING_DEVICE_TOKEN.value,
                ERROR_MESSAGES[ErrorCode.MISSING_DEVICE_TOKEN],
            )

        messages = [build_push_message(notification, device.push_token) for device in devices]
        try:
            result = await self._provider.send_batch(messages)
        except Exception as exc:
            logger.exception(
                "Push provider raised",
                extra={
                    "notification_id": str(notification.id),
                    "provider": self._provider.name,
                    "device_count": len(messages),
                },
            )
            return self._retry_or_fail(
                delivery,
                now,
                policy,
                ErrorCode.PUSH_EXCEPTION.value,
                str(exc) or type(exc).__name__,
            )

        for ticket in result.tickets:
            if ticket.device_not_registered:
                await self._devices.deactivate_token(
                    session,
                    ticket.token,
                    now=now,
                    error_message=ticket.message,
                )

        accepted = next((ticket for ticket in result.tickets if ticket.ok), None)
        if accepted is not None:
            logger.info(
                "Push delivered",
                extra={
                    "notification_id": str(notification.id),
                    "success_count": result.success_count,
                    "failure_count": result.failure_count,
                },
            )
            return finish(
                delivery,
                DeliveryStatus.DELIVERED,
                now,
                provider_message_id=accepted.id,
            )

        first_error = next((t.message for t in result.tickets if not t.ok and t.message), None)
        return self._retry_or_fail(
            delivery,
            now,
            policy,
            ErrorCode.PUSH_SEND_FAILED.value,
            first_error or ERROR_MESSAGES[ErrorCode.PUSH_SEND_FAILED],
        )

    async def after_commit(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        return None

    def _retry_or_fail(
        self,
        delivery: NotificationDelivery,
        now: datetime,
        policy: DeliveryPolicy,
        error_code: str,
        error_message: str,
    ) -> DeliveryOutcome:
        status = schedule_retry_or_fail(
            delivery,
            now,
            max_retries=policy.max_retries,
            backoff=self._backoff,
            error_code=error_code,
            error_message=error_message,
        )
        logger.info(
            "Push attempt failed",
            extra={
                "notification_id": str(delivery.notification_id),
                "error_code": error_code,
                "attempt_count": delivery.attempt_count,
                "max_retries": policy.max_retries,
                "next_status": status.value,
            },
        )
        return DeliveryOutcome(
            channel=self.channel,
            status=status,
            error_code=error_code,
            error_message=error_message,
        )
