"""Tests for the notifications service layer."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from notify_service.core.exceptions import BadRequestException
from notify_service.features.notifications.exceptions import (
    DeviceNotFoundException,
    NotificationNotFoundException,
)
from notify_service.features.notifications.repository import NotificationRepository
from notify_service.features.notifications.schemas import (
    AdminNotificationFilters,
    DeviceRegister,
    DispatchRequest,
    NotificationListFilters,
    PreferencesUpdate,
)


def _request(**overrides) -> DispatchRequest:
    payload = {
        "title": "Verification approved",
        "body": "Your company is verified",
        "event_key": "company.verification.approved",
        "recipient_user_id": "user-1",
        **overrides,
    }
    return DispatchRequest.model_validate(payload)


async def _dispatch_one(service, session: AsyncSession, **overrides):
    result = await service.dispatch(session, _request(**overrides))
    return await NotificationRepository().get(session, result.notification_ids[0])


class TestDispatch:
    @pytest.mark.asyncio
    async def test_in_app_is_delivered_at_creation(self, db_session, notification_service, publisher, clock) -> None:
        notification = await _dispatch_one(notification_service, db_session, channels=["in_app", "push"])

        in_app = notification.delivery_for("in_app")
        push = notification.delivery_for("push")
        assert in_app.status == "delivered"
        assert in_app.attempt_count == 1
        assert in_app.delivered_at == clock.now
        assert push.status == "queued"
        assert push.attempt_count == 0
        assert notification.status == "dispatching"

        [(user_id, event, payload)] = publisher.events
        assert (user_id, event) == ("user-1", "notification:new")
        assert payload["lifecycle_status"] == "dispatching"

    @pytest.mark.asyncio
    async def test_in_app_only_completes(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(notification_service, db_session)

        assert notification.channels == ["in_app"]
        assert notification.status == "completed"

    @pytest.mark.asyncio
    async def test_priority_defaults_channels(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(notification_service, db_session, priority="HIGH")

        assert notification.priority == "high"
        assert notification.channels == ["in_app", "push"]

    @pytest.mark.asyncio
    async def test_policy_document_is_completed(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(
            notification_service, db_session, delivery_policy={"allow_push": False, "max_retries": 2}
        )

        assert notification.delivery_policy == {
            "allow_in_app": True,
            "allow_push": False,
            "respect_quiet_hours": True,
            "allow_critical_override": True,
            "max_retries": 2,
        }

    @pytest.mark.asyncio
    async def test_fan_out_and_deduplication(self, db_session, notification_service) -> None:
        request = _request(recipient_user_id=None, recipients=["alice", "bob"], deduplication_key="invoice-7")

        first = await notification_service.dispatch(db_session, request)
        second = await notification_service.dispatch(db_session, request)

        assert first.created == 2
        assert first.deduplicated == 0
        assert second.created == 0
        assert second.deduplicated == 2
        assert second.notification_ids == first.notification_ids

        repo = NotificationRepository()
        keys = sorted([(await repo.get(db_session, nid)).deduplication_key for nid in first.notification_ids])
        assert keys == ["invoice-7:alice", "invoice-7:bob"]

    @pytest.mark.asyncio
    async def test_single_recipient_key_is_stored_per_user(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(notification_service, db_session, deduplication_key="welcome")
        assert notification.deduplication_key == "welcome:user-1"

    @pytest.mark.asyncio
    async def test_key_sent_alone_then_fanned_out_reaches_user_once(self, db_session, notification_service) -> None:
        single = await notification_service.dispatch(
            db_session, _request(recipient_user_id="alice", deduplication_key="invoice-9")
        )
        fanned = await notification_service.dispatch(
            db_session,
            _request(recipient_user_id=None, recipients=["alice", "bob"], deduplication_key="invoice-9"),
        )

        assert fanned.created == 1
        assert fanned.deduplicated == 1
        assert fanned.notification_ids[0] == single.notification_ids[0]

    @pytest.mark.asyncio
    async def test_broadcast_key_is_not_suffixed(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(
            notification_service,
            db_session,
            audience="broadcast",
            recipient_user_id=None,
            deduplication_key="maintenance-window",
        )
        assert notification.deduplication_key == "maintenance-window"

    @pytest.mark.asyncio
    async def test_records_creator_and_silence(self, db_session, notification_service) -> None:
        result = await notification_service.dispatch(
            db_session, _request(channels=["push"], is_silent=True), created_by="admin-1"
        )
        notification = await NotificationRepository().get(db_session, result.notification_ids[0])

        assert notification.created_by == "admin-1"
        assert notification.is_silent is True

    @pytest.mark.asyncio
    async def test_broadcast_without_recipient(self, db_session, notification_service, publisher) -> None:
        notification = await _dispatch_one(
            notification_service, db_session, audience="broadcast", recipient_user_id=None
        )

        assert notification.recipient_user_id is None
        assert notification.delivery_for("in_app").status == "delivered"
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_scheduled_notification_waits(self, db_session, notification_service, publisher, clock) -> None:
        notification = await _dispatch_one(
            notification_service, db_session, scheduled_at=(clock.now + timedelta(hours=24)).isoformat()
        )

        assert notification.delivery_for("in_app").status == "queued"
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_in_app_denied_by_preferences(self, db_session, notification_service, publisher) -> None:
        await notification_service.update_preferences(
            db_session, "user-1", PreferencesUpdate(in_app_enabled=False)
        )

        notification = await _dispatch_one(notification_service, db_session)

        assert notification.delivery_for("in_app").error_code == "in_app_disabled"
        assert notification.status == "cancelled"
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_user_audience_needs_recipient(self, db_session, notification_service) -> None:
        with pytest.raises(BadRequestException) as exc_info:
            await notification_service.dispatch(db_session, _request(recipient_user_id=None))
        assert exc_info.value.type == "missing-recipient"

    @pytest.mark.asyncio
    async def test_expiry_before_schedule_is_rejected(self, db_session, notification_service, clock) -> None:
        with pytest.raises(BadRequestException) as exc_info:
            await notification_service.dispatch(
                db_session,
                _request(
                    scheduled_at=(clock.now + timedelta(hours=2)).isoformat(),
                    expires_at=(clock.now + timedelta(hours=1)).isoformat(),
                ),
            )
        assert exc_info.value.type == "invalid-schedule"


class TestInbox:
    @pytest.mark.asyncio
    async def test_read_state_and_counts(self, db_session, notification_service, clock) -> None:
        first = await _dispatch_one(notification_service, db_session, title="First")
        await _dispatch_one(notification_service, db_session, title="Second")

        assert await notification_service.get_unread_count(db_session, "user-1") == 2

        read = await notification_service.mark_read(db_session, first.id, "user-1")
        assert read.status == "read"
        assert read.read_at == clock.now
        assert await notification_service.get_unread_count(db_session, "user-1") == 1

        assert await notification_service.mark_all_read(db_session, "user-1") == 1
        assert await notification_service.get_unread_count(db_session, "user-1") == 0

    @pytest.mark.asyncio
    async def test_list_paginates(self, db_session, notification_service) -> None:
        for index in range(3):
            await _dispatch_one(notification_service, db_session, title=f"N{index}")

        page = await notification_service.list_for_user(
            db_session, "user-1", NotificationListFilters(limit=2)
        )

        assert len(page.items) == 2
        assert page.pagination.total == 3
        assert page.pagination.has_more is True

    @pytest.mark.asyncio
    async def test_archive_hides_from_inbox(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(notification_service, db_session)

        archived = await notification_service.archive(db_session, notification.id, "user-1")
        assert archived.archived_at is not None
        assert (await notification_service.list_for_user(db_session, "user-1")).pagination.total == 0

        restored = await notification_service.unarchive(db_session, notification.id, "user-1")
        assert restored.archived_at is None
        assert (await notification_service.list_for_user(db_session, "user-1")).pagination.total == 1

    @pytest.mark.asyncio
    async def test_acknowledge_also_reads(self, db_session, notification_service, clock) -> None:
        notification = await _dispatch_one(notification_service, db_session, requires_ack=True)

        acked = await notification_service.acknowledge(db_session, notification.id, "user-1")

        assert acked.ack_at == clock.now
        assert acked.read_at == clock.now
        assert acked.status == "read"

    @pytest.mark.asyncio
    async def test_other_users_notification_is_not_found(self, db_session, notification_service) -> None:
        notification = await _dispatch_one(notification_service, db_session)

        with pytest.raises(NotificationNotFoundException):
            await notification_service.get_for_user(db_session, notification.id, "someone-else")
        with pytest.raises(NotificationNotFoundException):
            await notification_service.mark_read(db_session, notification.id, "someone-else")


class TestDevicesAndPreferences:
    @pytest.mark.asyncio
    async def test_register_and_unregister_device(self, db_session, notification_service) -> None:
        device = await notification_service.register_device(
            db_session,
            "user-1",
            DeviceRegister(push_token="ExponentPushToken[abc]", platform="android", app_version="1.2.0"),
        )
        assert device.is_active is True
        assert device.platform == "android"

        await notification_service.unregister_device(db_session, "user-1", "ExponentPushToken[abc]")

        with pytest.raises(DeviceNotFoundException):
            await notification_service.unregister_device(db_session, "user-2", "ExponentPushToken[abc]")

    @pytest.mark.asyncio
    async def test_preferences_default_and_merge(self, db_session, notification_service) -> None:
        defaults = await notification_service.get_preferences(db_session, "user-1")
        assert defaults.push_enabled is True
        assert defaults.email_enabled is False
        assert defaults.quiet_hours.enabled is False

        await notification_service.update_preferences(
            db_session,
            "user-1",
            PreferencesUpdate.model_validate(
                {"quiet_hours": {"enabled": True}, "topic_overrides": {"marketing": {"push": False}}}
            ),
        )
        updated = await notification_service.update_preferences(
            db_session,
            "user-1",
            PreferencesUpdate.model_validate({"quiet_hours": {"start": "23:00"}, "sms_enabled": True}),
        )

        assert updated.sms_enabled is True
        assert updated.quiet_hours.enabled is True
        assert updated.quiet_hours.start == "23:00"
        assert updated.quiet_hours.end == "08:00"
        assert updated.topic_overrides == {"marketing": {"push": False}}


class TestAdministration:
    @pytest.mark.asyncio
    async def test_cancel_pending_deliveries(self, session_factory, notification_service) -> None:
        async with session_factory() as session:
            result = await notification_service.dispatch(
                session, _request(channels=["in_app", "push", "email"])
            )
        notification_id = result.notification_ids[0]

        async with session_factory() as session:
            cancelled = await notification_service.cancel(session, notification_id, "Sent by mistake")

        assert sorted(cancelled.cancelled_channels) == ["email", "push"]
        assert cancelled.lifecycle_status == "completed"

        async with session_factory() as session:
            notification = await NotificationRepository().get(session, notification_id)
            push = notification.delivery_for("push")
            assert push.status == "cancelled"
            assert push.error_code == "cancelled_by_admin"
            assert push.error_message == "Sent by mistake"
            assert notification.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_leaves_in_flight_delivery(self, session_factory, notification_service, clock) -> None:
        repo = NotificationRepository()
        async with session_factory() as session:
            result = await notification_service.dispatch(session, _request(channels=["push"]))
        notification_id = result.notification_ids[0]

        async with session_factory() as session:
            assert await repo.claim_delivery(
                session,
                notification_id,
                "push",
                observed_status="queued",
                observed_attempts=0,
                now=clock.now,
                claim_timeout_seconds=300,
            )
            await session.commit()

        async with session_factory() as session:
            cancelled = await notification_service.cancel(session, notification_id)

        assert cancelled.cancelled_channels == []
        assert cancelled.lifecycle_status == "dispatching"

    @pytest.mark.asyncio
    async def test_admin_list_is_scoped_to_creator(self, db_session, notification_service) -> None:
        await notification_service.dispatch(db_session, _request(title="Mine"), created_by="admin-1")
        await notification_service.dispatch(
            db_session,
            _request(title="Mine too", event_key="billing.invoice.due", topic="billing"),
            created_by="admin-1",
        )
        await notification_service.dispatch(db_session, _request(title="Someone else's"), created_by="admin-2")
        await notification_service.dispatch(db_session, _request(title="Automated"))

        page = await notification_service.list_admin(db_session, "admin-1")
        assert page.pagination.total == 2
        assert {item.title for item in page.items} == {"Mine", "Mine too"}
        assert all(item.created_by == "admin-1" for item in page.items)

        by_event = await notification_service.list_admin(
            db_session, "admin-1", AdminNotificationFilters(event_key="billing.invoice.due")
        )
        assert [item.title for item in by_event.items] == ["Mine too"]

        by_search = await notification_service.list_admin(
            db_session, "admin-1", AdminNotificationFilters(search="BILLING")
        )
        assert [item.title for item in by_search.items] == ["Mine too"]

        by_status = await notification_service.list_admin(
            db_session, "admin-1", AdminNotificationFilters(status="cancelled")
        )
        assert by_status.items == []

    @pytest.mark.asyncio
    async def test_admin_get_requires_creator(self, db_session, notification_service) -> None:
        result = await notification_service.dispatch(db_session, _request(), created_by="admin-1")
        notification_id = result.notification_ids[0]

        detail = await notification_service.get_admin(db_session, notification_id, "admin-1")
        assert detail.id == notification_id
        assert detail.recipient_user_id == "user-1"
        assert detail.created_by == "admin-1"

        with pytest.raises(NotificationNotFoundException):
            await notification_service.get_admin(db_session, notification_id, "admin-2")

    @pytest.mark.asyncio
    async def test_resend_creates_fresh_copy(self, db_session, notification_service, publisher, clock) -> None:
        original = await notification_service.dispatch(
            db_session,
            _request(
                channels=["in_app", "push"],
                deduplication_key="promo-3",
                scheduled_at=(clock.now + timedelta(days=1)).isoformat(),
                is_silent=True,
                delivery_policy={"max_retries": 1},
            ),
            created_by="admin-1",
        )
        original_id = original.notification_ids[0]

        resent = await notification_service.resend(db_session, original_id, "admin-1")
        again = await notification_service.resend(db_session, original_id, "admin-1")

        assert resent.created == 1
        assert again.created == 1
        assert resent.notification_ids != again.notification_ids

        copy = await NotificationRepository().get(db_session, resent.notification_ids[0])
        assert copy.id != original_id
        assert copy.recipient_user_id == "user-1"
        assert copy.channels == ["in_app", "push"]
        assert copy.deduplication_key is None
        assert copy.scheduled_at is None
        assert copy.is_silent is True
        assert copy.created_by == "admin-1"
        assert copy.delivery_policy["max_retries"] == 1
        assert copy.delivery_for("in_app").status == "delivered"
        assert len(publisher.events) == 2

    @pytest.mark.asyncio
    async def test_resend_requires_creator(self, db_session, notification_service) -> None:
        result = await notification_service.dispatch(db_session, _request(), created_by="admin-1")

        with pytest.raises(NotificationNotFoundException):
            await notification_service.resend(db_session, result.notification_ids[0], "admin-2")

    @pytest.mark.asyncio
    async def test_cancel_unknown_notification(self, db_session, notification_service) -> None:
        from uuid import uuid4

        with pytest.raises(NotificationNotFoundException):
            await notification_service.cancel(db_session, uuid4())

    @pytest.mark.asyncio
    async def test_purge_expired(self, db_session, notification_service, clock) -> None:
        expiring = await _dispatch_one(
            notification_service, db_session, expires_at=(clock.now + timedelta(hours=1)).isoformat()
        )
        await _dispatch_one(notification_service, db_session)

        assert await notification_service.purge_expired(db_session) == 0
        clock.advance(hours=2)
        assert await notification_service.purge_expired(db_session) == 1

        page = await notification_service.list_for_user(db_session, "user-1")
        assert [item.id for item in page.items] != [expiring.id]
        assert page.pagination.total == 1
