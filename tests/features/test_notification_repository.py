"""Tests for the notification repositories against SQLite."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notify_service.core.database.base import Base
from notify_service.features.notifications.lifecycle import build_initial_deliveries
from notify_service.features.notifications.models import Notification, NotificationDelivery
from notify_service.features.notifications.repository import (
    NotificationRepository,
    UserDeviceRepository,
    UserNotificationPreferenceRepository,
)
from notify_service.utils.timeutils import ensure_utc

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _notification(user_id: str = "user-1", channels: list[str] | None = None, **kwargs) -> Notification:
    channels = channels or ["push"]
    notification = Notification(
        recipient_user_id=user_id,
        event_key="test.event",
        topic=kwargs.pop("topic", "general"),
        priority=kwargs.pop("priority", "normal"),
        title=kwargs.pop("title", "Title"),
        body=kwargs.pop("body", "Body"),
        channels=channels,
        delivery_policy={},
        status="queued",
        **kwargs,
    )
    notification.deliveries = build_initial_deliveries(channels, NOW)
    return notification


async def _store(session_factory: async_sessionmaker[AsyncSession], notification: Notification) -> Notification:
    async with session_factory() as session:
        session.add(notification)
        await session.commit()
    return notification


@pytest.mark.asyncio
async def test_second_claim_of_same_observation_loses(session_factory) -> None:
    repo = NotificationRepository()
    notification = await _store(session_factory, _notification())

    async with session_factory() as session:
        first = await repo.claim_delivery(
            session,
            notification.id,
            "push",
            observed_status="queued",
            observed_attempts=0,
            now=NOW,
            claim_timeout_seconds=300,
        )
        await session.commit()

    async with session_factory() as session:
        second = await repo.claim_delivery(
            session,
            notification.id,
            "push",
            observed_status="queued",
            observed_attempts=0,
            now=NOW,
            claim_timeout_seconds=300,
        )
        await session.rollback()

    assert first is True
    assert second is False

    async with session_factory() as session:
        stored = await repo.load_for_dispatch(session, notification.id)
        delivery = stored.delivery_for("push")
        assert delivery.status == "sending"
        assert delivery.attempt_count == 1
        assert ensure_utc(delivery.sent_at) == NOW
        assert stored.status == "dispatching"


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(tmp_path) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'claims.db'}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
        repo = NotificationRepository()
        notification = await _store(factory, _notification())

        async def claim() -> bool:
            async with factory() as session:
                claimed = await repo.claim_delivery(
                    session,
                    notification.id,
                    "push",
                    observed_status="queued",
                    observed_attempts=0,
                    now=NOW,
                    claim_timeout_seconds=300,
                )
                await session.commit()
                return claimed

        results = await asyncio.gather(claim(), claim())

        assert sorted(results) == [False, True]
        async with factory() as session:
            stored = await repo.load_for_dispatch(session, notification.id)
            delivery = stored.delivery_for("push")
            assert delivery.status == "sending"
            assert delivery.attempt_count == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_claim_respects_next_retry_at(session_factory) -> None:
    repo = NotificationRepository()
    notification = _notification()
    notification.deliveries[0].next_retry_at = NOW + timedelta(seconds=30)
    notification.deliveries[0].error_code = "missing_device_token"
    await _store(session_factory, notification)

    async with session_factory() as session:
        early = await repo.claim_delivery(
            session,
            notification.id,
            "push",
            observed_status="queued",
            observed_attempts=0,
            now=NOW,
            claim_timeout_seconds=300,
        )
        await session.rollback()

    async with session_factory() as session:
        due = await repo.claim_delivery(
            session,
            notification.id,
            "push",
            observed_status="queued",
            observed_attempts=0,
            now=NOW + timedelta(seconds=30),
            claim_timeout_seconds=300,
        )
        await session.commit()

    assert early is False
    assert due is True


@pytest.mark.asyncio
async def test_stale_sending_claim_can_be_reclaimed(session_factory) -> None:
    repo = NotificationRepository()
    notification = _notification()
    notification.deliveries[0].status = "sending"
    notification.deliveries[0].attempt_count = 1
    notification.deliveries[0].sent_at = NOW
    await _store(session_factory, notification)

    async with session_factory() as session:
        fresh = await repo.find_dispatch_candidates(
            session, "push", NOW + timedelta(seconds=60), claim_timeout_seconds=300, limit=10
        )
        stale = await repo.find_dispatch_candidates(
            session, "push", NOW + timedelta(seconds=301), claim_timeout_seconds=300, limit=10
        )

    assert fresh == []
    assert [n.id for n in stale] == [notification.id]


@pytest.mark.asyncio
async def test_candidates_skip_future_schedule_and_archived(session_factory) -> None:
    repo = NotificationRepository()
    due = await _store(session_factory, _notification(title="due"))
    await _store(session_factory, _notification(title="later", scheduled_at=NOW + timedelta(hours=1)))
    await _store(session_factory, _notification(title="archived", archived_at=NOW))
    await _store(session_factory, _notification(title="in-app only", channels=["in_app"]))

    async with session_factory() as session:
        candidates = await repo.find_dispatch_candidates(
            session, "push", NOW, claim_timeout_seconds=300, limit=10
        )

    assert [n.id for n in candidates] == [due.id]


@pytest.mark.asyncio
async def test_list_filters_and_counts(session_factory) -> None:
    repo = NotificationRepository()
    await _store(session_factory, _notification(title="Invoice ready", topic="billing"))
    await _store(session_factory, _notification(title="Welcome", read_at=NOW))
    await _store(session_factory, _notification(title="Old", archived_at=NOW))
    await _store(session_factory, _notification(user_id="someone-else"))

    async with session_factory() as session:
        active = await repo.list_for_user(session, "user-1")
        unread = await repo.list_for_user(session, "user-1", status="unread")
        archived = await repo.list_for_user(session, "user-1", archived=True)
        billing = await repo.list_for_user(session, "user-1", topic="billing")
        searched = await repo.list_for_user(session, "user-1", search="INVOICE")
        count = await repo.count_unread(session, "user-1")

    assert active.total == 2
    assert [n.title for n in unread.items] == ["Invoice ready"]
    assert [n.title for n in archived.items] == ["Old"]
    assert [n.title for n in billing.items] == ["Invoice ready"]
    assert [n.title for n in searched.items] == ["Invoice ready"]
    assert count == 1


@pytest.mark.asyncio
async def test_purge_expired_removes_deliveries(session_factory) -> None:
    repo = NotificationRepository()
    expired = await _store(session_factory, _notification(expires_at=NOW - timedelta(minutes=1)))
    kept = await _store(session_factory, _notification(expires_at=NOW + timedelta(days=1)))

    async with session_factory() as session:
        purged = await repo.purge_expired(session, NOW)
        await session.commit()

    async with session_factory() as session:
        assert purged == 1
        assert await repo.get(session, expired.id) is None
        assert await repo.get(session, kept.id) is not None
        orphaned = await session.get(NotificationDelivery, expired.deliveries[0].id)
        assert orphaned is None


@pytest.mark.asyncio
async def test_device_upsert_moves_token_between_users(db_session: AsyncSession) -> None:
    repo = UserDeviceRepository()

    await repo.upsert(db_session, user_id="alice", push_token="ExponentPushToken[x]", now=NOW, platform="ios")
    moved = await repo.upsert(db_session, user_id="bob", push_token="ExponentPushToken[x]", now=NOW, platform="ios")

    assert moved.user_id == "bob"
    assert await repo.list_active(db_session, "alice") == []
    assert [d.push_token for d in await repo.list_active(db_session, "bob")] == ["ExponentPushToken[x]"]


@pytest.mark.asyncio
async def test_deactivate_token(db_session: AsyncSession) -> None:
    repo = UserDeviceRepository()
    await repo.upsert(db_session, user_id="alice", push_token="ExponentPushToken[x]", now=NOW, platform="android")

    changed = await repo.deactivate_token(db_session, "ExponentPushToken[x]", now=NOW, error_message="gone")

    assert changed == 1
    assert await repo.list_active(db_session, "alice") == []


@pytest.mark.asyncio
async def test_preference_document_round_trip(db_session: AsyncSession) -> None:
    repo = UserNotificationPreferenceRepository()

    assert await repo.get_document(db_session, "alice") is None
    await repo.save_document(db_session, "alice", {"push_enabled": False})
    await repo.save_document(db_session, "alice", {"push_enabled": True, "sms_enabled": True})

    assert await repo.get_document(db_session, "alice") == {"push_enabled": True, "sms_enabled": True}
