"""Pytest configuration and shared fixtures.

Organization:
    - Environment: settings that keep tests off external infrastructure
    - Database Fixtures: in-memory SQLite engine, session factory and session
    - Collaborator Fixtures: controllable clock, fake push provider, fake publisher
    - Application Fixtures: FastAPI app wired to the test database, HTTP client
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from notify_service.features.notifications.providers import PushBatchResult, PushMessage

# Ensure tests run without external infrastructure
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NOTIFY_DISPATCHER_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine with every table created.

    StaticPool keeps one connection so every session sees the same database.
    """
    from notify_service.core.database.base import Base
    from notify_service.features.notifications import models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory configured like the application's."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """A session for direct repository tests; rolled back afterwards."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ============================================================================
# Collaborator Fixtures
# ============================================================================


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePushProvider:
    """Push provider that records messages and answers with scripted tickets.

    By default every message is accepted. ``errors`` maps a token to the
    provider error code returned for it; ``raise_with`` makes the next call
    raise.
    """

    name = "expo"

    def __init__(self) -> None:
        self.calls: list[list[PushMessage]] = []
        self.errors: dict[str, str] = {}
        self.raise_with: Exception | None = None

    async def send_batch(self, messages: list[PushMessage]) -> PushBatchResult:
        from notify_service.features.notifications.providers import PushBatchResult, PushTicket

        self.calls.append(list(messages))
        if self.raise_with is not None:
            exc, self.raise_with = self.raise_with, None
            raise exc

        tickets = []
        for index, message in enumerate(messages):
            error = self.errors.get(message.to)
            if error:
                tickets.append(
                    PushTicket(token=message.to, status="error", message=f"{error} for token", error=error)
                )
            else:
                tickets.append(PushTicket(token=message.to, status="ok", id=f"ticket-{len(self.calls)}-{index}"))
        return PushBatchResult(tickets=tickets)


class FakePublisher:
    """Realtime publisher that records published events."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, user_id: str, event: str, payload: dict[str, Any]) -> int:
        self.events.append((user_id, event, payload))
        return 1


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def push_provider() -> FakePushProvider:
    return FakePushProvider()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def notification_settings():
    from notify_service.core.settings.notifications import NotificationSettings

    return NotificationSettings(dispatcher_enabled=False)


@pytest.fixture
def notification_service(notification_settings, publisher: FakePublisher, clock: FrozenClock):
    from notify_service.features.notifications.service import NotificationService

    return NotificationService(settings=notification_settings, publisher=publisher, clock=clock)


@pytest.fixture
def dispatch_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    notification_settings,
    push_provider: FakePushProvider,
    publisher: FakePublisher,
    clock: FrozenClock,
):
    from notify_service.features.notifications.scheduler import DispatchScheduler

    return DispatchScheduler.create(
        session_factory,
        settings=notification_settings,
        provider=push_provider,
        publisher=publisher,
        clock=clock,
    )


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
async def app(session_factory: async_sessionmaker[AsyncSession], notification_service):
    """FastAPI application using the test database and service.

    The lifespan does not run under ASGITransport, so no dispatcher starts.
    """
    from notify_service.app.main import create_app
    from notify_service.core.dependencies.database import get_db_session
    from notify_service.features.notifications.service import get_notification_service

    application = create_app()

    async def override_db_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = override_db_session
    application.dependency_overrides[get_notification_service] = lambda: notification_service
    return application


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient]:
    """Async HTTP client for the application."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": "user-123"}
