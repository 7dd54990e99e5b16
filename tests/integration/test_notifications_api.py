"""Integration tests for the notifications HTTP API."""

from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.integration

BASE = "/api/v1/notifications"

DISPATCH_PAYLOAD = {
    "title": "Verification approved",
    "body": "Your company is verified",
    "event_key": "company.verification.approved",
    "recipient_user_id": "user-123",
    "channels": ["in_app", "push"],
}


async def _dispatch(client: AsyncClient, **overrides) -> str:
    response = await client.post(f"{BASE}/dispatch", json={**DISPATCH_PAYLOAD, **overrides})
    assert response.status_code == 201, response.text
    return response.json()["notification_ids"][0]


@pytest.mark.asyncio
async def test_dispatch_and_list(client: AsyncClient, user_headers: dict[str, str]) -> None:
    response = await client.post(f"{BASE}/dispatch", json=DISPATCH_PAYLOAD)

    assert response.status_code == 201
    body = response.json()
    assert body["created"] == 1
    assert body["deduplicated"] == 0

    listing = await client.get(f"{BASE}/", headers=user_headers)
    assert listing.status_code == 200
    data = listing.json()
    assert data["pagination"] == {"total": 1, "limit": 20, "offset": 0, "has_more": False}
    [item] = data["items"]
    assert item["id"] == body["notification_ids"][0]
    assert item["status"] == "unread"
    assert item["lifecycle_status"] == "dispatching"
    assert {d["channel"]: d["status"] for d in item["deliveries"]} == {"in_app": "delivered", "push": "queued"}


@pytest.mark.asyncio
async def test_dispatch_deduplicates(client: AsyncClient) -> None:
    payload = {**DISPATCH_PAYLOAD, "deduplication_key": "verification-42"}

    first = (await client.post(f"{BASE}/dispatch", json=payload)).json()
    second = (await client.post(f"{BASE}/dispatch", json=payload)).json()

    assert second["created"] == 0
    assert second["deduplicated"] == 1
    assert second["notification_ids"] == first["notification_ids"]


@pytest.mark.asyncio
async def test_dispatch_without_recipient_is_problem(client: AsyncClient) -> None:
    payload = {k: v for k, v in DISPATCH_PAYLOAD.items() if k != "recipient_user_id"}

    response = await client.post(f"{BASE}/dispatch", json=payload)

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["type"] == "missing-recipient"


@pytest.mark.asyncio
async def test_dispatch_validation_error(client: AsyncClient) -> None:
    response = await client.post(f"{BASE}/dispatch", json={"title": "", "body": "x"})

    assert response.status_code == 422
    problem = response.json()
    assert problem["type"] == "validation-error"
    assert {error["field"] for error in problem["errors"]} >= {"body.title", "body.event_key"}


@pytest.mark.asyncio
async def test_inbox_requires_user_header(client: AsyncClient) -> None:
    response = await client.get(f"{BASE}/unread-count")

    assert response.status_code == 401
    assert response.json()["type"] == "missing-user-id"


@pytest.mark.asyncio
async def test_read_flow(client: AsyncClient, user_headers: dict[str, str]) -> None:
    first = await _dispatch(client)
    await _dispatch(client, title="Second")

    count = await client.get(f"{BASE}/unread-count", headers=user_headers)
    assert count.json() == {"count": 2}

    read = await client.post(f"{BASE}/{first}/read", headers=user_headers)
    assert read.status_code == 200
    assert read.json()["status"] == "read"

    unread = await client.get(f"{BASE}/", params={"status": "unread"}, headers=user_headers)
    assert [item["title"] for item in unread.json()["items"]] == ["Second"]

    read_all = await client.post(f"{BASE}/read-all", headers=user_headers)
    assert read_all.json() == {"updated": 1}


@pytest.mark.asyncio
async def test_archive_and_ack(client: AsyncClient, user_headers: dict[str, str]) -> None:
    notification_id = await _dispatch(client, requires_ack=True)

    acked = await client.post(f"{BASE}/{notification_id}/ack", headers=user_headers)
    assert acked.json()["ack_at"] is not None
    assert acked.json()["status"] == "read"

    archived = await client.post(f"{BASE}/{notification_id}/archive", headers=user_headers)
    assert archived.json()["archived_at"] is not None
    listing = await client.get(f"{BASE}/", params={"archived": "true"}, headers=user_headers)
    assert [item["id"] for item in listing.json()["items"]] == [notification_id]

    restored = await client.post(f"{BASE}/{notification_id}/unarchive", headers=user_headers)
    assert restored.json()["archived_at"] is None


@pytest.mark.asyncio
async def test_unknown_notification_is_problem(client: AsyncClient, user_headers: dict[str, str]) -> None:
    missing = uuid4()

    response = await client.get(f"{BASE}/{missing}", headers=user_headers)

    assert response.status_code == 404
    assert response.headers["content-type"].startswith("application/problem+json")
    problem = response.json()
    assert problem["type"] == "notification-not-found"
    assert problem["notification_id"] == str(missing)


@pytest.mark.asyncio
async def test_other_users_notification_is_hidden(client: AsyncClient) -> None:
    notification_id = await _dispatch(client)

    response = await client.get(f"{BASE}/{notification_id}", headers={"X-User-Id": "intruder"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_device_registration(client: AsyncClient, user_headers: dict[str, str]) -> None:
    token = "ExponentPushToken[abc123]"

    created = await client.post(
        f"{BASE}/devices",
        json={"push_token": token, "platform": "ios", "app_version": "2.0.1"},
        headers=user_headers,
    )
    assert created.status_code == 201
    assert created.json()["is_active"] is True
    assert created.json()["provider"] == "expo"

    removed = await client.delete(f"{BASE}/devices/{token}", headers=user_headers)
    assert removed.status_code == 204

    foreign = await client.delete(f"{BASE}/devices/{token}", headers={"X-User-Id": "someone-else"})
    assert foreign.status_code == 404
    assert foreign.json()["type"] == "device-not-found"


@pytest.mark.asyncio
async def test_preferences(client: AsyncClient, user_headers: dict[str, str]) -> None:
    defaults = await client.get(f"{BASE}/preferences", headers=user_headers)
    assert defaults.status_code == 200
    assert defaults.json()["quiet_hours"] == {
        "enabled": False,
        "start": "22:00",
        "end": "08:00",
        "timezone": "UTC",
    }

    updated = await client.patch(
        f"{BASE}/preferences",
        json={
            "push_enabled": False,
            "quiet_hours": {"enabled": True, "timezone": "Europe/Paris"},
            "priority_overrides": {"critical": {"push": True}},
        },
        headers=user_headers,
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["push_enabled"] is False
    assert body["quiet_hours"]["timezone"] == "Europe/Paris"
    assert body["quiet_hours"]["start"] == "22:00"
    assert body["priority_overrides"] == {"critical": {"push": True}}

    removed = await client.patch(
        f"{BASE}/preferences",
        json={"priority_overrides": {"critical": None}},
        headers=user_headers,
    )
    assert removed.json()["priority_overrides"] == {}


@pytest.mark.asyncio
async def test_preferences_reject_unknown_timezone(client: AsyncClient, user_headers: dict[str, str]) -> None:
    response = await client.patch(
        f"{BASE}/preferences",
        json={"quiet_hours": {"timezone": "Atlantis/Capital"}},
        headers=user_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_cancel(client: AsyncClient) -> None:
    notification_id = await _dispatch(client)

    response = await client.post(f"{BASE}/{notification_id}/cancel", json={"reason": "Duplicate"})

    assert response.status_code == 200
    assert response.json() == {
        "notification_id": notification_id,
        "cancelled_channels": ["push"],
        "lifecycle_status": "completed",
    }


@pytest.mark.asyncio
async def test_operator_console(client: AsyncClient, user_headers: dict[str, str]) -> None:
    admin = {"X-User-Id": "admin-1"}
    dispatched = await client.post(
        f"{BASE}/dispatch",
        json={**DISPATCH_PAYLOAD, "deduplication_key": "verification-7", "is_silent": True},
        headers=admin,
    )
    assert dispatched.status_code == 201
    notification_id = dispatched.json()["notification_ids"][0]
    await _dispatch(client, title="Sent by a job")

    listing = await client.get(f"{BASE}/admin", params={"event_key": DISPATCH_PAYLOAD["event_key"]}, headers=admin)
    assert listing.status_code == 200
    data = listing.json()
    assert data["pagination"]["total"] == 1
    [item] = data["items"]
    assert item["id"] == notification_id
    assert item["created_by"] == "admin-1"
    assert item["deduplication_key"] == "verification-7:user-123"
    assert item["is_silent"] is True

    detail = await client.get(f"{BASE}/admin/{notification_id}", headers=admin)
    assert detail.status_code == 200
    assert detail.json()["recipient_user_id"] == "user-123"

    resent = await client.post(f"{BASE}/admin/{notification_id}/resend", headers=admin)
    assert resent.status_code == 201
    assert resent.json()["created"] == 1
    assert resent.json()["notification_ids"] != [notification_id]

    inbox = await client.get(f"{BASE}/", headers=user_headers)
    assert inbox.json()["pagination"]["total"] == 3


@pytest.mark.asyncio
async def test_operator_console_is_scoped_to_creator(client: AsyncClient) -> None:
    dispatched = await client.post(f"{BASE}/dispatch", json=DISPATCH_PAYLOAD, headers={"X-User-Id": "admin-1"})
    notification_id = dispatched.json()["notification_ids"][0]
    other = {"X-User-Id": "admin-2"}

    assert (await client.get(f"{BASE}/admin", headers=other)).json()["items"] == []
    assert (await client.get(f"{BASE}/admin/{notification_id}", headers=other)).status_code == 404
    assert (await client.post(f"{BASE}/admin/{notification_id}/resend", headers=other)).status_code == 404
    assert (await client.get(f"{BASE}/admin")).status_code == 401


@pytest.mark.asyncio
async def test_health_metrics_and_request_id(client: AsyncClient) -> None:
    await _dispatch(client)

    health = await client.get("/health", headers={"X-Request-ID": "req-1"})
    assert health.json() == {"status": "ok"}
    assert health.headers["X-Request-ID"] == "req-1"

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "notification_created_total" in metrics.text
    assert "http_requests_total" in metrics.text
