"""Tests for the Expo push provider using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from notify_service.features.notifications.providers import (
    DEVICE_NOT_REGISTERED,
    NETWORK_ERROR,
    ExpoPushProvider,
    PushMessage,
    is_expo_push_token,
)

TOKEN_A = "ExponentPushToken[aaaa]"
TOKEN_B = "ExpoPushToken[bbbb]"


def _message(token: str) -> PushMessage:
    return PushMessage(to=token, title="Hi", body="There", data={"k": "v"})


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        (TOKEN_A, True),
        (TOKEN_B, True),
        ("ExponentPushToken[]", False),
        ("fcm:abc", False),
        (None, False),
    ],
)
def test_is_expo_push_token(token: object, expected: bool) -> None:
    assert is_expo_push_token(token) is expected


@pytest.mark.asyncio
async def test_send_batch_maps_tickets_in_order() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"status": "ok", "id": "ticket-a"},
                    {
                        "status": "error",
                        "message": "not registered",
                        "details": {"error": "DeviceNotRegistered"},
                    },
                ]
            },
        )

    provider = ExpoPushProvider(access_token="secret", transport=httpx.MockTransport(handler))
    result = await provider.send_batch([_message(TOKEN_A), _message(TOKEN_B)])

    assert [t.status for t in result.tickets] == ["ok", "error"]
    assert result.tickets[0].id == "ticket-a"
    assert result.tickets[1].device_not_registered
    assert result.success_count == 1
    assert result.failure_count == 1

    assert len(requests) == 1
    assert requests[0].headers["Authorization"] == "Bearer secret"
    body = json.loads(requests[0].content)
    assert [item["to"] for item in body] == [TOKEN_A, TOKEN_B]
    assert body[0]["channelId"] == "default"


@pytest.mark.asyncio
async def test_invalid_tokens_never_reach_the_network() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"data": []})

    provider = ExpoPushProvider(transport=httpx.MockTransport(handler))
    result = await provider.send_batch([_message("not-a-token")])

    assert calls == 0
    assert result.tickets[0].error == DEVICE_NOT_REGISTERED
    assert not result.tickets[0].ok


@pytest.mark.asyncio
async def test_http_error_marks_every_message_in_chunk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"errors": [{"message": "down"}]})

    provider = ExpoPushProvider(transport=httpx.MockTransport(handler))
    result = await provider.send_batch([_message(TOKEN_A), _message(TOKEN_B)])

    assert [t.error for t in result.tickets] == [NETWORK_ERROR, NETWORK_ERROR]
    assert result.success_count == 0


@pytest.mark.asyncio
async def test_messages_are_chunked() -> None:
    sizes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        batch = json.loads(request.content)
        sizes.append(len(batch))
        return httpx.Response(200, json={"data": [{"status": "ok", "id": m["to"]} for m in batch]})

    provider = ExpoPushProvider(chunk_size=2, transport=httpx.MockTransport(handler))
    tokens = [f"ExponentPushToken[{i}]" for i in range(5)]
    result = await provider.send_batch([_message(t) for t in tokens])

    assert sizes == [2, 2, 1]
    assert [t.id for t in result.tickets] == tokens


@pytest.mark.asyncio
async def test_missing_ticket_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": []})

    provider = ExpoPushProvider(transport=httpx.MockTransport(handler))
    result = await provider.send_batch([_message(TOKEN_A)])

    assert result.tickets[0].status == "error"
    assert result.tickets[0].message == "No ticket returned by provider"


@pytest.mark.asyncio
async def test_empty_batch() -> None:
    provider = ExpoPushProvider(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    result = await provider.send_batch([])
    assert result.tickets == []
