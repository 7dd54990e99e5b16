"""Expo push gateway client."""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from notify_service.features.notifications.metrics import (
    push_provider_messages_total,
    push_provider_request_duration_seconds,
)
from notify_service.features.notifications.providers.base import (
    DEVICE_NOT_REGISTERED,
    NETWORK_ERROR,
    PushBatchResult,
    PushMessage,
    PushTicket,
)
from notify_service.infra.logging import get_lazy_logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from notify_service.core.settings.notifications import PushSettings

logger = logging.getLogger(__name__)
lazy_logger = get_lazy_logger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_MAX_CHUNK_SIZE = 100

_EXPO_TOKEN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")


def is_expo_push_token(token: Any) -> bool:
    """Whether ``token`` looks like an Expo push token."""
    return isinstance(token, str) and bool(_EXPO_TOKEN.match(token))


T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class ExpoPushProvider:
    """Send push messages through the Expo push API.

    Handles:
    - chunking (Expo accepts at most 100 messages per call)
    - optional bearer access token
    - per-call timeout; a failed call marks every message in it as errored
    - local token validation, so malformed tokens never reach the network

    The ``transport`` argument exists for tests (``httpx.MockTransport``).
    """

    name = "expo"

    def __init__(
        self,
        *,
        url: str = EXPO_PUSH_URL,
        access_token: str | None = None,
        timeout_seconds: float = 5.0,
        chunk_size: int = EXPO_MAX_CHUNK_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.chunk_size = max(1, min(chunk_size, EXPO_MAX_CHUNK_SIZE))
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: PushSettings) -> ExpoPushProvider:
        token = settings.expo_access_token.get_secret_value() if settings.expo_access_token else None
        return cls(
            url=settings.expo_push_url,
            access_token=token,
            timeout_seconds=settings.request_timeout_seconds,
            chunk_size=settings.chunk_size,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send_batch(self, messages: list[PushMessage]) -> PushBatchResult:
        """Send ``messages`` and return one ticket per message, in input order."""
        if not messages:
            return PushBatchResult()

        tickets: list[PushTicket | None] = [None] * len(messages)
        sendable: list[tuple[int, PushMessage]] = []

        for index, message in enumerate(messages):
            if is_expo_push_token(message.to):
                sendable.append((index, message))
            else:
                tickets[index] = PushTicket(
                    token=message.to,
                    status="error",
                    message=f"{message.to!r} is not a valid Expo push token",
                    error=DEVICE_NOT_REGISTERED,
                )

        if sendable:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                for chunk in chunked(sendable, self.chunk_size):
                    chunk_tickets = await self._send_chunk(client, [message for _, message in chunk])
                    for (index, _), ticket in zip(chunk, chunk_tickets, strict=True):
                        tickets[index] = ticket

        result = PushBatchResult(tickets=[ticket for ticket in tickets if ticket is not None])

        push_provider_messages_total.labels(provider=self.name, result="ok").inc(result.success_count)
        push_provider_messages_total.labels(provider=self.name, result="error").inc(result.failure_count)
        lazy_logger.debug(
            lambda: f"expo.send_batch: {len(messages)} messages -> "
            f"{result.success_count} ok, {result.failure_count} errors"
        )
        return result

    async def _send_chunk(self, client: httpx.AsyncClient, batch: list[PushMessage]) -> list[PushTicket]:
        start_time = time.perf_counter()
        try:
            response = await client.post(
                self.url,
                json=[message.to_payload() for message in batch],
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            push_provider_request_duration_seconds.labels(provider=self.name).observe(
                time.perf_counter() - start_time
            )
            logger.warning(
                "Expo push request failed",
                extra={
                    "batch_size": len(batch),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "operation": "expo.send_chunk",
                },
            )
            message = str(exc) or type(exc).__name__
            return [
                PushTicket(token=item.to, status="error", message=message, error=NETWORK_ERROR)
                for item in batch
            ]

        push_provider_request_duration_seconds.labels(provider=self.name).observe(
            time.perf_counter() - start_time
        )

        try:
            parsed = response.json()
        except ValueError:
            logger.warning(
                "Expo push response was not JSON",
                extra={"status_code": response.status_code, "operation": "expo.send_chunk"},
            )
            parsed = {}

        data = parsed.get("data") if isinstance(parsed, dict) else None
        if not isinstance(data, list):
            data = []

        return [self._ticket_for(message, data[i] if i < len(data) else None) for i, message in enumerate(batch)]

    @staticmethod
    def _ticket_for(message: PushMessage, raw: Any) -> PushTicket:
        raw = raw if isinstance(raw, dict) else {}
        if raw.get("status") == "ok":
            return PushTicket(token=message.to, status="ok", id=raw.get("id"))

        details = raw.get("details")
        error = details.get("error") if isinstance(details, dict) else None
        return PushTicket(
            token=message.to,
            status="error",
            id=raw.get("id"),
            message=raw.get("message") or "No ticket returned by provider",
            error=error,
        )
