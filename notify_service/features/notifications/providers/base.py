"""Types shared by push providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
NETWORK_ERROR = "NetworkError"


@dataclass(slots=True)
class PushMessage:
    """One provider message addressed to a single device token."""

    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str | None = "default"
    priority: Literal["default", "normal", "high"] = "default"
    channel_id: str = "default"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "priority": self.priority,
            "channelId": self.channel_id,
        }
        if self.sound:
            payload["sound"] = self.sound
        return payload


@dataclass(slots=True)
class PushTicket:
    """Provider verdict for one message.

    Attributes:
        token: Token the message was addressed to
        status: ``ok`` or ``error``
        id: Provider ticket id on success
        message: Provider error message
        error: Provider error code (e.g. ``DeviceNotRegistered``)
    """

    token: str
    status: Literal["ok", "error"]
    id: str | None = None
    message: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def device_not_registered(self) -> bool:
        return self.error == DEVICE_NOT_REGISTERED


@dataclass(slots=True)
class PushBatchResult:
    """Tickets for a batch, in the order the messages were given."""

    tickets: list[PushTicket] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for ticket in self.tickets if ticket.ok)

    @property
    def failure_count(self) -> int:
        return len(self.tickets) - self.success_count


class PushProvider(Protocol):
    """Sends push messages for one provider."""

    name: str

    async def send_batch(self, messages: list[PushMessage]) -> PushBatchResult:
        """Send messages and report a ticket per message.

        Per-message failures are reported in the result, not raised.
        """
        ...
