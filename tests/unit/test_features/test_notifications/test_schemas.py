"""Tests for notification request and filter schemas."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from notify_service.features.notifications.schemas import (
    DispatchRequest,
    NotificationListFilters,
    PreferencesUpdate,
)


def _request(**overrides) -> DispatchRequest:
    payload = {"title": "Hello", "body": "World", "event_key": "test.event", **overrides}
    return DispatchRequest.model_validate(payload)


@pytest.mark.parametrize(
    ("priority", "expected"),
    [("HIGH", "high"), (" critical ", "critical"), ("urgent", "normal"), (None, "normal")],
)
def test_priority_is_normalised(priority: str | None, expected: str) -> None:
    assert _request(priority=priority).priority == expected


def test_recipients_are_deduplicated_in_order() -> None:
    request = _request(recipients=["u2", " u1 ", "u2", ""])
    assert request.recipients == ["u2", "u1"]


def test_resolved_recipients_prefers_explicit_list() -> None:
    assert _request(recipients=["a", "b"], recipient_user_id="c").resolved_recipients() == ["a", "b"]
    assert _request(recipient_user_id="c").resolved_recipients() == ["c"]
    assert _request().resolved_recipients() == []


def test_title_is_required() -> None:
    with pytest.raises(ValidationError):
        DispatchRequest.model_validate({"title": "", "body": "x", "event_key": "e"})


def test_max_retries_is_bounded() -> None:
    with pytest.raises(ValidationError):
        _request(delivery_policy={"max_retries": 11})


@pytest.mark.parametrize(
    ("limit", "offset", "expected"),
    [(0, -5, (1, 0)), (500, 10, (100, 10)), (20, 0, (20, 0))],
)
def test_list_filters_clamp_paging(limit: int, offset: int, expected: tuple[int, int]) -> None:
    filters = NotificationListFilters(limit=limit, offset=offset)
    assert (filters.limit, filters.offset) == expected


def test_preferences_update_rejects_unknown_timezone() -> None:
    with pytest.raises(ValidationError):
        PreferencesUpdate.model_validate({"quiet_hours": {"timezone": "Nowhere/Special"}})


def test_preferences_update_rejects_malformed_time() -> None:
    with pytest.raises(ValidationError):
        PreferencesUpdate.model_validate({"quiet_hours": {"start": "10pm"}})
