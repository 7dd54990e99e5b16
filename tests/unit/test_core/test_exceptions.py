"""Tests for the problem-details exception hierarchy."""

from __future__ import annotations

import pytest

from notify_service.core import exceptions
from notify_service.core.exceptions import (
    AppException,
    BadRequestException,
    NotFoundException,
    UnauthorizedException,
)


@pytest.mark.parametrize(
    ("exc", "status_code", "type_", "title"),
    [
        (NotFoundException("missing"), 404, "not-found", "Not Found"),
        (BadRequestException("nope"), 400, "bad-request", "Bad Request"),
        (UnauthorizedException(), 401, "unauthorized", "Unauthorized"),
    ],
)
def test_problem_fields(exc: AppException, status_code: int, type_: str, title: str) -> None:
    assert exc.status_code == status_code
    assert exc.type == type_
    assert exc.title == title
    assert exc.extra == {}


def test_unlisted_status_gets_generic_title() -> None:
    assert AppException(status_code=418, detail="teapot").title == "Error"
    assert AppException(status_code=500, detail="boom").title == "Internal Server Error"


def test_module_exports_only_raised_exceptions() -> None:
    defined = {
        name
        for name, value in vars(exceptions).items()
        if isinstance(value, type) and issubclass(value, AppException)
    }

    assert defined == {"AppException", "NotFoundException", "BadRequestException", "UnauthorizedException"}
