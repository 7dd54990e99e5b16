"""Caller identity dependency.

Authentication lives in the surrounding application. Its gateway forwards
the authenticated user id in ``X-User-Id``; this module turns that header
into a typed dependency and binds it to the log context. Swap
``get_current_user_id`` for a real token-validating dependency when the
service is exposed directly.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header

from notify_service.core.exceptions import UnauthorizedException
from notify_service.infra.logging import set_log_context


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Return the caller's user id or raise 401."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedException(
            detail="Missing X-User-Id header",
            type="missing-user-id",
        )
    set_log_context(user_id=user_id)
    return user_id


async def get_optional_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str | None:
    """Return the caller's user id when one is forwarded, else None."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None
    set_log_context(user_id=user_id)
    return user_id


CurrentUserIdDep = Annotated[str, Depends(get_current_user_id)]
OptionalUserIdDep = Annotated[str | None, Depends(get_optional_user_id)]
