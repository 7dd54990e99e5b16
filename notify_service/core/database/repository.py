"""Minimal generic repository for SQLAlchemy models.

Session passing is explicit. Feature repositories subclass BaseRepository
for shared lookups and use the session directly for anything more involved
(conditional updates, bulk statements).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import Select, func, select

from notify_service.core.database.exceptions import NotFoundError
from notify_service.infra.logging import get_lazy_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class SearchResult(Generic[T]):
    """Paginated result container.

    Attributes:
        items: Items of the current page
        total: Total count across all pages
        limit: Page size
        offset: Current offset
    """

    items: Sequence[T]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        """Whether rows exist past the current page."""
        return self.offset + len(self.items) < self.total


class BaseRepository(Generic[T]):
    """Generic lookups and persistence for one model.

    Provides:
        - get(session, id) -> T | None
        - get_or_raise(session, id) -> T (raises NotFoundError)
        - get_by(session, attr, value) -> T | None
        - search(session, statement, limit, offset) -> SearchResult[T]
        - create(session, instance) -> T
        - delete(session, instance) -> None
    """

    __slots__ = ("model", "_logger", "_lazy")

    def __init__(self, model: type[T]) -> None:
        self.model = model
        self._logger = logging.getLogger(f"repository.{model.__name__}")
        self._lazy = get_lazy_logger(f"repository.{model.__name__}")

    async def get(
        self,
        session: AsyncSession,
        id: Any,  # noqa: A002
        *,
        options: Iterable[Any] | None = None,
    ) -> T | None:
        """Get entity by primary key."""
        if options:
            stmt = select(self.model).where(self.model.id == id).options(*options)  # type: ignore[attr-defined]
            result = await session.execute(stmt)
            instance = result.scalar_one_or_none()
        else:
            instance = await session.get(self.model, id)

        self._lazy.debug(
            lambda: f"db.get: {self.model.__name__}({id}) -> {'found' if instance else 'not found'}"
        )
        return instance

    async def get_or_raise(
        self,
        session: AsyncSession,
        id: Any,  # noqa: A002
        *,
        options: Iterable[Any] | None = None,
    ) -> T:
        """Get entity by primary key or raise NotFoundError."""
        instance = await self.get(session, id, options=options)
        if instance is None:
            self._logger.info(
                "Entity not found",
                extra={
                    "entity": self.model.__name__,
                    "id": str(id),
                    "operation": "db.get_or_raise",
                },
            )
            raise NotFoundError(self.model.__name__, {"id": id})
        return instance

    async def get_by(
        self,
        session: AsyncSession,
        attr: InstrumentedAttribute[Any],
        value: Any,
    ) -> T | None:
        """Get the entity whose ``attr`` equals ``value`` (unique attributes only)."""
        result = await session.execute(select(self.model).where(attr == value))
        instance = result.scalar_one_or_none()

        self._lazy.debug(
            lambda: f"db.get_by: {self.model.__name__}.{attr.key}={value!r} -> {'found' if instance else 'not found'}"
        )
        return instance

    async def search(
        self,
        session: AsyncSession,
        statement: Select[tuple[T]],
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> SearchResult[T]:
        """Execute a pre-filtered statement with pagination and total count."""
        count_stmt = select(func.count()).select_from(statement.order_by(None).subquery())
        total = (await session.execute(count_stmt)).scalar_one()

        result = await session.execute(statement.limit(limit).offset(offset))
        items = result.scalars().all()

        self._lazy.debug(
            lambda: f"db.search: {self.model.__name__}(limit={limit}, offset={offset}) -> {len(items)}/{total} items"
        )
        return SearchResult(items=items, total=total, limit=limit, offset=offset)

    async def create(self, session: AsyncSession, instance: T) -> T:
        """Add, flush and refresh a new entity so generated values are populated."""
        session.add(instance)
        await session.flush()
        await session.refresh(instance)

        entity_id = getattr(instance, "id", None)
        self._lazy.debug(lambda: f"db.create: {self.model.__name__}(id={entity_id})")
        return instance

    async def delete(self, session: AsyncSession, instance: T) -> None:
        """Delete an entity."""
        entity_id = getattr(instance, "id", None)
        await session.delete(instance)
        await session.flush()

        self._logger.info(
            "Entity deleted",
            extra={"entity": self.model.__name__, "id": str(entity_id), "operation": "db.delete"},
        )
