"""Alembic migration environment with async engine support.

Enhanced with:
- Batch mode auto-detection for SQLite compatibility
- Object filtering to exclude the version table
- Empty migration detection to skip no-op revisions
- Configurable via AlembicCommandConfig attributes

When using the programmatic API (AlembicCommands) the engine is passed via
config.attributes. When using the alembic CLI, the URL comes from DB_
settings.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig
from typing import TYPE_CHECKING, Any

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

# Importing the models registers every table on Base.metadata.
from notify_service.core.database.base import Base
from notify_service.core.settings import get_db_settings
from notify_service.features.notifications import models  # noqa: F401

if TYPE_CHECKING:
    from collections.abc import Iterable

    from alembic.operations.ops import MigrationScript
    from alembic.runtime.migration import MigrationContext
    from sqlalchemy.engine import Connection

config = context.config

if config.config_file_name is not None and not config.attributes.get("engine"):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

# CLI usage: take the URL from settings unless the programmatic API set one
if config.attributes.get("engine") is None:
    config.set_main_option("sqlalchemy.url", get_db_settings().get_sqlalchemy_url())

RENDER_AS_BATCH = config.attributes.get("render_as_batch", False)


def include_object(
    obj: Any,
    name: str | None,
    type_: str,
    reflected: bool,
    compare_to: Any,
) -> bool:
    """Skip Alembic's own version table during autogenerate."""
    _ = obj, reflected, compare_to
    return not (type_ == "table" and name == "alembic_version")


def process_revision_directives(
    context: MigrationContext,
    revision: str | tuple[str, ...] | Iterable[str | None] | Iterable[str],
    directives: list[MigrationScript],
) -> None:
    """Drop autogenerated revisions that contain no operations."""
    _ = context, revision
    if getattr(config.cmd_opts, "autogenerate", False) and directives:
        script = directives[0]
        if script.upgrade_ops is not None and script.upgrade_ops.is_empty():
            directives[:] = []
            print("No changes detected, skipping migration creation")


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    use_batch_mode = connection.dialect.name == "sqlite" or RENDER_AS_BATCH

    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        include_object=include_object,
        render_as_batch=use_batch_mode,
        process_revision_directives=process_revision_directives,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations on the provided engine, or one built from the config."""
    engine = config.attributes.get("engine")

    if engine is not None:
        async with engine.begin() as connection:
            await connection.run_sync(do_run_migrations)
        return

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.begin() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
