"""Programmatic Alembic command interface with async support.

Runs migrations through the Alembic library rather than a subprocess, so
the CLI shares the application's settings and engine.

Example:
    from notify_service.infra.database.alembic import get_alembic_commands

    commands = get_alembic_commands()
    output = await commands.upgrade("head")
    revision = await commands.get_current_revision()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from alembic import command

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


@dataclass
class AlembicCommandConfig:
    """Configuration for Alembic commands.

    Attributes:
        engine: SQLAlchemy async engine for database operations
        script_location: Path to the alembic scripts directory
        render_as_batch: Enable batch mode for migrations (SQLite)
    """

    engine: AsyncEngine
    script_location: str = str(PROJECT_ROOT / "alembic")
    render_as_batch: bool = False

    def get_alembic_config(self, output_buffer: io.StringIO | None = None) -> Config:
        """Build the Alembic configuration.

        Args:
            output_buffer: Optional StringIO to capture command output

        Raises:
            FileNotFoundError: If alembic.ini is missing from the project root.
        """
        alembic_ini_path = PROJECT_ROOT / "alembic.ini"
        if not alembic_ini_path.exists():
            msg = f"alembic.ini not found at {alembic_ini_path}"
            raise FileNotFoundError(msg)

        config = Config(str(alembic_ini_path), stdout=output_buffer or io.StringIO())
        config.set_main_option("script_location", self.script_location)
        # render_as_string keeps the password (str() masks it)
        config.set_main_option("sqlalchemy.url", self.engine.url.render_as_string(hide_password=False))

        # Read by env.py through config.attributes
        config.attributes["engine"] = self.engine
        config.attributes["render_as_batch"] = self.render_as_batch
        return config


class AlembicCommands:
    """Async wrappers around the Alembic commands the CLI needs.

    Alembic commands are synchronous; they run in a worker thread so the
    event loop is never blocked.
    """

    def __init__(self, config: AlembicCommandConfig) -> None:
        self.config = config

    async def upgrade(self, revision: str = "head", *, sql: bool = False) -> str:
        """Upgrade the database to ``revision`` and return Alembic's output."""
        logger.info("Upgrading database", extra={"revision": revision, "sql": sql})
        output = io.StringIO()
        alembic_config = self.config.get_alembic_config(output)

        await asyncio.to_thread(command.upgrade, alembic_config, revision, sql=sql)

        logger.info("Upgrade completed", extra={"revision": revision})
        return output.getvalue()

    async def get_current_revision(self) -> str | None:
        """Revision applied to the database, or None before the first upgrade."""

        def _current(connection: Connection) -> str | None:
            return MigrationContext.configure(connection).get_current_revision()

        async with self.config.engine.connect() as connection:
            return await connection.run_sync(_current)

    def get_head_revision(self) -> str | None:
        script = ScriptDirectory.from_config(self.config.get_alembic_config())
        return script.get_current_head()

    async def is_up_to_date(self) -> bool:
        return await self.get_current_revision() == self.get_head_revision()


def get_alembic_commands(engine: AsyncEngine | None = None) -> AlembicCommands:
    """Factory for an AlembicCommands bound to ``engine`` (the shared engine by default)."""
    if engine is None:
        from notify_service.infra.database.session import get_engine

        engine = get_engine()
    return AlembicCommands(AlembicCommandConfig(engine=engine))


__all__ = [
    "AlembicCommandConfig",
    "AlembicCommands",
    "get_alembic_commands",
]
