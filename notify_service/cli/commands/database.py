"""Database management commands using the programmatic Alembic API.

Example:bash
    # Apply all pending migrations
    notify-service db upgrade

    # Show the applied revision
    notify-service db current
"""

import sys

import click

from notify_service.cli.utils import coro, error, info, success, warning


def get_alembic_commands():
    """Lazy import so the CLI starts without touching the database layer."""
    from notify_service.infra.database.alembic import get_alembic_commands

    return get_alembic_commands()


@click.group(name="db")
def db() -> None:
    """Database management commands."""


@db.command()
@click.option("--revision", default="head", help="Target revision")
@click.option("--sql/--no-sql", default=False, help="Output SQL without executing")
@coro
async def upgrade(revision: str, sql: bool) -> None:
    """Apply database migrations."""
    info(f"Upgrading database to: {revision}")

    try:
        commands = get_alembic_commands()
        output = await commands.upgrade(revision, sql=sql)
        if output:
            click.echo(output)
        if not sql:
            success("Database upgraded successfully!")
    except Exception as e:
        error(f"Failed to upgrade database: {e}")
        sys.exit(1)
    finally:
        from notify_service.infra.database import close_database

        await close_database()


@db.command()
@coro
async def current() -> None:
    """Show the revision applied to the database."""
    try:
        commands = get_alembic_commands()
        revision = await commands.get_current_revision()
        head = commands.get_head_revision()
    except Exception as e:
        error(f"Failed to read revision: {e}")
        sys.exit(1)
    finally:
        from notify_service.infra.database import close_database

        await close_database()

    if revision is None:
        warning("No migrations applied")
    else:
        info(f"Current revision: {revision}")
    if revision != head:
        warning(f"Head revision is {head}; run 'notify-service db upgrade'")
