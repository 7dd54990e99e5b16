"""Main CLI entry point for notify-service management commands."""

import click

from notify_service.cli.commands import database, dispatch, server
from notify_service.infra.logging import setup_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="notify-service")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Notify Service CLI - management commands for the notification service.

    \b
    Command Groups:
      db         Database migrations
      dispatch   Run dispatch cycles and purges by hand
      server     Run the HTTP API

    \b
    Quick Start:
      notify-service db upgrade          # Apply migrations
      notify-service server run          # Serve the API and the dispatcher
      notify-service dispatch run-once   # One dispatch cycle, then exit
    """
    ctx.ensure_object(dict)


cli.add_command(database.db)
cli.add_command(dispatch.dispatch)
cli.add_command(server.server)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
