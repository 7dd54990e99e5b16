"""Server management commands."""

import click
import uvicorn

from notify_service.cli.utils import info
from notify_service.core.settings import get_app_settings


@click.group(name="server")
def server() -> None:
    """Server management commands."""


@server.command()
@click.option("--host", default=None, help="Host to bind (default: from APP_HOST)")
@click.option("--port", default=None, type=int, help="Port to bind (default: from APP_PORT)")
@click.option("--reload/--no-reload", default=False, help="Enable auto-reload on code changes")
@click.option("--workers", default=1, type=int, help="Number of worker processes")
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["critical", "error", "warning", "info", "debug", "trace"]),
    help="Uvicorn log level",
)
def run(host: str | None, port: int | None, reload: bool, workers: int, log_level: str) -> None:
    """Run the HTTP API (and the dispatcher, unless NOTIFY_DISPATCHER_ENABLED=false)."""
    settings = get_app_settings()
    host = host or settings.host
    port = port or settings.port

    info(f"Starting server on {host}:{port}")
    uvicorn.run(
        "notify_service.app.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        workers=1 if reload else workers,
        log_level=log_level,
    )
