"""Dispatcher commands.

Run a single dispatch cycle or an expiry purge outside the web process,
e.g. from cron or while debugging a stuck delivery.

Example:bash
    notify-service dispatch run-once --format json
    notify-service dispatch purge-expired
"""

from __future__ import annotations

import json
import sys

import click

from notify_service.cli.utils import coro, error, header, info, success, warning


def _build_scheduler():
    from notify_service.features.notifications.scheduler import DispatchScheduler
    from notify_service.infra.database import get_sessionmaker

    return DispatchScheduler.create(get_sessionmaker())


@click.group(name="dispatch")
def dispatch() -> None:
    """Notification dispatch commands."""


@dispatch.command(name="run-once")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@coro
async def run_once(output_format: str) -> None:
    """Run one dispatch cycle over every channel and print what it did."""
    from notify_service.infra.database import close_database

    try:
        report = await _build_scheduler().run_cycle()
    finally:
        await close_database()

    if output_format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        header(f"Dispatch cycle {report.cycle_id}")
        click.echo(
            f"{'Channel':<10} {'Cand.':>6} {'Claimed':>8} {'Conflicts':>10} {'Delivered':>10} "
            f"{'Retried':>8} {'Failed':>7} {'Cancelled':>10} {'Errors':>7}"
        )
        click.echo("-" * 84)
        for channel, stats in report.channels.items():
            click.echo(
                f"{channel:<10} {stats.candidates:>6} {stats.claimed:>8} {stats.conflicts:>10} "
                f"{stats.delivered:>10} {stats.retried:>8} {stats.failed:>7} {stats.cancelled:>10} "
                f"{stats.errors:>7}"
            )
        info(f"Duration: {report.duration_seconds:.3f}s")

    if report.aborted:
        error("Cycle aborted by a storage error; see logs")
        sys.exit(1)
    if report.skipped:
        warning("Another cycle was running; nothing done")
    elif output_format != "json":
        success("Dispatch cycle complete")


@dispatch.command(name="purge-expired")
@coro
async def purge_expired() -> None:
    """Delete notifications whose expires_at has passed."""
    from notify_service.infra.database import close_database

    try:
        count = await _build_scheduler().purge_expired()
    except Exception as e:
        error(f"Purge failed: {e}")
        sys.exit(1)
    finally:
        await close_database()

    success(f"Purged {count} expired notification(s)")
