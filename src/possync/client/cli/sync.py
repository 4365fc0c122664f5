"""Sync command for the possync CLI.

Commands:
- sync: Run a dispatch cycle, or keep syncing with --watch
"""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING

import click

from possync.client.cli.config import load_sync_config

if TYPE_CHECKING:
    from possync.client.models import SyncIssue
    from possync.client.sync import SyncResult


def _report_issue(issue: SyncIssue) -> None:
    click.echo(
        f"Warning: {issue.kind} on {issue.table_name}/{issue.record_id}: {issue.message}",
        err=True,
    )


def _print_result(result: SyncResult) -> None:
    if result.skipped:
        click.echo(f"Sync skipped: {result.skipped}")
        return
    click.echo(
        f"Sent {result.sent}, accepted {result.acked}, conflicts {result.conflicted}, "
        f"rejected {result.rejected}, superseded {result.superseded}, "
        f"left pending {result.failed}, halted {result.halted}"
    )
    if result.transport_error:
        click.echo(f"Remote unreachable: {result.transport_error}", err=True)


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep syncing on the configured interval.")
def sync(watch: bool) -> None:
    """Send pending changes to the remote endpoint.

    Runs one cycle, or with --watch keeps syncing until interrupted.
    """
    from possync.client.api import HTTPRemoteEndpoint
    from possync.client.database import LocalDatabase
    from possync.client.sync import SyncDispatcher, SyncScheduler

    config = load_sync_config()
    if config.server is None:
        click.echo(
            "Error: No remote configured. Run 'possync init --force --server-url ...'.",
            err=True,
        )
        sys.exit(1)

    db = LocalDatabase(config.database_path)
    endpoint = HTTPRemoteEndpoint(config.server)
    dispatcher = SyncDispatcher.from_config(config, db, endpoint, on_issue=_report_issue)

    try:
        if not watch:
            result = dispatcher.run_cycle(config.organization_id)
            _print_result(result)
            if result.transport_error:
                sys.exit(2)
            return

        scheduler = SyncScheduler(dispatcher, [config.organization_id], config.sync_interval)
        scheduler.start()
        click.echo(
            f"Syncing {config.organization_id} every {config.sync_interval:.0f}s "
            "(Ctrl+C to stop)"
        )
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            scheduler.stop()
    finally:
        endpoint.close()
        db.close()
