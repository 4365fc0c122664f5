"""Status and issue commands for the possync CLI.

Commands:
- status: Show pending entries, cursor and halted records
- issues: List rejections and integrity violations
- clear-hold: Resume sync of a record halted by an integrity violation
"""

from __future__ import annotations

import sys

import click

from possync.client.cli.config import load_sync_config


@click.command()
def status() -> None:
    """Show the sync state of this station."""
    from possync.client.database import LocalDatabase
    from possync.client.sync import SyncQueueStore

    config = load_sync_config()
    db = LocalDatabase(config.database_path)
    try:
        queue = SyncQueueStore(db)
        organization_id = config.organization_id
        cursor = db.get_cursor(organization_id)
        halted = sorted(db.halted_records(organization_id))
        open_issues = db.list_issues(organization_id)

        click.echo(f"Organization: {organization_id}")
        click.echo(f"Remote:       {config.server.server_url if config.server else 'none'}")
        click.echo(f"Pending:      {queue.pending_count(organization_id)} entries")
        if cursor and cursor.last_synced_at:
            click.echo(
                f"Last sync:    {cursor.last_synced_at.isoformat(timespec='seconds')} "
                f"(entry {cursor.last_entry_id}, {cursor.batches_sent} batches)"
            )
        else:
            click.echo("Last sync:    never")
        click.echo(f"Open issues:  {len(open_issues)}")
        if halted:
            click.echo("Halted records:")
            for table, record_id in halted:
                click.echo(f"  {table}/{record_id}")
    finally:
        db.close()


@click.command()
@click.option("--all", "show_all", is_flag=True, help="Include resolved issues.")
def issues(show_all: bool) -> None:
    """List rejections and integrity violations."""
    from possync.client.database import LocalDatabase

    config = load_sync_config()
    db = LocalDatabase(config.database_path)
    try:
        found = db.list_issues(config.organization_id, unresolved_only=not show_all)
    finally:
        db.close()

    if not found:
        click.echo("No issues.")
        return
    for issue in found:
        state = "resolved" if issue.resolved_at else "open"
        click.echo(
            f"[{issue.id}] {issue.created_at.isoformat(timespec='seconds')} "
            f"{issue.kind} {issue.table_name}/{issue.record_id} ({state}): {issue.message}"
        )


@click.command("clear-hold")
@click.argument("table")
@click.argument("record_id")
def clear_hold(table: str, record_id: str) -> None:
    """Accept the stored fields of a halted record and resume its sync."""
    from possync.client.database import LocalDatabase
    from possync.client.sync import UnknownRecordError

    config = load_sync_config()
    db = LocalDatabase(config.database_path)
    try:
        record = db.clear_integrity_hold(table, record_id)
    except UnknownRecordError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        db.close()

    click.echo(f"Sync resumed for {table}/{record_id} (version {record.sync_version})")
