"""Document numbering command for the possync CLI.

Commands:
- next-number: Allocate a document number
"""

from __future__ import annotations

import click

from possync.client.cli.config import load_sync_config


@click.command("next-number")
@click.argument("document_type")
@click.option("--peek", is_flag=True, help="Show the next number without allocating it.")
def next_number(document_type: str, peek: bool) -> None:
    """Allocate the next number of DOCUMENT_TYPE (e.g. invoice, transaction)."""
    from possync.client.database import LocalDatabase
    from possync.client.sync import SequenceAllocator

    config = load_sync_config()
    db = LocalDatabase(config.database_path)
    try:
        allocator = SequenceAllocator(db)
        if peek:
            click.echo(allocator.peek(config.organization_id, document_type))
        else:
            click.echo(allocator.next_number(config.organization_id, document_type))
    finally:
        db.close()
