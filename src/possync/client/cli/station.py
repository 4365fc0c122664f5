"""Station setup command for the possync CLI.

Commands:
- init: Configure this station and create its local database
"""

from __future__ import annotations

import sys
import uuid
from pathlib import Path

import click

from possync.client.cli.config import (
    default_database_path,
    get_config_file,
    load_config,
    save_config,
)
from possync.core.config import MAX_BATCH_SIZE, MIN_BATCH_SIZE


@click.command()
@click.option("--organization-id", "-o", prompt="Organization id", help="Tenant of this station.")
@click.option("--server-url", "-s", default=None, help="URL of the remote sync endpoint.")
@click.option("--token", "-t", default=None, help="Bearer token for the remote endpoint.")
@click.option(
    "--database-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Local database file (default: ~/.possync/local.db).",
)
@click.option(
    "--batch-size",
    type=click.IntRange(MIN_BATCH_SIZE, MAX_BATCH_SIZE),
    default=100,
    show_default=True,
    help="Maximum entries per batch.",
)
@click.option(
    "--sync-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=60.0,
    show_default=True,
    help="Seconds between scheduled sync cycles.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing configuration.")
def init(
    organization_id: str,
    server_url: str | None,
    token: str | None,
    database_path: Path | None,
    batch_size: int,
    sync_interval: float,
    force: bool,
) -> None:
    """Configure this station and create its local database."""
    from possync.client.database import LocalDatabase

    existing = load_config()
    if existing and not force:
        click.echo(
            f"Error: possync is already configured ({get_config_file()}). "
            "Use --force to overwrite.",
            err=True,
        )
        sys.exit(1)

    db_path = (database_path or default_database_path()).expanduser()
    config = {
        "organization_id": organization_id,
        "client_id": existing.get("client_id") or str(uuid.uuid4()),
        "database_path": str(db_path),
        "batch_size": batch_size,
        "sync_interval": sync_interval,
    }
    if server_url:
        config["server_url"] = server_url
    if token:
        config["token"] = token
    save_config(config)

    db = LocalDatabase(db_path)
    db.close()

    click.echo(f"Station configured for organization {organization_id}")
    click.echo(f"  Client id: {config['client_id']}")
    click.echo(f"  Database:  {db_path}")
    click.echo(f"  Remote:    {server_url or 'none (offline only)'}")
