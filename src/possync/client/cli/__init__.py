"""Command-line interface for possync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Configure this station and create its local database
- status: Show pending entries, cursor and halted records
- sync: Run a dispatch cycle, or keep syncing with --watch
- issues: List rejections and integrity violations
- clear-hold: Resume sync of a record halted by an integrity violation
- next-number: Allocate a document number
- serve: Run the reference remote endpoint
"""

from __future__ import annotations

import logging
import sys

import click

from possync.client.cli.config import (
    effective_config,
    get_config_dir,
    get_config_file,
    load_config,
    load_sync_config,
    save_config,
)
from possync.client.cli.sequence import next_number
from possync.client.cli.server import serve
from possync.client.cli.station import init
from possync.client.cli.status import clear_hold, issues, status
from possync.client.cli.sync import sync


def setup_cli_logging(verbose: bool) -> None:
    """Send possync logs to stderr (DEBUG when verbose, WARNING otherwise)."""
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger("possync")
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="possync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def cli(verbose: bool) -> None:
    """possync - offline-first sync engine for point-of-sale stations."""
    setup_cli_logging(verbose)


# Station commands
cli.add_command(init)
cli.add_command(status)
cli.add_command(issues)
cli.add_command(clear_hold)
cli.add_command(next_number)

# Sync commands
cli.add_command(sync)

# Remote endpoint
cli.add_command(serve)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "effective_config",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "load_sync_config",
    "save_config",
]
