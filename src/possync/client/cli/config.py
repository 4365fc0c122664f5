"""Configuration utilities for the possync CLI.

This module provides shared configuration functions used across CLI commands.
Values come from ~/.possync/config.json; POSSYNC_* environment variables
override them.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import click

from possync.core.config import SyncConfig

# Config key -> environment variable overriding it
ENV_OVERRIDES = {
    "organization_id": "POSSYNC_ORGANIZATION_ID",
    "server_url": "POSSYNC_SERVER_URL",
    "token": "POSSYNC_TOKEN",
    "database_path": "POSSYNC_DB_PATH",
    "batch_size": "POSSYNC_BATCH_SIZE",
    "sync_interval": "POSSYNC_SYNC_INTERVAL",
}


def get_config_dir() -> Path:
    """Get the configuration directory for possync.

    Returns:
        Path to ~/.possync or equivalent.
    """
    return Path.home() / ".possync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def default_database_path() -> Path:
    """Local database used when none is configured."""
    return get_config_dir() / "local.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def effective_config() -> dict[str, Any]:
    """Config file values with environment overrides applied."""
    config = load_config()
    for key, variable in ENV_OVERRIDES.items():
        value = os.environ.get(variable)
        if value:
            config[key] = value
    config.setdefault("database_path", str(default_database_path()))
    return config


def load_sync_config() -> SyncConfig:
    """Build the SyncConfig of this station.

    Raises:
        click.ClickException: If the station is not initialized or a
            value is invalid.
    """
    config = effective_config()
    if not config.get("organization_id"):
        raise click.ClickException(
            "possync not initialized. Run 'possync init' first."
        )
    try:
        return SyncConfig.from_dict(config)
    except (KeyError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e
