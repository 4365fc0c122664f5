"""Shared configuration classes for possync.

This module defines configuration classes consumed read-only by the
dispatcher, the CLI and the reference remote endpoint.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote sync endpoint.

    Attributes:
        server_url: Base URL of the remote (e.g., "https://sync.example.com").
        token: Bearer token of this station.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class BackoffConfig:
    """Retry backoff applied per organization after transport failures.

    Attributes:
        base_delay: Delay after the first failure, in seconds.
        max_delay: Upper bound for the delay, in seconds.
        multiplier: Growth factor per consecutive failure.
        jitter: Fraction of the delay randomly added or removed (0..1).
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")


@dataclass
class SyncConfig:
    """Configuration of the local sync engine for one organization.

    Attributes:
        organization_id: Tenant this station belongs to.
        database_path: Path to the local SQLite database.
        client_id: Identifier of this station (sent with every batch).
        server: Remote endpoint settings (None = offline only).
        sync_interval: Seconds between scheduled dispatch cycles.
        batch_size: Maximum number of queue entries sent per cycle.
        backoff: Retry backoff settings.
    """

    organization_id: str
    database_path: Path
    client_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    server: ServerConfig | None = None
    sync_interval: float = 60.0
    batch_size: int = 100
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self) -> None:
        self.database_path = Path(self.database_path)
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )
        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be > 0")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SyncConfig:
        """Build a SyncConfig from a flat mapping (e.g. the CLI config file).

        Unknown keys are ignored.

        Raises:
            KeyError: If organization_id or database_path is missing.
            ValueError: If a value is out of range.
        """
        server = None
        if data.get("server_url"):
            server = ServerConfig(
                server_url=str(data["server_url"]),
                token=str(data.get("token", "")),
                timeout=float(data.get("timeout", 30.0)),
                verify_ssl=_as_bool(data.get("verify_ssl", True)),
            )

        backoff = BackoffConfig(
            base_delay=float(data.get("backoff_base_delay", 1.0)),
            max_delay=float(data.get("backoff_max_delay", 300.0)),
            multiplier=float(data.get("backoff_multiplier", 2.0)),
            jitter=float(data.get("backoff_jitter", 0.1)),
        )

        kwargs: dict[str, Any] = {}
        if data.get("client_id"):
            kwargs["client_id"] = str(data["client_id"])

        return cls(
            organization_id=str(data["organization_id"]),
            database_path=Path(data["database_path"]).expanduser(),
            server=server,
            sync_interval=float(data.get("sync_interval", 60.0)),
            batch_size=int(data.get("batch_size", 100)),
            backoff=backoff,
            **kwargs,
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("0", "false", "no", "off", "")
    return bool(value)
