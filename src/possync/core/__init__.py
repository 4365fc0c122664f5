"""Core module - Shared configuration, hashing, and types."""

from possync.core.config import BackoffConfig, ServerConfig, SyncConfig
from possync.core.hashing import (
    SYNC_METADATA_FIELDS,
    canonical_json,
    integrity_hash,
    json_fields,
    synchronized_fields,
)
from possync.core.types import (
    EntryOrigin,
    EntryOutcome,
    IssueKind,
    Operation,
    ResolutionKind,
    SyncStatus,
)

__all__ = [
    # Config
    "BackoffConfig",
    "ServerConfig",
    "SyncConfig",
    # Hashing
    "SYNC_METADATA_FIELDS",
    "canonical_json",
    "integrity_hash",
    "json_fields",
    "synchronized_fields",
    # Types
    "EntryOrigin",
    "EntryOutcome",
    "IssueKind",
    "Operation",
    "ResolutionKind",
    "SyncStatus",
]
