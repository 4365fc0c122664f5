"""Shared types for possync.

This module defines enums used by both the local engine and the
reference remote endpoint.
"""

from __future__ import annotations

from enum import Enum


class Operation(str, Enum):
    """Kind of local mutation recorded in the sync queue."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    """Sync state of a tracked record.

    Stored on every tracked record next to its sync metadata.
    """

    PENDING = "pending"  # Local changes not yet acknowledged
    SYNCED = "synced"  # Matches the remote canonical version
    CONFLICT = "conflict"  # Diverged, resolution push still queued
    ERROR = "error"  # Last change was permanently rejected
    HALTED = "halted"  # Local integrity violation, sync stopped


class ResolutionKind(str, Enum):
    """How a conflict was settled (stored on the record)."""

    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGED = "merged"


class EntryOutcome(str, Enum):
    """Terminal outcome of a processed queue entry."""

    ACCEPTED = "accepted"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class EntryOrigin(str, Enum):
    """Where a queue entry came from."""

    LOCAL = "local"  # A local mutation
    RESOLUTION = "resolution"  # Push of a conflict resolution


class IssueKind(str, Enum):
    """Kinds of problems surfaced to operators."""

    REJECTED = "rejected"
    INTEGRITY = "integrity"
