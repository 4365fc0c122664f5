"""Conflict detection and resolution.

This module provides:
- Winner: Which side a resolution keeps
- Resolution: Decision of the resolver for one record
- ConflictResolver: Last-writer-wins with delta merge of additive counters

Resolution only depends on its inputs and their stored timestamps, never
on the time it runs at.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from numbers import Number
from typing import Any

from possync.client.sync.types import ConflictDetected, RecordState
from possync.client.tables import TableRegistry
from possync.core.types import ResolutionKind

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class Winner(str, Enum):
    """Side kept by a resolution."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"
    NONE = "none"  # both sides already agree

    @property
    def resolution_kind(self) -> ResolutionKind | None:
        """Value stored in TrackedRecord.conflict_resolution."""
        return _RESOLUTION_KINDS.get(self)


_RESOLUTION_KINDS = {
    Winner.LOCAL: ResolutionKind.CLIENT_WINS,
    Winner.REMOTE: ResolutionKind.SERVER_WINS,
    Winner.MERGED: ResolutionKind.MERGED,
}


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one record.

    Attributes:
        winner: Side that was kept.
        merged_record: State both sides must converge to.
        conflict_detected: Whether the two sides had diverged.
        reason: Short human readable explanation.
        local: Local side as given to the resolver.
        remote: Remote side as given to the resolver.
    """

    winner: Winner
    merged_record: RecordState
    conflict_detected: bool
    reason: str
    local: RecordState
    remote: RecordState

    def raise_for_conflict(self, table: str = "", record_id: str = "") -> None:
        """Raise ConflictDetected if the two sides had diverged."""
        if self.conflict_detected:
            raise ConflictDetected(table, record_id, self.local, self.remote)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _changed_fields(state: Mapping[str, Any], base: Mapping[str, Any]) -> set[str]:
    keys = set(state) | set(base)
    return {key for key in keys if state.get(key) != base.get(key)}


class ConflictResolver:
    """Decides which side wins when local and remote have diverged."""

    def __init__(self, tables: TableRegistry | None = None) -> None:
        """Initialize the resolver.

        Args:
            tables: Table rules providing additive fields and hashing.
        """
        self._tables = tables or TableRegistry()

    def resolve(
        self,
        local: RecordState,
        remote: RecordState,
        *,
        base: RecordState | None = None,
        table: str | None = None,
    ) -> Resolution:
        """Resolve one record.

        Args:
            local: Current local state of the record.
            remote: Current remote state of the record.
            base: Common ancestor (pre-image of the local change), if known.
            table: Table of the record, needed for delta merges.

        Returns:
            Resolution whose merged_record carries a version no lower than
            either side's.
        """
        if local.deleted == remote.deleted and local.integrity_hash == remote.integrity_hash:
            merged = RecordState(
                fields=dict(remote.fields),
                sync_version=max(local.sync_version, remote.sync_version),
                integrity_hash=remote.integrity_hash,
                updated_at=remote.updated_at,
                deleted=remote.deleted,
            )
            return Resolution(Winner.NONE, merged, False, "identical content", local, remote)

        if table is not None and base is not None:
            merged_fields = self._delta_merge(table, local, remote, base)
            if merged_fields is not None:
                return self._merged(table, local, remote, merged_fields)

        local_time = local.updated_at or _EPOCH
        remote_time = remote.updated_at or _EPOCH
        if local_time > remote_time:
            merged = RecordState(
                fields=dict(local.fields),
                sync_version=max(local.sync_version, remote.sync_version + 1),
                integrity_hash=local.integrity_hash,
                updated_at=local.updated_at,
                deleted=local.deleted,
            )
            return Resolution(Winner.LOCAL, merged, True, "local change is newer", local, remote)

        merged = RecordState(
            fields=dict(remote.fields),
            sync_version=max(local.sync_version, remote.sync_version),
            integrity_hash=remote.integrity_hash,
            updated_at=remote.updated_at,
            deleted=remote.deleted,
        )
        reason = "remote change is newer" if remote_time > local_time else "tie goes to remote"
        return Resolution(Winner.REMOTE, merged, True, reason, local, remote)

    def _delta_merge(
        self,
        table: str,
        local: RecordState,
        remote: RecordState,
        base: RecordState,
    ) -> dict[str, Any] | None:
        """Sum counter deltas when both sides only touched additive fields."""
        additive = self._tables.get(table).additive_fields
        if not additive or local.deleted or remote.deleted or base.deleted:
            return None

        local_changes = _changed_fields(local.fields, base.fields)
        remote_changes = _changed_fields(remote.fields, base.fields)
        if not local_changes <= additive or not remote_changes <= additive:
            return None

        merged = dict(remote.fields)
        for name in local_changes:
            values = (local.fields.get(name), base.fields.get(name), remote.fields.get(name))
            if not all(_is_number(value) for value in values):
                return None
            local_value, base_value, remote_value = values
            merged[name] = remote_value + (local_value - base_value)
        return merged

    def _merged(
        self,
        table: str,
        local: RecordState,
        remote: RecordState,
        fields: dict[str, Any],
    ) -> Resolution:
        merged_hash = self._tables.get(table).hash(fields)
        if merged_hash == remote.integrity_hash:
            version = max(local.sync_version, remote.sync_version)
        else:
            version = max(local.sync_version, remote.sync_version + 1)
        updated_at = max(
            (t for t in (local.updated_at, remote.updated_at) if t is not None),
            default=None,
        )
        merged = RecordState(
            fields=fields,
            sync_version=version,
            integrity_hash=merged_hash,
            updated_at=updated_at,
        )
        logger.debug("Delta merge on %s: %s", table, fields)
        return Resolution(Winner.MERGED, merged, True, "additive deltas merged", local, remote)
