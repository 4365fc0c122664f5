"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Exception taxonomy of the sync engine
- InsertPayload, UpdatePayload, DeletePayload: Tagged union of queue payloads
- QueueEntry: Read-only view of a queue row
- OutboundEntry: An entry as sent to the remote endpoint
- Accepted, Conflict, Rejected: Per-entry responses of the remote
- RecordState: One side of a record (local or remote) for conflict resolution
- SyncResult: Outcome of a dispatch cycle
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from possync.core.sqltypes import parse_timestamp
from possync.core.types import EntryOrigin, IssueKind, Operation

if TYPE_CHECKING:
    from possync.client.models import QueueItem, SyncIssue


class SyncError(Exception):
    """Base exception for sync errors."""


class TransportError(SyncError):
    """A batch could not be exchanged with the remote endpoint."""


class TransientTransportError(TransportError):
    """Network failure, timeout or dropped connection. Retry later."""


class UnknownRecordError(SyncError):
    """Update or delete of a record that does not exist locally."""


class ConflictDetected(SyncError):
    """Local and remote both changed a record since their common version.

    Attributes:
        table: Table of the record
        record_id: Record identifier
        local: Local side of the conflict
        remote: Remote side of the conflict
    """

    def __init__(
        self,
        table: str,
        record_id: str,
        local: RecordState | None,
        remote: RecordState | None,
    ) -> None:
        self.table = table
        self.record_id = record_id
        self.local = local
        self.remote = remote
        super().__init__(f"Conflict on {table}/{record_id}")


class PermanentRejection(SyncError):
    """The remote refused an entry for good (schema or business rule)."""

    def __init__(self, entry_id: int, reason: str) -> None:
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Entry {entry_id} rejected: {reason}")


class LocalIntegrityViolation(SyncError):
    """Stored integrity hash does not match the stored fields.

    Attributes:
        organization_id: Tenant of the record
        table: Table of the record
        record_id: Record identifier
        stored_hash: Hash found in the record's sync metadata
        computed_hash: Hash of the record's current fields
    """

    def __init__(
        self,
        organization_id: str,
        table: str,
        record_id: str,
        stored_hash: str | None,
        computed_hash: str,
    ) -> None:
        self.organization_id = organization_id
        self.table = table
        self.record_id = record_id
        self.stored_hash = stored_hash
        self.computed_hash = computed_hash
        super().__init__(
            f"Integrity violation on {table}/{record_id}: "
            f"stored {stored_hash}, computed {computed_hash}"
        )


# =============================================================================
# Queue payloads
# =============================================================================


@dataclass(frozen=True)
class InsertPayload:
    """Full snapshot of a newly created record."""

    after: dict[str, Any]
    version: int
    hash: str
    mutated_at: datetime

    operation = Operation.INSERT

    @property
    def base_version(self) -> None:
        return None

    @property
    def base_hash(self) -> None:
        return None

    @property
    def before(self) -> None:
        return None


@dataclass(frozen=True)
class UpdatePayload:
    """Pre-image and post-image of an updated record.

    The pre-image is needed to compute deltas of additive counters.
    """

    before: dict[str, Any]
    after: dict[str, Any]
    base_version: int
    base_hash: str | None
    version: int
    hash: str
    mutated_at: datetime

    operation = Operation.UPDATE


@dataclass(frozen=True)
class DeletePayload:
    """Last known state of a deleted record."""

    before: dict[str, Any]
    base_version: int
    base_hash: str | None
    version: int
    mutated_at: datetime

    operation = Operation.DELETE

    @property
    def after(self) -> None:
        return None

    @property
    def hash(self) -> None:
        return None


ChangePayload = InsertPayload | UpdatePayload | DeletePayload


def payload_to_json(payload: ChangePayload) -> dict[str, Any]:
    """Serialize a payload for the queue's JSON column."""
    data: dict[str, Any] = {
        "op": payload.operation.value,
        "version": payload.version,
        "mutated_at": payload.mutated_at.isoformat(),
    }
    if isinstance(payload, InsertPayload):
        data.update(after=payload.after, hash=payload.hash)
    elif isinstance(payload, UpdatePayload):
        data.update(
            before=payload.before,
            after=payload.after,
            base_version=payload.base_version,
            base_hash=payload.base_hash,
            hash=payload.hash,
        )
    else:
        data.update(
            before=payload.before,
            base_version=payload.base_version,
            base_hash=payload.base_hash,
        )
    return data


def payload_from_json(data: dict[str, Any]) -> ChangePayload:
    """Rebuild a payload from the queue's JSON column.

    Raises:
        ValueError: If the operation tag is unknown or the mutation time
            is missing.
    """
    operation = Operation(data["op"])
    mutated_at = parse_timestamp(data.get("mutated_at"))
    if mutated_at is None:
        raise ValueError("Queue payload has no mutation time")
    if operation is Operation.INSERT:
        return InsertPayload(
            after=data["after"],
            version=data["version"],
            hash=data["hash"],
            mutated_at=mutated_at,
        )
    if operation is Operation.UPDATE:
        return UpdatePayload(
            before=data["before"],
            after=data["after"],
            base_version=data["base_version"],
            base_hash=data.get("base_hash"),
            version=data["version"],
            hash=data["hash"],
            mutated_at=mutated_at,
        )
    return DeletePayload(
        before=data["before"],
        base_version=data["base_version"],
        base_hash=data.get("base_hash"),
        version=data["version"],
        mutated_at=mutated_at,
    )


@dataclass(frozen=True)
class QueueEntry:
    """A queue row as seen by the recorder and the dispatcher."""

    id: int
    entry_uuid: str
    organization_id: str
    affected_table: str
    record_id: str
    operation: Operation
    payload: ChangePayload
    priority: int
    processed: bool
    created_at: datetime
    processed_at: datetime | None = None
    outcome: str | None = None
    origin: EntryOrigin = EntryOrigin.LOCAL
    client_id: str | None = None
    attempts: int = 0

    @classmethod
    def from_row(cls, row: QueueItem) -> QueueEntry:
        """Create QueueEntry from an ORM row."""
        return cls(
            id=row.id,
            entry_uuid=row.entry_uuid,
            organization_id=row.organization_id,
            affected_table=row.affected_table,
            record_id=row.record_id,
            operation=Operation(row.operation),
            payload=payload_from_json(row.payload),
            priority=row.priority,
            processed=row.processed,
            created_at=row.created_at,
            processed_at=row.processed_at,
            outcome=row.outcome,
            origin=EntryOrigin(row.origin),
            client_id=row.client_id,
            attempts=row.attempts,
        )

    @property
    def record_key(self) -> tuple[str, str]:
        return (self.affected_table, self.record_id)

    def __repr__(self) -> str:
        return (
            f"QueueEntry({self.id}, {self.operation.name}, "
            f"{self.affected_table}/{self.record_id}, priority={self.priority})"
        )


# =============================================================================
# Remote exchange
# =============================================================================


@dataclass(frozen=True)
class OutboundEntry:
    """A queue entry as transmitted to the remote endpoint.

    expected_version/expected_hash describe the record state the change was
    applied on. The remote only accepts the change if it still holds that state.
    """

    entry_id: str
    table: str
    record_id: str
    operation: Operation
    payload: dict[str, Any] | None
    expected_version: int | None
    expected_hash: str | None
    version: int
    hash: str | None
    mutated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Wire representation."""
        return {
            "entry_id": self.entry_id,
            "table": self.table,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "expected_version": self.expected_version,
            "expected_hash": self.expected_hash,
            "version": self.version,
            "hash": self.hash,
            "mutated_at": self.mutated_at.isoformat(),
        }


@dataclass(frozen=True)
class RecordState:
    """One side of a record for conflict resolution.

    Attributes:
        fields: Synchronized field values (empty when deleted)
        sync_version: Version counter of this side
        integrity_hash: Hash of fields (None when deleted)
        updated_at: Time of the last mutation on this side
        deleted: Whether this side no longer holds the record
    """

    fields: dict[str, Any]
    sync_version: int
    integrity_hash: str | None
    updated_at: datetime | None
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordState:
        """Create from a remote snapshot dictionary."""
        return cls(
            fields=dict(data.get("fields") or {}),
            sync_version=int(data.get("version") or 0),
            integrity_hash=data.get("hash"),
            updated_at=parse_timestamp(data.get("updated_at")),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass(frozen=True)
class Accepted:
    """Remote applied the entry; carries the canonical version."""

    entry_id: str
    canonical_version: int
    canonical_hash: str | None


@dataclass(frozen=True)
class Conflict:
    """Remote diverged; carries its current snapshot."""

    entry_id: str
    remote: RecordState


@dataclass(frozen=True)
class Rejected:
    """Remote refused the entry permanently."""

    entry_id: str
    reason: str


EntryResponse = Accepted | Conflict | Rejected


def response_from_dict(data: dict[str, Any]) -> EntryResponse:
    """Parse one per-entry response line of the remote.

    Raises:
        ValueError: If the status is unknown.
    """
    status = data.get("status")
    entry_id = str(data["entry_id"])
    if status == "accepted":
        return Accepted(
            entry_id=entry_id,
            canonical_version=int(data["canonical_version"]),
            canonical_hash=data.get("canonical_hash"),
        )
    if status == "conflict":
        return Conflict(
            entry_id=entry_id,
            remote=RecordState.from_dict(data["remote_snapshot"]),
        )
    if status == "rejected":
        return Rejected(entry_id=entry_id, reason=str(data.get("reason", "")))
    raise ValueError(f"Unknown response status: {status!r}")


# =============================================================================
# Results
# =============================================================================


@dataclass
class SyncResult:
    """Result of a dispatch cycle for one organization.

    Attributes:
        organization_id: Organization the cycle ran for
        sent: Entries transmitted to the remote
        acked: Entries accepted by the remote
        conflicted: Entries that hit a conflict (all resolved)
        rejected: Entries permanently rejected
        failed: Entries left unprocessed (transport failure or cancellation)
        superseded: Pending entries replaced by a conflict resolution
        halted: Entries skipped because their record is halted
        skipped: Reason the cycle did not run, if any
        transport_error: Message of the transport failure, if any
        issues: Issues raised during the cycle
    """

    organization_id: str
    sent: int = 0
    acked: int = 0
    conflicted: int = 0
    rejected: int = 0
    failed: int = 0
    superseded: int = 0
    halted: int = 0
    skipped: str | None = None
    transport_error: str | None = None
    issues: list[SyncIssue] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Number of entries that reached a terminal outcome."""
        return self.acked + self.conflicted + self.rejected

    @property
    def ok(self) -> bool:
        """True if nothing was left behind by a transport failure."""
        return self.transport_error is None and self.failed == 0

    def raise_for_rejections(self) -> None:
        """Raise PermanentRejection for the first rejection of the cycle."""
        for issue in self.issues:
            if issue.kind == IssueKind.REJECTED.value and issue.entry_id is not None:
                raise PermanentRejection(issue.entry_id, issue.message)


# Type alias for issue notification callback
IssueCallback = Callable[["SyncIssue"], None]
