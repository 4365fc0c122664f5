"""SQLAlchemy models for the local store of a station.

This module defines the local schema the sync engine works on:
- TrackedRecord: generic business record carrying SyncMetadata
- QueueItem: durable sync queue row
- SyncCursor: per-organization dispatch watermark
- SequenceCounter: per-organization document numbering
- VersionHistory: audit trail of recorded changes
- SyncIssue: rejections and integrity violations surfaced to operators
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, composite, mapped_column

from possync.core.sqltypes import UTCDateTime, utcnow
from possync.core.types import EntryOrigin, SyncStatus


class Base(DeclarativeBase):
    """Base class for all local models."""


@dataclass(frozen=True)
class SyncMetadata:
    """Sync state embedded in every tracked record.

    Attributes:
        sync_version: Local edit counter, 1 on creation, never decreases.
        last_sync: When the record was last reconciled with the remote.
        integrity_hash: Digest of the synchronized fields.
    """

    sync_version: int
    last_sync: datetime | None
    integrity_hash: str | None


class TrackedRecord(Base):
    """A business record that participates in sync."""

    __tablename__ = "tracked_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Plain identifiers, no relationship to a user table
    created_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    sync_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_sync: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    integrity_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync: Mapped[SyncMetadata] = composite(
        SyncMetadata, sync_version, last_sync, integrity_hash
    )

    sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.PENDING.value, nullable=False
    )
    conflict_resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_records_org_table", "organization_id", "table_name"),
        Index("idx_records_status", "organization_id", "sync_status"),
    )


class QueueItem(Base):
    """A pending or processed change notification."""

    __tablename__ = "sync_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    affected_table: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    origin: Mapped[str] = mapped_column(
        String(20), default=EntryOrigin.LOCAL.value, nullable=False
    )

    __table_args__ = (
        Index(
            "idx_queue_drain",
            "organization_id",
            "processed",
            "priority",
            "created_at",
            "id",
        ),
        Index("idx_queue_record", "affected_table", "record_id"),
        {"sqlite_autoincrement": True},
    )


class SyncCursor(Base):
    """Last acknowledged position of an organization's queue."""

    __tablename__ = "sync_cursors"

    organization_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    last_entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    batches_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class SequenceCounter(Base):
    """Next number to hand out for an organization and document type."""

    __tablename__ = "sequence_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    prefix: Mapped[str] = mapped_column(String(10), default="", nullable=False)
    next_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    padding: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "document_type", name="uq_sequence_doc_type"),
    )


class VersionHistory(Base):
    """One recorded change of a tracked record."""

    __tablename__ = "version_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    integrity_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_history_record", "table_name", "record_id"),)


class SyncIssue(Base):
    """A problem that needs operator attention."""

    __tablename__ = "sync_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("idx_issues_org", "organization_id", "resolved_at"),)
