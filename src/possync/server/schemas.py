"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from possync.server.models import RemoteRecord

# === Sync schemas ===


class SyncEntryRequest(BaseModel):
    """One queue entry as sent by a station."""

    entry_id: str
    table: str
    record_id: str
    operation: Literal["insert", "update", "delete"]
    payload: dict[str, Any] | None = None
    expected_version: int | None = None
    expected_hash: str | None = None
    version: int = Field(ge=1)
    hash: str | None = None
    mutated_at: datetime


class SyncBatchRequest(BaseModel):
    """Request body of a sync exchange."""

    client_id: str | None = None
    entries: list[SyncEntryRequest]


class RemoteSnapshot(BaseModel):
    """Remote state returned with a conflict."""

    fields: dict[str, Any]
    version: int
    hash: str | None
    updated_at: str | None
    deleted: bool


class AcceptedResponse(BaseModel):
    """Entry applied by the remote."""

    entry_id: str
    status: Literal["accepted"] = "accepted"
    canonical_version: int
    canonical_hash: str | None


class ConflictResponse(BaseModel):
    """Entry not applied, the remote diverged."""

    entry_id: str
    status: Literal["conflict"] = "conflict"
    remote_snapshot: RemoteSnapshot


class RejectedResponse(BaseModel):
    """Entry refused for good."""

    entry_id: str
    status: Literal["rejected"] = "rejected"
    reason: str


# === Record schemas ===


class RecordResponse(BaseModel):
    """Record data in responses."""

    table: str
    record_id: str
    fields: dict[str, Any]
    version: int
    hash: str | None
    deleted: bool
    updated_at: str


def record_to_response(record: RemoteRecord) -> RecordResponse:
    """Convert RemoteRecord model to RecordResponse."""
    return RecordResponse(
        table=record.table_name,
        record_id=record.record_id,
        fields=record.fields,
        version=record.version,
        hash=record.integrity_hash,
        deleted=record.deleted,
        updated_at=record.updated_at.isoformat(),
    )


# === Health schemas ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
