"""SQLAlchemy models for the reference remote endpoint.

This module defines the remote schema:
- RemoteRecord: authoritative copy of a record (tombstone once deleted)
- AppliedEntry: response given to every entry id, for duplicate delivery
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from possync.core.sqltypes import UTCDateTime, utcnow


class Base(DeclarativeBase):
    """Base class for all remote models."""


class RemoteRecord(Base):
    """Canonical state of a record of an organization."""

    __tablename__ = "remote_records"

    organization_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    record_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    integrity_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    def snapshot(self) -> dict[str, Any]:
        """Wire representation sent along with a conflict."""
        return {
            "fields": {} if self.deleted else dict(self.fields),
            "version": self.version,
            "hash": self.integrity_hash,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted": self.deleted,
        }


class AppliedEntry(Base):
    """An entry id the remote has answered, with its answer."""

    __tablename__ = "applied_entries"

    entry_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    response: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_applied_org", "organization_id", "applied_at"),)
