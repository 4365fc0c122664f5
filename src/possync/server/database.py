"""Remote database using SQLAlchemy with SQLite.

This module provides:
- RemoteDatabase: applies sync entries and answers them one by one
- TableValidator: per-table business rule hook

Every entry is applied and committed on its own before its answer is
returned, and the answer is stored under the entry id: a client that
resends an entry after a dropped connection gets the same answer back
without the change being applied twice.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from possync.core.hashing import integrity_hash
from possync.core.sqltypes import utcnow
from possync.core.types import Operation
from possync.server.models import AppliedEntry, Base, RemoteRecord

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Returns a rejection reason, or None when the fields are acceptable
TableValidator = Callable[[Mapping[str, Any]], str | None]

TABLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,49}$")


def accepted(entry_id: str, version: int, entry_hash: str | None) -> dict[str, Any]:
    return {
        "entry_id": entry_id,
        "status": "accepted",
        "canonical_version": version,
        "canonical_hash": entry_hash,
    }


def conflict(entry_id: str, record: RemoteRecord) -> dict[str, Any]:
    return {"entry_id": entry_id, "status": "conflict", "remote_snapshot": record.snapshot()}


def rejected(entry_id: str, reason: str) -> dict[str, Any]:
    return {"entry_id": entry_id, "status": "rejected", "reason": reason}


class RemoteDatabase:
    """SQLAlchemy database of the reference remote.

    Uses SQLite with WAL mode. Entry application is serialized by a lock,
    the remote being the single authority of every organization.
    """

    def __init__(
        self,
        db_path: Path,
        validators: Mapping[str, TableValidator] | None = None,
    ) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            validators: Business rule per table name.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._validators = dict(validators or {})
        self._apply_lock = threading.Lock()

        # Create engine with check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine, expire_on_commit=False)

    def register_validator(self, table: str, validator: TableValidator) -> None:
        """Add a business rule for a table."""
        self._validators[table] = validator

    # === Records ===

    def get_record(self, organization_id: str, table: str, record_id: str) -> RemoteRecord | None:
        """Get a record (tombstones included)."""
        with self._session() as session:
            record = session.get(RemoteRecord, (organization_id, table, record_id))
            if record:
                session.expunge(record)
            return record

    def list_records(
        self,
        organization_id: str,
        table: str | None = None,
        include_deleted: bool = False,
    ) -> list[RemoteRecord]:
        """List records of an organization."""
        with self._session() as session:
            stmt = select(RemoteRecord).where(RemoteRecord.organization_id == organization_id)
            if table is not None:
                stmt = stmt.where(RemoteRecord.table_name == table)
            if not include_deleted:
                stmt = stmt.where(RemoteRecord.deleted.is_(False))
            stmt = stmt.order_by(RemoteRecord.table_name, RemoteRecord.record_id)
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def put_record(
        self,
        organization_id: str,
        table: str,
        record_id: str,
        fields: Mapping[str, Any],
        version: int,
        updated_at: datetime | None = None,
    ) -> RemoteRecord:
        """Write a record directly, bypassing the sync protocol.

        Stands for changes made through other channels (back office,
        another integration).
        """
        with self._apply_lock, self._session() as session:
            record = session.get(RemoteRecord, (organization_id, table, record_id))
            if record is None:
                record = RemoteRecord(
                    organization_id=organization_id, table_name=table, record_id=record_id
                )
                session.add(record)
            record.fields = dict(fields)
            record.version = version
            record.integrity_hash = integrity_hash(fields)
            record.deleted = False
            record.updated_at = updated_at or utcnow()
            session.commit()
            session.expunge(record)
            return record

    def applied_count(self, organization_id: str) -> int:
        """Number of distinct entries answered for an organization."""
        with self._session() as session:
            return session.execute(
                select(func.count(AppliedEntry.entry_id)).where(
                    AppliedEntry.organization_id == organization_id
                )
            ).scalar() or 0

    # === Sync ===

    def apply_entry(
        self,
        organization_id: str,
        entry: Mapping[str, Any],
        client_id: str | None = None,
    ) -> dict[str, Any]:
        """Apply one entry and return its answer.

        Args:
            organization_id: Organization the batch was sent for.
            entry: Entry as sent on the wire (see OutboundEntry.to_dict).
            client_id: Station that sent the batch.

        Returns:
            The per-entry answer, ready to be serialized.
        """
        entry_id = str(entry["entry_id"])
        with self._apply_lock, self._session() as session:
            applied = session.get(AppliedEntry, entry_id)
            if applied is not None:
                logger.debug("Entry %s already applied, replaying answer", entry_id)
                return dict(applied.response)

            answer = self._apply(session, organization_id, entry, client_id)
            session.add(
                AppliedEntry(
                    entry_id=entry_id,
                    organization_id=organization_id,
                    client_id=client_id,
                    response=answer,
                    applied_at=utcnow(),
                )
            )
            session.commit()

        logger.debug(
            "Entry %s (%s %s/%s): %s",
            entry_id,
            entry.get("operation"),
            entry.get("table"),
            entry.get("record_id"),
            answer["status"],
        )
        return answer

    def _apply(
        self,
        session: Session,
        organization_id: str,
        entry: Mapping[str, Any],
        client_id: str | None,
    ) -> dict[str, Any]:
        entry_id = str(entry["entry_id"])
        table = str(entry.get("table", ""))
        record_id = str(entry.get("record_id", ""))
        if not TABLE_NAME_PATTERN.match(table):
            return rejected(entry_id, f"invalid table name {table!r}")
        try:
            operation = Operation(entry.get("operation"))
        except ValueError:
            return rejected(entry_id, f"unknown operation {entry.get('operation')!r}")

        payload = entry.get("payload")
        entry_hash = entry.get("hash")
        version = int(entry.get("version") or 1)
        mutated_at = entry.get("mutated_at")
        if isinstance(mutated_at, str):
            mutated_at = datetime.fromisoformat(mutated_at.replace("Z", "+00:00"))
        mutated_at = mutated_at or utcnow()

        if operation is not Operation.DELETE:
            if not isinstance(payload, dict):
                return rejected(entry_id, "missing payload")
            if entry_hash != integrity_hash(payload):
                return rejected(entry_id, "integrity hash does not match payload")
            validator = self._validators.get(table)
            if validator is not None:
                reason = validator(payload)
                if reason:
                    return rejected(entry_id, reason)

        record = session.get(RemoteRecord, (organization_id, table, record_id))
        expected_version = entry.get("expected_version")
        expected_hash = entry.get("expected_hash")

        if operation is Operation.INSERT:
            if record is None:
                record = RemoteRecord(
                    organization_id=organization_id,
                    table_name=table,
                    record_id=record_id,
                    fields=dict(payload),
                    version=max(1, version),
                    integrity_hash=entry_hash,
                    deleted=False,
                    updated_at=mutated_at,
                    updated_by=client_id,
                )
                session.add(record)
                return accepted(entry_id, record.version, entry_hash)
            if not record.deleted and record.integrity_hash == entry_hash:
                return accepted(entry_id, record.version, entry_hash)
            return conflict(entry_id, record)

        if record is None:
            if operation is Operation.UPDATE:
                return rejected(entry_id, f"unknown record {table}/{record_id}")
            session.add(
                RemoteRecord(
                    organization_id=organization_id,
                    table_name=table,
                    record_id=record_id,
                    fields={},
                    version=version,
                    integrity_hash=None,
                    deleted=True,
                    updated_at=mutated_at,
                    updated_by=client_id,
                )
            )
            return accepted(entry_id, version, None)

        base_matches = record.version == expected_version and record.integrity_hash == expected_hash

        if operation is Operation.UPDATE:
            if base_matches:
                record.fields = dict(payload)
                record.version = max(version, record.version + 1)
                record.integrity_hash = entry_hash
                record.deleted = False
                record.updated_at = mutated_at
                record.updated_by = client_id
                return accepted(entry_id, record.version, entry_hash)
            if not record.deleted and record.integrity_hash == entry_hash:
                return accepted(entry_id, record.version, entry_hash)
            return conflict(entry_id, record)

        # Delete
        if record.deleted:
            return accepted(entry_id, record.version, None)
        if base_matches:
            record.fields = {}
            record.version = max(version, record.version + 1)
            record.integrity_hash = None
            record.deleted = True
            record.updated_at = mutated_at
            record.updated_by = client_id
            return accepted(entry_id, record.version, None)
        return conflict(entry_id, record)
