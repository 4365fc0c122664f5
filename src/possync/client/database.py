"""Local store of a station, using SQLAlchemy with SQLite.

This module provides:
- LocalDatabase: engine/session management and the unit of work
- Read helpers for records, cursors, issues and version history
- Integrity holds: flagging and clearing halted records

Every transaction starts with BEGIN IMMEDIATE so concurrent writers
(several cash registers on one store) serialize on the SQLite write lock
instead of failing when a read transaction tries to upgrade.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session

from possync.client.models import (
    Base,
    SyncCursor,
    SyncIssue,
    SyncMetadata,
    TrackedRecord,
    VersionHistory,
)
from possync.client.sync.types import LocalIntegrityViolation, UnknownRecordError
from possync.client.tables import TableRegistry
from possync.core.sqltypes import utcnow
from possync.core.types import IssueKind, SyncStatus

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Seconds a writer waits for the SQLite lock before giving up
BUSY_TIMEOUT = 30.0


class LocalDatabase:
    """SQLAlchemy database for the local store.

    Uses SQLite with WAL mode. Sessions are short-lived: each public
    method opens its own, and unit_of_work() hands one to callers that
    need several changes to commit or roll back together.
    """

    def __init__(
        self,
        db_path: Path,
        tables: TableRegistry | None = None,
        *,
        echo: bool = False,
    ) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            tables: Per-table sync rules (defaults when omitted).
            echo: Log emitted SQL (debugging).
        """
        self._db_path = Path(db_path)
        self.tables = tables if tables is not None else TableRegistry()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT},
            echo=echo,
        )
        self._install_transaction_hooks()
        Base.metadata.create_all(self._engine)

    def _install_transaction_hooks(self) -> None:
        """Take over transaction control from pysqlite.

        pysqlite would otherwise emit a deferred BEGIN lazily, before the
        first DML statement only.
        """

        @event.listens_for(self._engine, "connect")
        def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self._engine, "begin")
        def _on_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine, expire_on_commit=False)

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Run a block of changes as one transaction.

        Commits when the block exits normally and rolls back on any
        exception. A LocalIntegrityViolation is additionally recorded as a
        halt once the rollback is done, then re-raised.
        """
        session = self.session()
        try:
            yield session
            session.commit()
        except LocalIntegrityViolation as violation:
            session.rollback()
            session.close()
            self.flag_integrity_violation(violation)
            raise
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # === Records ===

    def get_record(self, record_id: str) -> TrackedRecord | None:
        """Get a tracked record by id (detached)."""
        with self.session() as session:
            record = session.get(TrackedRecord, record_id)
            if record:
                session.expunge(record)
            return record

    def list_records(
        self,
        organization_id: str,
        table: str | None = None,
    ) -> list[TrackedRecord]:
        """List tracked records of an organization, optionally for one table."""
        with self.session() as session:
            stmt = select(TrackedRecord).where(
                TrackedRecord.organization_id == organization_id
            )
            if table is not None:
                stmt = stmt.where(TrackedRecord.table_name == table)
            stmt = stmt.order_by(TrackedRecord.table_name, TrackedRecord.created_at)
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def halted_records(self, organization_id: str) -> set[tuple[str, str]]:
        """(table, record_id) of records whose sync is halted."""
        with self.session() as session:
            stmt = select(TrackedRecord.table_name, TrackedRecord.id).where(
                TrackedRecord.organization_id == organization_id,
                TrackedRecord.sync_status == SyncStatus.HALTED.value,
            )
            return {(row.table_name, row.id) for row in session.execute(stmt)}

    def history(self, table: str, record_id: str) -> list[VersionHistory]:
        """Recorded changes of a record, oldest first."""
        with self.session() as session:
            stmt = (
                select(VersionHistory)
                .where(
                    VersionHistory.table_name == table,
                    VersionHistory.record_id == record_id,
                )
                .order_by(VersionHistory.id)
            )
            rows = list(session.execute(stmt).scalars().all())
            for row in rows:
                session.expunge(row)
            return rows

    # === Cursor ===

    def get_cursor(self, organization_id: str) -> SyncCursor | None:
        """Dispatch watermark of an organization."""
        with self.session() as session:
            cursor = session.get(SyncCursor, organization_id)
            if cursor:
                session.expunge(cursor)
            return cursor

    def advance_cursor(
        self,
        session: Session,
        organization_id: str,
        last_entry_id: int | None,
    ) -> None:
        """Move the cursor after an acknowledged batch (caller's transaction)."""
        cursor = session.get(SyncCursor, organization_id)
        if cursor is None:
            cursor = SyncCursor(organization_id=organization_id, batches_sent=0)
            session.add(cursor)
        if last_entry_id is not None and (
            cursor.last_entry_id is None or last_entry_id > cursor.last_entry_id
        ):
            cursor.last_entry_id = last_entry_id
        cursor.last_synced_at = utcnow()
        cursor.batches_sent = (cursor.batches_sent or 0) + 1

    # === Issues ===

    def add_issue(
        self,
        session: Session,
        organization_id: str,
        kind: IssueKind,
        table: str,
        record_id: str,
        message: str,
        entry_id: int | None = None,
    ) -> SyncIssue:
        """Record an issue in the caller's transaction."""
        issue = SyncIssue(
            organization_id=organization_id,
            kind=kind.value,
            table_name=table,
            record_id=record_id,
            entry_id=entry_id,
            message=message,
            created_at=utcnow(),
        )
        session.add(issue)
        session.flush()
        return issue

    def list_issues(
        self,
        organization_id: str,
        unresolved_only: bool = True,
    ) -> list[SyncIssue]:
        """Issues of an organization, oldest first."""
        with self.session() as session:
            stmt = select(SyncIssue).where(SyncIssue.organization_id == organization_id)
            if unresolved_only:
                stmt = stmt.where(SyncIssue.resolved_at.is_(None))
            stmt = stmt.order_by(SyncIssue.id)
            issues = list(session.execute(stmt).scalars().all())
            for issue in issues:
                session.expunge(issue)
            return issues

    # === Integrity holds ===

    def flag_integrity_violation(self, violation: LocalIntegrityViolation) -> SyncIssue:
        """Halt sync for a corrupted record and surface it to operators.

        Runs in its own transaction.
        """
        logger.warning(
            "Local integrity violation on %s/%s (stored=%s computed=%s), halting sync",
            violation.table,
            violation.record_id,
            violation.stored_hash,
            violation.computed_hash,
        )
        with self.session() as session, session.begin():
            record = session.get(TrackedRecord, violation.record_id)
            if record is not None:
                record.sync_status = SyncStatus.HALTED.value
                record.last_sync_error = str(violation)
            issue = self.add_issue(
                session,
                violation.organization_id,
                IssueKind.INTEGRITY,
                violation.table,
                violation.record_id,
                str(violation),
            )
            session.expunge(issue)
        return issue

    def clear_integrity_hold(self, table: str, record_id: str) -> TrackedRecord:
        """Accept the stored fields of a halted record as the truth.

        Recomputes the integrity hash, resumes sync and resolves the
        record's open integrity issues.

        Raises:
            UnknownRecordError: If the record does not exist.
        """
        with self.session() as session, session.begin():
            record = session.get(TrackedRecord, record_id)
            if record is None or record.table_name != table:
                raise UnknownRecordError(f"No tracked record {table}/{record_id}")
            record.sync = SyncMetadata(
                sync_version=record.sync_version,
                last_sync=record.last_sync,
                integrity_hash=self.tables.get(table).hash(record.fields),
            )
            record.sync_status = SyncStatus.PENDING.value
            record.last_sync_error = None

            stmt = select(SyncIssue).where(
                SyncIssue.record_id == record_id,
                SyncIssue.kind == IssueKind.INTEGRITY.value,
                SyncIssue.resolved_at.is_(None),
            )
            now = utcnow()
            for issue in session.execute(stmt).scalars():
                issue.resolved_at = now
            session.flush()
            session.expunge(record)

        logger.info("Integrity hold cleared for %s/%s", record.table_name, record_id)
        return record
