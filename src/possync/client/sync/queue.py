"""Durable sync queue backed by the local database.

This module provides:
- SyncQueueStore: enqueue, drain and acknowledge change entries
- PendingBatch: Lazy, restartable view of the next entries to send

Entries of an organization are drained by (priority, created_at, id).
Nothing is ever deleted: processed entries stay as an audit trail with
their outcome and processing time.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Collection, Iterable, Iterator, Mapping
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, not_, or_, select

from possync.client.models import QueueItem
from possync.client.sync.types import ChangePayload, QueueEntry, payload_to_json
from possync.core.sqltypes import utcnow
from possync.core.types import EntryOrigin, EntryOutcome

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from sqlalchemy.sql import ColumnElement

    from possync.client.database import LocalDatabase

logger = logging.getLogger(__name__)

RecordKey = tuple[str, str]


def _record_filter(keys: Iterable[RecordKey]) -> ColumnElement[bool]:
    return or_(
        *(
            and_(QueueItem.affected_table == table, QueueItem.record_id == record_id)
            for table, record_id in keys
        )
    )


class PendingBatch:
    """The next unprocessed entries of an organization, in drain order.

    Nothing is read until the batch is iterated, and every iteration
    queries again, so entries acknowledged in the meantime disappear and
    a failed batch can simply be iterated once more.
    """

    def __init__(
        self,
        store: SyncQueueStore,
        organization_id: str,
        max_size: int,
        up_to_id: int | None = None,
        exclude: Collection[RecordKey] = (),
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self._store = store
        self.organization_id = organization_id
        self.max_size = max_size
        self.up_to_id = up_to_id
        self.exclude = frozenset(exclude)

    def fetch(self) -> list[QueueEntry]:
        """Run the query and return the entries."""
        stmt = select(QueueItem).where(
            QueueItem.organization_id == self.organization_id,
            QueueItem.processed.is_(False),
        )
        if self.up_to_id is not None:
            stmt = stmt.where(QueueItem.id <= self.up_to_id)
        if self.exclude:
            stmt = stmt.where(not_(_record_filter(self.exclude)))
        stmt = stmt.order_by(
            QueueItem.priority, QueueItem.created_at, QueueItem.id
        ).limit(self.max_size)

        with self._store.db.session() as session:
            rows = session.execute(stmt).scalars().all()
            return [QueueEntry.from_row(row) for row in rows]

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self.fetch())

    def __repr__(self) -> str:
        return (
            f"PendingBatch({self.organization_id!r}, max_size={self.max_size}, "
            f"up_to_id={self.up_to_id})"
        )


class SyncQueueStore:
    """Queue of change entries, one logical queue per organization."""

    def __init__(self, db: LocalDatabase) -> None:
        """Initialize the store.

        Args:
            db: Local database holding the sync_queue table.
        """
        self.db = db

    def enqueue(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        payload: ChangePayload,
        priority: int,
        *,
        client_id: str | None = None,
        origin: EntryOrigin = EntryOrigin.LOCAL,
        created_at: datetime | None = None,
    ) -> QueueEntry:
        """Append an entry in the caller's transaction.

        The entry commits or rolls back together with the mutation that
        produced it.
        """
        item = QueueItem(
            entry_uuid=str(uuid.uuid4()),
            organization_id=organization_id,
            client_id=client_id,
            affected_table=table,
            record_id=record_id,
            operation=payload.operation.value,
            payload=payload_to_json(payload),
            priority=priority,
            processed=False,
            created_at=created_at or utcnow(),
            attempts=0,
            origin=origin.value,
        )
        session.add(item)
        session.flush()
        entry = QueueEntry.from_row(item)
        logger.debug("Enqueued %r", entry)
        return entry

    def pending_batch(
        self,
        organization_id: str,
        max_size: int,
        up_to_id: int | None = None,
        exclude: Collection[RecordKey] = (),
    ) -> PendingBatch:
        """Next unprocessed entries of an organization.

        Args:
            organization_id: Organization whose queue is drained.
            max_size: Upper bound on the number of entries.
            up_to_id: Only entries with an id up to this one (cycle cutoff).
            exclude: (table, record_id) pairs to leave out, e.g. halted records.
        """
        return PendingBatch(self, organization_id, max_size, up_to_id, exclude)

    def max_pending_id(self, organization_id: str) -> int | None:
        """Highest id among unprocessed entries, None if the queue is drained."""
        with self.db.session() as session:
            return session.execute(
                select(func.max(QueueItem.id)).where(
                    QueueItem.organization_id == organization_id,
                    QueueItem.processed.is_(False),
                )
            ).scalar()

    def mark_processed(
        self,
        entry_ids: Iterable[int],
        outcomes: Mapping[int, EntryOutcome] | None = None,
        session: Session | None = None,
        errors: Mapping[int, str] | None = None,
    ) -> int:
        """Mark entries processed, all of them or none.

        Already processed entries are left untouched.

        Args:
            entry_ids: Queue ids to acknowledge.
            outcomes: Outcome per id (accepted when missing).
            session: Caller's transaction; a new one is used when omitted.
            errors: Error message per id.

        Returns:
            Number of entries that were marked.
        """
        ids = list(entry_ids)
        if not ids:
            return 0
        if session is None:
            with self.db.unit_of_work() as own_session:
                return self._mark(own_session, ids, outcomes or {}, errors or {})
        return self._mark(session, ids, outcomes or {}, errors or {})

    def _mark(
        self,
        session: Session,
        ids: list[int],
        outcomes: Mapping[int, EntryOutcome],
        errors: Mapping[int, str],
    ) -> int:
        now = utcnow()
        rows = session.execute(
            select(QueueItem).where(QueueItem.id.in_(ids), QueueItem.processed.is_(False))
        ).scalars()
        count = 0
        for row in rows:
            row.processed = True
            row.processed_at = now
            row.outcome = outcomes.get(row.id, EntryOutcome.ACCEPTED).value
            row.error_message = errors.get(row.id)
            count += 1
        session.flush()
        logger.debug("Marked %d of %d entries processed", count, len(ids))
        return count

    def supersede_pending(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
    ) -> list[int]:
        """Retire every unprocessed entry of a record.

        Used once a conflict resolution has folded them into the record's
        reconciled state.

        Returns:
            Ids of the superseded entries.
        """
        rows = session.execute(
            select(QueueItem).where(
                QueueItem.organization_id == organization_id,
                QueueItem.affected_table == table,
                QueueItem.record_id == record_id,
                QueueItem.processed.is_(False),
            )
        ).scalars()
        now = utcnow()
        ids = []
        for row in rows:
            row.processed = True
            row.processed_at = now
            row.outcome = EntryOutcome.SUPERSEDED.value
            ids.append(row.id)
        session.flush()
        if ids:
            logger.debug("Superseded %d entries of %s/%s", len(ids), table, record_id)
        return ids

    def still_pending(self, entry_ids: Iterable[int]) -> set[int]:
        """Subset of the given ids that are not processed yet."""
        ids = list(entry_ids)
        if not ids:
            return set()
        with self.db.session() as session:
            return set(
                session.execute(
                    select(QueueItem.id).where(
                        QueueItem.id.in_(ids), QueueItem.processed.is_(False)
                    )
                ).scalars()
            )

    def record_attempt(self, entry_ids: Iterable[int], batch_id: str) -> None:
        """Count a transmission attempt for entries about to be sent."""
        ids = list(entry_ids)
        if not ids:
            return
        with self.db.unit_of_work() as session:
            for row in session.execute(
                select(QueueItem).where(QueueItem.id.in_(ids))
            ).scalars():
                row.attempts = (row.attempts or 0) + 1
                row.batch_id = batch_id

    def pending_count(
        self,
        organization_id: str,
        records: Collection[RecordKey] | None = None,
    ) -> int:
        """Number of unprocessed entries, optionally restricted to some records."""
        stmt = select(func.count(QueueItem.id)).where(
            QueueItem.organization_id == organization_id,
            QueueItem.processed.is_(False),
        )
        if records is not None:
            if not records:
                return 0
            stmt = stmt.where(_record_filter(records))
        with self.db.session() as session:
            return session.execute(stmt).scalar() or 0

    def get(self, entry_id: int) -> QueueEntry | None:
        """Get an entry by queue id."""
        with self.db.session() as session:
            row = session.get(QueueItem, entry_id)
            return QueueEntry.from_row(row) if row else None

    def entries(
        self,
        organization_id: str,
        record: RecordKey | None = None,
        processed: bool | None = None,
    ) -> list[QueueEntry]:
        """List entries of an organization in id order (audit trail)."""
        stmt = select(QueueItem).where(QueueItem.organization_id == organization_id)
        if record is not None:
            stmt = stmt.where(_record_filter([record]))
        if processed is not None:
            stmt = stmt.where(QueueItem.processed.is_(processed))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(QueueItem.id)).scalars().all()
            return [QueueEntry.from_row(row) for row in rows]
