"""Tests for the durable sync queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from possync.client.database import LocalDatabase
from possync.client.sync import (
    InsertPayload,
    QueueEntry,
    SyncQueueStore,
    payload_from_json,
    payload_to_json,
)
from possync.core.types import EntryOutcome

ORG = "org-1"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _enqueue(
    db: LocalDatabase,
    queue: SyncQueueStore,
    record_id: str,
    priority: int,
    created_at: datetime = T0,
    organization_id: str = ORG,
    table: str = "products",
) -> QueueEntry:
    payload = InsertPayload(after={"name": record_id}, version=1, hash="h" * 64, mutated_at=T0)
    with db.unit_of_work() as session:
        return queue.enqueue(
            session,
            organization_id,
            table,
            record_id,
            payload,
            priority,
            created_at=created_at,
        )


class TestEnqueue:
    """Tests for SyncQueueStore.enqueue."""

    def test_entry_fields(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        entry = _enqueue(local_db, queue, "p1", 1)
        assert entry.id > 0
        assert entry.entry_uuid
        assert not entry.processed
        assert entry.record_key == ("products", "p1")
        assert queue.get(entry.id) == entry

    def test_ids_increase(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        ids = [_enqueue(local_db, queue, f"p{i}", 1).id for i in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5


class TestPendingBatch:
    """Tests for drain order and batch bounds."""

    def test_priority_then_time_then_id(
        self, local_db: LocalDatabase, queue: SyncQueueStore
    ) -> None:
        late_update = _enqueue(local_db, queue, "u1", 2, T0)
        early_update = _enqueue(local_db, queue, "u2", 2, T0 - timedelta(seconds=5))
        insert = _enqueue(local_db, queue, "i1", 1, T0 + timedelta(seconds=5))
        delete = _enqueue(local_db, queue, "d1", 0, T0 + timedelta(seconds=9))
        same_time = _enqueue(local_db, queue, "u3", 2, T0)

        batch = queue.pending_batch(ORG, 10).fetch()
        assert [e.id for e in batch] == [
            delete.id,
            insert.id,
            early_update.id,
            late_update.id,
            same_time.id,
        ]

    def test_max_size(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        for i in range(5):
            _enqueue(local_db, queue, f"p{i}", 1)
        assert len(queue.pending_batch(ORG, 3).fetch()) == 3

    def test_invalid_size(self, queue: SyncQueueStore) -> None:
        with pytest.raises(ValueError):
            queue.pending_batch(ORG, 0)

    def test_lazy_and_restartable(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        """A batch re-queries on every iteration."""
        batch = queue.pending_batch(ORG, 10)
        assert list(batch) == []
        first = _enqueue(local_db, queue, "p1", 1)
        assert [e.id for e in batch] == [first.id]
        queue.mark_processed([first.id])
        assert list(batch) == []

    def test_up_to_id(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        first = _enqueue(local_db, queue, "p1", 1)
        _enqueue(local_db, queue, "p2", 0)
        batch = queue.pending_batch(ORG, 10, up_to_id=first.id).fetch()
        assert [e.id for e in batch] == [first.id]

    def test_exclude_records(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        _enqueue(local_db, queue, "p1", 1)
        kept = _enqueue(local_db, queue, "p2", 1)
        batch = queue.pending_batch(ORG, 10, exclude={("products", "p1")}).fetch()
        assert [e.id for e in batch] == [kept.id]

    def test_organizations_isolated(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        _enqueue(local_db, queue, "p1", 1)
        _enqueue(local_db, queue, "p2", 1, organization_id="org-2")
        assert [e.record_id for e in queue.pending_batch(ORG, 10)] == ["p1"]
        assert [e.record_id for e in queue.pending_batch("org-2", 10)] == ["p2"]
        assert queue.max_pending_id("org-3") is None


class TestMarkProcessed:
    """Tests for acknowledging entries."""

    def test_outcomes_recorded(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        a = _enqueue(local_db, queue, "p1", 1)
        b = _enqueue(local_db, queue, "p2", 1)
        marked = queue.mark_processed(
            [a.id, b.id],
            {b.id: EntryOutcome.REJECTED},
            errors={b.id: "price must be positive"},
        )
        assert marked == 2
        assert queue.get(a.id).outcome == EntryOutcome.ACCEPTED.value
        assert queue.get(b.id).outcome == EntryOutcome.REJECTED.value
        assert queue.get(b.id).processed_at is not None
        assert queue.pending_count(ORG) == 0

    def test_idempotent(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        """Marking twice leaves the first outcome in place."""
        a = _enqueue(local_db, queue, "p1", 1)
        assert queue.mark_processed([a.id], {a.id: EntryOutcome.CONFLICT}) == 1
        assert queue.mark_processed([a.id]) == 0
        assert queue.get(a.id).outcome == EntryOutcome.CONFLICT.value

    def test_empty(self, queue: SyncQueueStore) -> None:
        assert queue.mark_processed([]) == 0

    def test_entries_kept_as_audit_trail(
        self, local_db: LocalDatabase, queue: SyncQueueStore
    ) -> None:
        a = _enqueue(local_db, queue, "p1", 1)
        queue.mark_processed([a.id])
        assert [e.id for e in queue.entries(ORG, processed=True)] == [a.id]
        assert queue.entries(ORG, processed=False) == []


class TestSupersede:
    """Tests for supersede_pending and helpers."""

    def test_supersede_only_that_record(
        self, local_db: LocalDatabase, queue: SyncQueueStore
    ) -> None:
        a1 = _enqueue(local_db, queue, "p1", 1)
        a2 = _enqueue(local_db, queue, "p1", 2)
        b = _enqueue(local_db, queue, "p2", 1)
        with local_db.unit_of_work() as session:
            ids = queue.supersede_pending(session, ORG, "products", "p1")
        assert sorted(ids) == [a1.id, a2.id]
        assert queue.still_pending([a1.id, a2.id, b.id]) == {b.id}
        assert queue.get(a1.id).outcome == EntryOutcome.SUPERSEDED.value

    def test_record_attempt(self, local_db: LocalDatabase, queue: SyncQueueStore) -> None:
        a = _enqueue(local_db, queue, "p1", 1)
        queue.record_attempt([a.id], "batch-1")
        queue.record_attempt([a.id], "batch-2")
        assert queue.get(a.id).attempts == 2

    def test_pending_count_for_records(
        self, local_db: LocalDatabase, queue: SyncQueueStore
    ) -> None:
        _enqueue(local_db, queue, "p1", 1)
        _enqueue(local_db, queue, "p1", 2)
        _enqueue(local_db, queue, "p2", 1)
        assert queue.pending_count(ORG, records={("products", "p1")}) == 2
        assert queue.pending_count(ORG, records=set()) == 0
        assert [e.record_id for e in queue.entries(ORG, record=("products", "p2"))] == ["p2"]


class TestPayloadJson:
    """Tests for the queue's payload column format."""

    def test_round_trip(self) -> None:
        payload = InsertPayload(after={"name": "Soda"}, version=1, hash="h" * 64, mutated_at=T0)
        assert payload_from_json(payload_to_json(payload)) == payload

    def test_missing_mutation_time(self) -> None:
        data = {"op": "insert", "after": {"name": "Soda"}, "version": 1, "hash": "h" * 64}
        with pytest.raises(ValueError, match="mutation time"):
            payload_from_json(data)

    def test_unknown_operation(self) -> None:
        with pytest.raises(ValueError):
            payload_from_json({"op": "upsert", "mutated_at": T0.isoformat()})
