"""Tests for the change recorder."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from possync.client.database import LocalDatabase
from possync.client.models import TrackedRecord
from possync.client.sync import (
    ChangeRecorder,
    DeletePayload,
    InsertPayload,
    RecordState,
    SyncError,
    SyncQueueStore,
    UnknownRecordError,
    UpdatePayload,
)
from possync.client.tables import NOOP_PRIORITY, TableRegistry, TrackedTable
from possync.core.types import EntryOrigin, Operation, SyncStatus

ORG = "org-1"


class TestRecordInsert:
    """Tests for recording inserts."""

    def test_insert_creates_record_and_entry(
        self, local_db: LocalDatabase, recorder: ChangeRecorder, queue: SyncQueueStore
    ) -> None:
        with local_db.unit_of_work() as session:
            entry = recorder.insert(
                session, ORG, "products", "p1", {"name": "Soda", "price": 2}, user="alice"
            )

        record = local_db.get_record("p1")
        assert record.sync_version == 1
        assert record.sync_status == SyncStatus.PENDING.value
        assert record.created_by == "alice"
        assert record.integrity_hash == local_db.tables.get("products").hash(record.fields)

        assert entry.operation is Operation.INSERT
        assert entry.client_id == "station-a"
        assert entry.origin is EntryOrigin.LOCAL
        assert isinstance(entry.payload, InsertPayload)
        assert entry.payload.after == {"name": "Soda", "price": 2}
        assert entry.payload.hash == record.integrity_hash
        assert queue.pending_count(ORG) == 1

    def test_insert_existing_record_fails(
        self, local_db: LocalDatabase, recorder: ChangeRecorder, make_record: Callable[..., None]
    ) -> None:
        make_record("products", "p1", {"name": "Soda"})
        with pytest.raises(SyncError, match="already exists"), local_db.unit_of_work() as session:
            recorder.insert(session, ORG, "products", "p1", {"name": "Cola"})

    def test_rollback_discards_entry(
        self, local_db: LocalDatabase, recorder: ChangeRecorder, queue: SyncQueueStore
    ) -> None:
        """Mutation and queue entry commit together or not at all."""
        with pytest.raises(RuntimeError), local_db.unit_of_work() as session:
            recorder.insert(session, ORG, "products", "p1", {"name": "Soda"})
            raise RuntimeError("sale aborted")

        assert local_db.get_record("p1") is None
        assert queue.pending_count(ORG) == 0

    def test_decimal_and_datetime_fields(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        """Money and timestamps are stored, hashed and sent in their JSON form."""
        with local_db.unit_of_work() as session:
            entry = recorder.insert(
                session,
                ORG,
                "products",
                "p1",
                {
                    "name": "Soda",
                    "price": Decimal("1.50"),
                    "expires_at": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
                },
            )

        record = local_db.get_record("p1")
        assert record.fields == {
            "name": "Soda",
            "price": "1.5",
            "expires_at": "2024-05-01T12:00:00+00:00",
        }
        assert entry.payload.after == record.fields
        assert record.integrity_hash == local_db.tables.get("products").hash(record.fields)

        # The stored hash still matches once read back
        with local_db.unit_of_work() as session:
            update = recorder.update(session, ORG, "products", "p1", {"price": Decimal("2.00")})
        assert update.payload.after["price"] == "2"
        assert local_db.get_record("p1").sync_version == 2


class TestRecordChange:
    """Tests for record_change itself."""

    def test_operation_given_as_string(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"name": "Soda"})
        with local_db.unit_of_work() as session:
            entry = recorder.record_change(
                session, ORG, "products", "p1", "update", None, {"name": "Cola"}
            )

        assert entry.operation is Operation.UPDATE
        assert local_db.get_record("p1").fields == {"name": "Cola"}

    def test_unknown_operation(self, local_db: LocalDatabase, recorder: ChangeRecorder) -> None:
        with pytest.raises(ValueError), local_db.unit_of_work() as session:
            recorder.record_change(session, ORG, "products", "p1", "upsert", None, {"a": 1})
        assert local_db.get_record("p1") is None


class TestRecordUpdate:
    """Tests for recording updates."""

    def test_update_increments_version(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"name": "Soda", "price": 2})
        before = local_db.get_record("p1")

        with local_db.unit_of_work() as session:
            entry = recorder.update(session, ORG, "products", "p1", {"price": 3}, user="bob")

        record = local_db.get_record("p1")
        assert record.sync_version == 2
        assert record.fields == {"name": "Soda", "price": 3}
        assert record.updated_by == "bob"

        payload = entry.payload
        assert isinstance(payload, UpdatePayload)
        assert payload.before == {"name": "Soda", "price": 2}
        assert payload.after == {"name": "Soda", "price": 3}
        assert payload.base_version == 1
        assert payload.base_hash == before.integrity_hash
        assert payload.version == 2
        assert payload.hash == record.integrity_hash

    def test_version_never_decreases(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"price": 0})
        for price in range(1, 6):
            with local_db.unit_of_work() as session:
                recorder.update(session, ORG, "products", "p1", {"price": price})
        versions = [h.version for h in local_db.history("products", "p1")]
        assert versions == [1, 2, 3, 4, 5, 6]

    def test_noop_update_is_recorded_last(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        """An update that leaves the hash unchanged still gets an entry."""
        make_record("products", "p1", {"name": "Soda"})
        with local_db.unit_of_work() as session:
            entry = recorder.update(session, ORG, "products", "p1", {"name": "Soda"})
        assert entry.priority == NOOP_PRIORITY
        assert local_db.get_record("p1").sync_version == 2

    def test_explicit_before_image(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"current_quantity": 10})
        with local_db.unit_of_work() as session:
            entry = recorder.record_change(
                session,
                ORG,
                "products",
                "p1",
                Operation.UPDATE,
                {"current_quantity": 10},
                {"current_quantity": 7},
            )
        assert entry.payload.before == {"current_quantity": 10}

    def test_update_unknown_record(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        with pytest.raises(UnknownRecordError), local_db.unit_of_work() as session:
            recorder.record_change(
                session, ORG, "products", "nope", Operation.UPDATE, None, {"price": 1}
            )

    def test_update_other_organization(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"price": 1}, organization_id="org-2")
        with pytest.raises(SyncError, match="belongs to organization"), local_db.unit_of_work() as session:
            recorder.update(session, ORG, "products", "p1", {"price": 2})

    def test_local_fields_kept_out_of_payload(self, local_db: LocalDatabase) -> None:
        tables = TableRegistry([TrackedTable("cash_registers", local_fields=frozenset({"printer"}))])
        db = LocalDatabase(local_db.path.with_name("registers.db"), tables)
        try:
            recorder = ChangeRecorder(SyncQueueStore(db), tables)
            with db.unit_of_work() as session:
                entry = recorder.insert(
                    session, ORG, "cash_registers", "r1", {"cash_total": 0, "printer": "epson"}
                )
            assert entry.payload.after == {"cash_total": 0}
            assert db.get_record("r1").fields["printer"] == "epson"
        finally:
            db.close()


class TestRecordDelete:
    """Tests for recording deletes."""

    def test_delete_removes_record(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        make_record("products", "p1", {"name": "Soda"})
        with local_db.unit_of_work() as session:
            entry = recorder.delete(session, ORG, "products", "p1")

        assert local_db.get_record("p1") is None
        assert isinstance(entry.payload, DeletePayload)
        assert entry.payload.before == {"name": "Soda"}
        assert entry.payload.version == 2
        assert entry.priority < local_db.tables.get("products").priority_for(Operation.INSERT)
        assert [h.operation for h in local_db.history("products", "p1")] == ["insert", "delete"]

    def test_delete_unknown_record(self, local_db: LocalDatabase, recorder: ChangeRecorder) -> None:
        with pytest.raises(UnknownRecordError), local_db.unit_of_work() as session:
            recorder.delete(session, ORG, "products", "nope")


class TestRecordResolution:
    """Tests for queuing reconciled states."""

    def _state(self, fields: dict, version: int, *, deleted: bool = False) -> RecordState:
        tables = TableRegistry()
        return RecordState(
            fields=fields,
            sync_version=version,
            integrity_hash=None if deleted else tables.get("products").hash(fields),
            updated_at=datetime(2024, 5, 1, tzinfo=UTC),
            deleted=deleted,
        )

    def test_update_on_top_of_remote(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        remote = self._state({"current_quantity": 12}, 3)
        resolved = self._state({"current_quantity": 10}, 4)
        with local_db.unit_of_work() as session:
            entry = recorder.record_resolution(session, ORG, "products", "p1", remote, resolved)

        assert entry is not None
        assert entry.origin is EntryOrigin.RESOLUTION
        assert entry.operation is Operation.UPDATE
        assert entry.payload.base_version == 3
        assert entry.payload.base_hash == remote.integrity_hash
        assert entry.payload.version == 4
        assert entry.payload.after == {"current_quantity": 10}

    def test_delete_on_top_of_remote(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        remote = self._state({"current_quantity": 12}, 3)
        resolved = self._state({}, 4, deleted=True)
        with local_db.unit_of_work() as session:
            entry = recorder.record_resolution(session, ORG, "products", "p1", remote, resolved)
        assert entry is not None
        assert entry.operation is Operation.DELETE

    def test_both_deleted(self, local_db: LocalDatabase, recorder: ChangeRecorder) -> None:
        remote = self._state({}, 3, deleted=True)
        resolved = self._state({}, 3, deleted=True)
        with local_db.unit_of_work() as session:
            assert (
                recorder.record_resolution(session, ORG, "products", "p1", remote, resolved)
                is None
            )

    def test_resolution_does_not_touch_record(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        remote = self._state({"current_quantity": 12}, 3)
        resolved = self._state({"current_quantity": 10}, 4)
        with local_db.unit_of_work() as session:
            recorder.record_resolution(session, ORG, "products", "p1", remote, resolved)
            assert session.get(TrackedRecord, "p1") is None

    def test_resolved_state_without_hash(
        self, local_db: LocalDatabase, recorder: ChangeRecorder
    ) -> None:
        """A resolved state lacking a hash is pushed with the hash of its fields."""
        remote = self._state({"current_quantity": 12}, 3)
        resolved = RecordState(
            fields={"current_quantity": 10},
            sync_version=4,
            integrity_hash=None,
            updated_at=datetime(2024, 5, 1, tzinfo=UTC),
        )
        with local_db.unit_of_work() as session:
            entry = recorder.record_resolution(session, ORG, "products", "p1", remote, resolved)

        assert entry is not None
        assert entry.payload.hash == local_db.tables.get("products").hash({"current_quantity": 10})
