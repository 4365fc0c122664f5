"""Tests for the local station database."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy import text

from possync.client.database import LocalDatabase
from possync.client.models import SyncCursor, TrackedRecord
from possync.client.sync import ChangeRecorder, LocalIntegrityViolation, UnknownRecordError
from possync.core.types import IssueKind, SyncStatus

ORG = "org-1"


def _tamper(db: LocalDatabase, record_id: str, **changes: object) -> None:
    """Change stored fields without going through the recorder."""
    with db.unit_of_work() as session:
        record = session.get(TrackedRecord, record_id)
        assert record is not None
        record.fields = {**record.fields, **changes}


class TestLocalDatabase:
    """Tests for engine setup and the unit of work."""

    def test_creates_file_and_parent(self, tmp_path: Path) -> None:
        db = LocalDatabase(tmp_path / "nested" / "local.db")
        try:
            assert db.path.exists()
        finally:
            db.close()

    def test_wal_mode(self, local_db: LocalDatabase) -> None:
        with local_db.engine.connect() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()
        assert mode == "wal"

    def test_unit_of_work_rolls_back(
        self, local_db: LocalDatabase, make_record: Callable[..., None]
    ) -> None:
        """An exception inside the block discards every change."""
        make_record("products", "p1", {"name": "Soda"})
        with pytest.raises(RuntimeError), local_db.unit_of_work() as session:
            session.get(TrackedRecord, "p1").fields = {"name": "Water"}
            raise RuntimeError("boom")
        assert local_db.get_record("p1").fields == {"name": "Soda"}

    def test_list_records(self, local_db: LocalDatabase, make_record: Callable[..., None]) -> None:
        make_record("products", "p1", {"name": "Soda"})
        make_record("customers", "c1", {"name": "Ada"})
        make_record("products", "p2", {"name": "Other"}, organization_id="org-2")

        assert {r.id for r in local_db.list_records(ORG)} == {"p1", "c1"}
        assert [r.id for r in local_db.list_records(ORG, "products")] == ["p1"]

    def test_history(self, local_db: LocalDatabase, make_record: Callable[..., None]) -> None:
        make_record("products", "p1", {"name": "Soda"})
        history = local_db.history("products", "p1")
        assert [(h.version, h.operation) for h in history] == [(1, "insert")]
        assert history[0].client_id == "station-a"


class TestSyncCursor:
    """Tests for the per-organization dispatch cursor."""

    def test_advance_cursor(self, local_db: LocalDatabase) -> None:
        assert local_db.get_cursor(ORG) is None

        with local_db.unit_of_work() as session:
            local_db.advance_cursor(session, ORG, 5)

        cursor = local_db.get_cursor(ORG)
        assert cursor.last_entry_id == 5
        assert cursor.batches_sent == 1
        assert cursor.last_synced_at is not None
        assert set(SyncCursor.__table__.columns.keys()) == {
            "organization_id",
            "last_entry_id",
            "last_synced_at",
            "batches_sent",
        }

    def test_cursor_never_moves_back(self, local_db: LocalDatabase) -> None:
        with local_db.unit_of_work() as session:
            local_db.advance_cursor(session, ORG, 5)
        with local_db.unit_of_work() as session:
            local_db.advance_cursor(session, ORG, 3)
        with local_db.unit_of_work() as session:
            local_db.advance_cursor(session, ORG, None)

        cursor = local_db.get_cursor(ORG)
        assert cursor.last_entry_id == 5
        assert cursor.batches_sent == 3


class TestIntegrityHolds:
    """Tests for flagging and clearing integrity violations."""

    def test_violation_inside_unit_of_work_is_flagged(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        """The mutation is rolled back, the record halted and an issue raised."""
        make_record("products", "p1", {"name": "Soda", "price": 2})
        _tamper(local_db, "p1", price=1)

        with pytest.raises(LocalIntegrityViolation), local_db.unit_of_work() as session:
            recorder.update(session, ORG, "products", "p1", {"name": "Cola"})

        record = local_db.get_record("p1")
        assert record.sync_status == SyncStatus.HALTED.value
        assert record.fields["name"] == "Soda"
        assert local_db.halted_records(ORG) == {("products", "p1")}
        issues = local_db.list_issues(ORG)
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.INTEGRITY.value

    def test_clear_hold(
        self,
        local_db: LocalDatabase,
        recorder: ChangeRecorder,
        make_record: Callable[..., None],
    ) -> None:
        """Clearing accepts the stored fields and resumes sync."""
        make_record("products", "p1", {"name": "Soda", "price": 2})
        _tamper(local_db, "p1", price=1)
        with pytest.raises(LocalIntegrityViolation), local_db.unit_of_work() as session:
            recorder.delete(session, ORG, "products", "p1")

        record = local_db.clear_integrity_hold("products", "p1")

        assert record.sync_status == SyncStatus.PENDING.value
        assert record.integrity_hash == local_db.tables.get("products").hash(record.fields)
        assert local_db.halted_records(ORG) == set()
        assert local_db.list_issues(ORG) == []
        assert len(local_db.list_issues(ORG, unresolved_only=False)) == 1

        # The record can be changed again
        with local_db.unit_of_work() as session:
            recorder.update(session, ORG, "products", "p1", {"price": 3})
        assert local_db.get_record("p1").fields["price"] == 3

    def test_clear_hold_unknown_record(self, local_db: LocalDatabase) -> None:
        with pytest.raises(UnknownRecordError):
            local_db.clear_integrity_hold("products", "missing")

    def test_clear_hold_wrong_table(
        self, local_db: LocalDatabase, make_record: Callable[..., None]
    ) -> None:
        make_record("products", "p1", {"name": "Soda"})
        with pytest.raises(UnknownRecordError):
            local_db.clear_integrity_hold("customers", "p1")
