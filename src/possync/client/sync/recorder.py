"""Change Recorder: turns local mutations into queue entries.

This module provides:
- ChangeRecorder: records inserts, updates and deletes of tracked records

The recorder always works in the caller's session, so a mutation and its
queue entry commit or roll back together. Before an update or a delete it
checks that the stored integrity hash still matches the stored fields.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from possync.client.models import SyncMetadata, TrackedRecord, VersionHistory
from possync.client.sync.types import (
    ChangePayload,
    DeletePayload,
    InsertPayload,
    LocalIntegrityViolation,
    QueueEntry,
    RecordState,
    SyncError,
    UnknownRecordError,
    UpdatePayload,
)
from possync.core.hashing import json_fields
from possync.core.sqltypes import utcnow
from possync.core.types import EntryOrigin, Operation, SyncStatus

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from possync.client.sync.queue import SyncQueueStore
    from possync.client.tables import TableRegistry, TrackedTable

logger = logging.getLogger(__name__)


class ChangeRecorder:
    """Applies local mutations to tracked records and queues them."""

    def __init__(
        self,
        queue: SyncQueueStore,
        tables: TableRegistry,
        client_id: str | None = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            queue: Queue store receiving the entries.
            tables: Per-table sync rules.
            client_id: Identifier of this station, stored on every entry.
        """
        self._queue = queue
        self._tables = tables
        self._client_id = client_id

    def record_change(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        operation: Operation,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
        *,
        user: str | None = None,
    ) -> QueueEntry:
        """Apply a mutation to a tracked record and queue it.

        Args:
            session: Session of the unit of work the mutation belongs to.
            organization_id: Tenant of the record.
            table: Table of the record.
            record_id: Record identifier.
            operation: Insert, Update or Delete.
            before: Pre-image as seen by the caller (stored fields when None).
            after: Post-image (ignored for Delete).
            user: Identifier stored in created_by / updated_by.

        Returns:
            The queue entry, flushed but not committed.

        Raises:
            LocalIntegrityViolation: If the stored hash does not match the
                stored fields of the record.
            UnknownRecordError: If an update or delete targets a missing record.
            SyncError: On an insert of an existing record or a record that
                belongs to another organization.
            ValueError: On an unknown operation or a missing after image.
        """
        operation = Operation(operation)
        rules = self._tables.get(table)
        now = utcnow()
        record = session.get(TrackedRecord, record_id)

        if operation is Operation.INSERT:
            if after is None:
                raise ValueError("Insert requires an after image")
            if record is not None:
                raise SyncError(f"Record {table}/{record_id} already exists")
            fields = json_fields(after)
            new_hash = rules.hash(fields)
            record = TrackedRecord(
                id=record_id,
                table_name=table,
                organization_id=organization_id,
                fields=fields,
                created_by=user,
                updated_by=user,
                created_at=now,
                updated_at=now,
                sync_status=SyncStatus.PENDING.value,
            )
            record.sync = SyncMetadata(sync_version=1, last_sync=None, integrity_hash=new_hash)
            session.add(record)
            payload: ChangePayload = InsertPayload(
                after=rules.sync_view(fields),
                version=1,
                hash=new_hash,
                mutated_at=now,
            )
            priority = rules.priority_for(operation)
            self._add_history(session, record, operation, fields, new_hash, user)

        else:
            record = self._checked_record(record, organization_id, table, record_id, rules)
            old = record.sync
            pre_image = json_fields(before) if before is not None else dict(record.fields)
            version = old.sync_version + 1

            if operation is Operation.UPDATE:
                if after is None:
                    raise ValueError("Update requires an after image")
                fields = json_fields(after)
                new_hash = rules.hash(fields)
                noop = new_hash == old.integrity_hash
                record.fields = fields
                record.updated_by = user
                record.updated_at = now
                record.sync = SyncMetadata(version, old.last_sync, new_hash)
                if record.sync_status != SyncStatus.HALTED.value:
                    record.sync_status = SyncStatus.PENDING.value
                payload = UpdatePayload(
                    before=rules.sync_view(pre_image),
                    after=rules.sync_view(fields),
                    base_version=old.sync_version,
                    base_hash=old.integrity_hash,
                    version=version,
                    hash=new_hash,
                    mutated_at=now,
                )
                priority = rules.priority_for(operation, noop=noop)
                self._add_history(session, record, operation, fields, new_hash, user, version)

            else:
                payload = DeletePayload(
                    before=rules.sync_view(pre_image),
                    base_version=old.sync_version,
                    base_hash=old.integrity_hash,
                    version=version,
                    mutated_at=now,
                )
                priority = rules.priority_for(operation)
                self._add_history(session, record, operation, None, None, user, version)
                session.delete(record)

        return self._queue.enqueue(
            session,
            organization_id,
            table,
            record_id,
            payload,
            priority,
            client_id=self._client_id,
        )

    def _checked_record(
        self,
        record: TrackedRecord | None,
        organization_id: str,
        table: str,
        record_id: str,
        rules: TrackedTable,
    ) -> TrackedRecord:
        if record is None or record.table_name != table:
            raise UnknownRecordError(f"No tracked record {table}/{record_id}")
        if record.organization_id != organization_id:
            raise SyncError(
                f"Record {table}/{record_id} belongs to organization {record.organization_id}"
            )
        computed = rules.hash(record.fields)
        if computed != record.integrity_hash:
            raise LocalIntegrityViolation(
                organization_id, table, record_id, record.integrity_hash, computed
            )
        return record

    def _add_history(
        self,
        session: Session,
        record: TrackedRecord,
        operation: Operation,
        snapshot: dict[str, Any] | None,
        snapshot_hash: str | None,
        user: str | None,
        version: int = 1,
    ) -> None:
        session.add(
            VersionHistory(
                organization_id=record.organization_id,
                table_name=record.table_name,
                record_id=record.id,
                version=version,
                operation=operation.value,
                snapshot=snapshot,
                integrity_hash=snapshot_hash,
                changed_by=user,
                client_id=self._client_id,
                changed_at=utcnow(),
            )
        )

    # === Convenience mutators ===

    def insert(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        user: str | None = None,
    ) -> QueueEntry:
        """Create a tracked record."""
        return self.record_change(
            session, organization_id, table, record_id, Operation.INSERT, None, fields, user=user
        )

    def update(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        user: str | None = None,
    ) -> QueueEntry:
        """Change some fields of a tracked record.

        Args:
            changes: Fields to set; the others keep their stored value.
        """
        record = session.get(TrackedRecord, record_id)
        if record is None:
            raise UnknownRecordError(f"No tracked record {table}/{record_id}")
        after = {**record.fields, **changes}
        return self.record_change(
            session, organization_id, table, record_id, Operation.UPDATE, None, after, user=user
        )

    def delete(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        *,
        user: str | None = None,
    ) -> QueueEntry:
        """Delete a tracked record."""
        return self.record_change(
            session, organization_id, table, record_id, Operation.DELETE, None, None, user=user
        )

    # === Conflict resolutions ===

    def record_resolution(
        self,
        session: Session,
        organization_id: str,
        table: str,
        record_id: str,
        remote: RecordState,
        resolved: RecordState,
    ) -> QueueEntry | None:
        """Queue the push of a reconciled state on top of the remote state.

        The local record already holds the resolved state; its version is
        not incremented again.

        Returns:
            The queued entry, or None when both sides end up deleted.
        """
        rules = self._tables.get(table)
        now = utcnow()
        if resolved.deleted:
            if remote.deleted:
                return None
            payload: ChangePayload = DeletePayload(
                before=rules.sync_view(remote.fields),
                base_version=remote.sync_version,
                base_hash=remote.integrity_hash,
                version=resolved.sync_version,
                mutated_at=resolved.updated_at or now,
            )
            operation = Operation.DELETE
        else:
            payload = UpdatePayload(
                before=rules.sync_view(remote.fields),
                after=rules.sync_view(resolved.fields),
                base_version=remote.sync_version,
                base_hash=remote.integrity_hash,
                version=resolved.sync_version,
                hash=resolved.integrity_hash or rules.hash(resolved.fields),
                mutated_at=resolved.updated_at or now,
            )
            operation = Operation.UPDATE

        session.add(
            VersionHistory(
                organization_id=organization_id,
                table_name=table,
                record_id=record_id,
                version=resolved.sync_version,
                operation=operation.value,
                snapshot=None if resolved.deleted else dict(resolved.fields),
                integrity_hash=resolved.integrity_hash,
                client_id=self._client_id,
                changed_at=now,
            )
        )
        logger.info(
            "Queued %s of reconciled %s/%s at version %d",
            operation.value,
            table,
            record_id,
            resolved.sync_version,
        )
        return self._queue.enqueue(
            session,
            organization_id,
            table,
            record_id,
            payload,
            rules.priority_for(operation),
            client_id=self._client_id,
            origin=EntryOrigin.RESOLUTION,
        )
