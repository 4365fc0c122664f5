"""Sync Dispatcher: drains the queue against the remote endpoint.

This module provides:
- RemoteEndpoint: Protocol of the remote exchange
- SyncDispatcher: run_cycle / dispatch per organization

A cycle runs like this:
1. Capture the highest pending queue id as the cycle cutoff.
2. Fetch the next batch (priority, created_at, id), leaving halted records out.
3. Verify the integrity of the records involved.
4. Send the batch; the remote answers per entry, as a stream.
5. Apply every answer received in one transaction: accepted entries update
   the record's sync metadata, conflicts go through the ConflictResolver,
   rejections are recorded as issues. Answered entries are marked processed.
6. Repeat until the queue is drained up to the cutoff, the transport fails
   or the cycle is cancelled. Unanswered entries stay pending.

Cycles of one organization never overlap. Different organizations share
nothing but the database and may run in parallel.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select

from possync.client.models import QueueItem, SyncMetadata, TrackedRecord
from possync.client.sync.conflict import ConflictResolver, Resolution
from possync.client.sync.queue import SyncQueueStore
from possync.client.sync.recorder import ChangeRecorder
from possync.client.sync.retry import OrganizationBackoff
from possync.client.sync.types import (
    Accepted,
    Conflict,
    EntryResponse,
    IssueCallback,
    LocalIntegrityViolation,
    OutboundEntry,
    QueueEntry,
    RecordState,
    Rejected,
    SyncResult,
    TransientTransportError,
    TransportError,
)
from possync.core.config import MAX_BATCH_SIZE, MIN_BATCH_SIZE
from possync.core.sqltypes import utcnow
from possync.core.types import EntryOutcome, IssueKind, Operation, SyncStatus

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from possync.client.database import LocalDatabase
    from possync.client.models import SyncIssue
    from possync.core.config import SyncConfig

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class RemoteEndpoint(Protocol):
    """Remote side of the exchange.

    exchange() yields one response per entry, in any order, and raises
    TransportError when the batch cannot be (fully) exchanged. Responses
    yielded before the error are definitive.
    """

    def exchange(
        self,
        organization_id: str,
        entries: Sequence[OutboundEntry],
        client_id: str | None = None,
    ) -> Iterable[EntryResponse]: ...


class _BatchOutcome:
    """Bookkeeping of one applied batch."""

    def __init__(self) -> None:
        self.issues: list[SyncIssue] = []
        self.progress = 0


class SyncDispatcher:
    """Drives dispatch cycles, one organization at a time per lock."""

    def __init__(
        self,
        db: LocalDatabase,
        endpoint: RemoteEndpoint,
        *,
        queue: SyncQueueStore | None = None,
        recorder: ChangeRecorder | None = None,
        resolver: ConflictResolver | None = None,
        backoff: OrganizationBackoff | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        client_id: str | None = None,
        on_issue: IssueCallback | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            db: Local database.
            endpoint: Remote endpoint to exchange batches with.
            queue: Queue store (created on db when omitted).
            recorder: Recorder used to queue conflict resolutions.
            resolver: Conflict resolver.
            backoff: Per-organization backoff tracker.
            batch_size: Maximum entries per batch.
            client_id: Identifier of this station.
            on_issue: Called for every rejection or integrity violation.
        """
        if not MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )
        self._db = db
        self._endpoint = endpoint
        self._tables = db.tables
        self.queue = queue or SyncQueueStore(db)
        self._recorder = recorder or ChangeRecorder(self.queue, db.tables, client_id)
        self._resolver = resolver or ConflictResolver(db.tables)
        self.backoff = backoff or OrganizationBackoff()
        self.batch_size = batch_size
        self._client_id = client_id
        self._on_issue = on_issue
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        db: LocalDatabase,
        endpoint: RemoteEndpoint,
        on_issue: IssueCallback | None = None,
    ) -> SyncDispatcher:
        """Create a dispatcher from a SyncConfig."""
        return cls(
            db,
            endpoint,
            backoff=OrganizationBackoff(config.backoff),
            batch_size=config.batch_size,
            client_id=config.client_id,
            on_issue=on_issue,
        )

    def _lock_for(self, organization_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(organization_id)
            if lock is None:
                lock = self._locks[organization_id] = threading.Lock()
            return lock

    # === Public API ===

    def run_cycle(
        self,
        organization_id: str,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Drain the organization's queue up to the current cutoff.

        Args:
            organization_id: Organization to sync.
            cancel_event: Set it to stop after the response being received.

        Returns:
            SyncResult; skipped is set when another cycle is running or the
            organization is backing off.
        """
        lock = self._lock_for(organization_id)
        if not lock.acquire(blocking=False):
            return SyncResult(organization_id, skipped="cycle already running")
        try:
            remaining = self.backoff.remaining(organization_id)
            if remaining > 0:
                logger.debug(
                    "Organization %s backing off for %.1fs", organization_id, remaining
                )
                return SyncResult(organization_id, skipped=f"backing off ({remaining:.1f}s)")
            return self._run_cycle(organization_id, cancel_event)
        finally:
            lock.release()

    def dispatch(
        self,
        organization_id: str,
        entries: Sequence[QueueEntry],
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Send a given set of entries.

        Entries that are already processed, belong to another organization
        or to a halted record are dropped first, so replaying an entry is a
        no-op.
        """
        lock = self._lock_for(organization_id)
        if not lock.acquire(blocking=False):
            return SyncResult(organization_id, skipped="cycle already running")
        try:
            result = SyncResult(organization_id)
            halted = self._db.halted_records(organization_id)
            self._dispatch_batch(organization_id, entries, halted, result, cancel_event)
            self._settle_backoff(result)
            return result
        finally:
            lock.release()

    # === Cycle ===

    def _run_cycle(
        self,
        organization_id: str,
        cancel_event: threading.Event | None,
    ) -> SyncResult:
        result = SyncResult(organization_id)
        cutoff = self.queue.max_pending_id(organization_id)
        if cutoff is None:
            logger.debug("Organization %s: queue empty", organization_id)
            return result

        while not _cancelled(cancel_event):
            halted = self._db.halted_records(organization_id)
            batch = self.queue.pending_batch(
                organization_id, self.batch_size, up_to_id=cutoff, exclude=halted
            ).fetch()
            if not batch:
                break
            progress = self._dispatch_batch(
                organization_id, batch, halted, result, cancel_event
            )
            if result.transport_error is not None or progress == 0:
                break

        halted = self._db.halted_records(organization_id)
        result.halted = self.queue.pending_count(organization_id, records=halted)
        self._settle_backoff(result)

        logger.info(
            "Sync cycle %s: sent=%d acked=%d conflicted=%d rejected=%d "
            "superseded=%d failed=%d halted=%d",
            organization_id,
            result.sent,
            result.acked,
            result.conflicted,
            result.rejected,
            result.superseded,
            result.failed,
            result.halted,
        )
        return result

    def _settle_backoff(self, result: SyncResult) -> None:
        if result.transport_error is not None:
            self.backoff.record_failure(result.organization_id)
        elif result.sent:
            self.backoff.record_success(result.organization_id)

    def _dispatch_batch(
        self,
        organization_id: str,
        entries: Sequence[QueueEntry],
        halted: set[tuple[str, str]],
        result: SyncResult,
        cancel_event: threading.Event | None,
    ) -> int:
        """Send one batch and apply its responses.

        Returns:
            Number of entries that left the pending state (answered,
            superseded or set aside by an integrity halt).
        """
        pending = self.queue.still_pending(entry.id for entry in entries)
        entries = [
            entry
            for entry in entries
            if entry.id in pending
            and entry.organization_id == organization_id
            and entry.record_key not in halted
        ]
        if not entries:
            return 0

        entries, violations = self._verify_integrity(organization_id, entries)
        for violation in violations:
            issue = self._db.flag_integrity_violation(violation)
            result.issues.append(issue)
            self._notify(issue)
        if not entries or _cancelled(cancel_event):
            return len(violations)

        by_uuid = {entry.entry_uuid: entry for entry in entries}
        outbound = [self._outbound(entry) for entry in entries]
        batch_id = str(uuid.uuid4())
        self.queue.record_attempt([entry.id for entry in entries], batch_id)
        result.sent += len(outbound)
        logger.debug(
            "Organization %s: sending batch %s with %d entries",
            organization_id,
            batch_id,
            len(outbound),
        )

        responses: list[tuple[QueueEntry, EntryResponse]] = []
        stream: Iterator[EntryResponse] | None = None
        try:
            stream = iter(self._endpoint.exchange(organization_id, outbound, self._client_id))
            for response in stream:
                entry = by_uuid.get(response.entry_id)
                if entry is None:
                    logger.warning(
                        "Organization %s: response for unknown entry %s ignored",
                        organization_id,
                        response.entry_id,
                    )
                    continue
                responses.append((entry, response))
                if _cancelled(cancel_event):
                    logger.info(
                        "Organization %s: cycle cancelled after %d of %d responses",
                        organization_id,
                        len(responses),
                        len(outbound),
                    )
                    break
            else:
                if len({entry.id for entry, _ in responses}) < len(outbound):
                    raise TransientTransportError(
                        f"Remote answered {len(responses)} of {len(outbound)} entries"
                    )
        except TransportError as e:
            result.transport_error = str(e)
            logger.warning(
                "Organization %s: transport failure after %d of %d responses: %s",
                organization_id,
                len(responses),
                len(outbound),
                e,
            )
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        outcome = self._apply(organization_id, responses, result)
        answered = {entry.id for entry, _ in responses}
        unanswered = [entry.id for entry in entries if entry.id not in answered]
        result.failed += len(self.queue.still_pending(unanswered))
        for issue in outcome.issues:
            self._notify(issue)
        return outcome.progress + len(violations)

    def _verify_integrity(
        self,
        organization_id: str,
        entries: list[QueueEntry],
    ) -> tuple[list[QueueEntry], list[LocalIntegrityViolation]]:
        violations: dict[tuple[str, str], LocalIntegrityViolation] = {}
        with self._db.session() as session:
            for key in {entry.record_key for entry in entries}:
                table, record_id = key
                record = session.get(TrackedRecord, record_id)
                if record is None:
                    continue
                computed = self._tables.get(table).hash(record.fields)
                if computed != record.integrity_hash:
                    violations[key] = LocalIntegrityViolation(
                        organization_id, table, record_id, record.integrity_hash, computed
                    )
        kept = [entry for entry in entries if entry.record_key not in violations]
        return kept, list(violations.values())

    def _outbound(self, entry: QueueEntry) -> OutboundEntry:
        payload = entry.payload
        return OutboundEntry(
            entry_id=entry.entry_uuid,
            table=entry.affected_table,
            record_id=entry.record_id,
            operation=entry.operation,
            payload=payload.after,
            expected_version=payload.base_version,
            expected_hash=payload.base_hash,
            version=payload.version,
            hash=payload.hash,
            mutated_at=payload.mutated_at,
        )

    def _notify(self, issue: SyncIssue) -> None:
        if self._on_issue is None:
            return
        try:
            self._on_issue(issue)
        except Exception:
            logger.exception("Issue callback failed for issue %s", issue.id)

    # === Applying responses ===

    def _apply(
        self,
        organization_id: str,
        responses: list[tuple[QueueEntry, EntryResponse]],
        result: SyncResult,
    ) -> _BatchOutcome:
        outcome = _BatchOutcome()
        if not responses:
            return outcome

        counts = {"acked": 0, "conflicted": 0, "rejected": 0, "superseded": 0}
        with self._db.unit_of_work() as session:
            pending = self._pending_in(session, [entry.id for entry, _ in responses])
            for entry, response in responses:
                if entry.id not in pending:
                    # superseded earlier in this batch, or processed concurrently
                    continue
                if isinstance(response, Accepted):
                    self._apply_accepted(session, entry, response)
                    counts["acked"] += 1
                elif isinstance(response, Conflict):
                    superseded = self._apply_conflict(session, entry, response)
                    pending.difference_update(superseded)
                    counts["conflicted"] += 1
                    counts["superseded"] += len(superseded)
                else:
                    outcome.issues.append(self._apply_rejected(session, entry, response))
                    counts["rejected"] += 1
                pending.discard(entry.id)

            last_id = max(entry.id for entry, _ in responses)
            self._db.advance_cursor(session, organization_id, last_id)

        result.acked += counts["acked"]
        result.conflicted += counts["conflicted"]
        result.rejected += counts["rejected"]
        result.superseded += counts["superseded"]
        result.issues.extend(outcome.issues)
        outcome.progress = sum(counts.values())
        return outcome

    def _pending_in(self, session: Session, ids: list[int]) -> set[int]:
        return set(
            session.execute(
                select(QueueItem.id).where(QueueItem.id.in_(ids), QueueItem.processed.is_(False))
            ).scalars()
        )

    def _apply_accepted(self, session: Session, entry: QueueEntry, response: Accepted) -> None:
        self.queue.mark_processed([entry.id], {entry.id: EntryOutcome.ACCEPTED}, session=session)
        record = session.get(TrackedRecord, entry.record_id)
        if record is None or entry.operation is Operation.DELETE:
            logger.debug("Accepted %r", entry)
            return

        now = utcnow()
        current = record.sync
        if current.sync_version == entry.payload.version and response.canonical_hash in (
            None,
            current.integrity_hash,
        ):
            record.sync = SyncMetadata(
                sync_version=max(current.sync_version, response.canonical_version),
                last_sync=now,
                integrity_hash=current.integrity_hash,
            )
            if record.sync_status != SyncStatus.HALTED.value:
                record.sync_status = SyncStatus.SYNCED.value
            record.last_sync_error = None
        else:
            # newer local edits are still queued, or the fields were changed by a cleared hold
            record.sync = SyncMetadata(current.sync_version, now, current.integrity_hash)
        logger.debug("Accepted %r at canonical version %d", entry, response.canonical_version)

    def _apply_conflict(
        self,
        session: Session,
        entry: QueueEntry,
        response: Conflict,
    ) -> list[int]:
        """Resolve a conflict and converge the local record.

        Returns:
            Ids of the record's other pending entries, now superseded.
        """
        self.queue.mark_processed([entry.id], {entry.id: EntryOutcome.CONFLICT}, session=session)
        table = self._tables.get(entry.affected_table)
        record = session.get(TrackedRecord, entry.record_id)
        remote = response.remote

        if record is None:
            local = RecordState(
                fields={},
                sync_version=entry.payload.version,
                integrity_hash=None,
                updated_at=entry.payload.mutated_at,
                deleted=True,
            )
        else:
            local = RecordState(
                fields=table.sync_view(record.fields),
                sync_version=record.sync_version,
                integrity_hash=record.integrity_hash,
                updated_at=record.updated_at,
            )
        base = None
        if entry.payload.before is not None and entry.payload.base_version is not None:
            base = RecordState(
                fields=dict(entry.payload.before),
                sync_version=entry.payload.base_version,
                integrity_hash=entry.payload.base_hash,
                updated_at=None,
            )

        resolution = self._resolver.resolve(local, remote, base=base, table=entry.affected_table)
        superseded = self.queue.supersede_pending(
            session, entry.organization_id, entry.affected_table, entry.record_id
        )
        needs_push = self._converge(session, entry, record, resolution)
        if needs_push:
            self._recorder.record_resolution(
                session,
                entry.organization_id,
                entry.affected_table,
                entry.record_id,
                remote,
                resolution.merged_record,
            )

        logger.info(
            "Conflict on %s/%s resolved: %s (%s), version %d%s",
            entry.affected_table,
            entry.record_id,
            resolution.winner.value,
            resolution.reason,
            resolution.merged_record.sync_version,
            ", pushing reconciled state" if needs_push else "",
        )
        return superseded

    def _converge(
        self,
        session: Session,
        entry: QueueEntry,
        record: TrackedRecord | None,
        resolution: Resolution,
    ) -> bool:
        """Write the resolved state locally.

        Returns:
            True if the remote does not hold the resolved state yet.
        """
        merged = resolution.merged_record
        remote = resolution.remote
        needs_push = (
            merged.deleted != remote.deleted
            or (not merged.deleted and merged.integrity_hash != remote.integrity_hash)
            or (not merged.deleted and merged.sync_version != remote.sync_version)
        )
        now = utcnow()
        kind = resolution.winner.resolution_kind

        if merged.deleted:
            if record is not None:
                session.delete(record)
            return needs_push

        table = self._tables.get(entry.affected_table)
        if record is None:
            record = TrackedRecord(
                id=entry.record_id,
                table_name=entry.affected_table,
                organization_id=entry.organization_id,
                fields={},
                created_at=now,
            )
            session.add(record)
            local_only = {}
        else:
            local_only = {
                name: value
                for name, value in (record.fields or {}).items()
                if name in table.local_fields
            }

        record.fields = {**merged.fields, **local_only}
        record.updated_at = merged.updated_at or now
        record.sync = SyncMetadata(
            sync_version=merged.sync_version,
            last_sync=now,
            integrity_hash=table.hash(record.fields),
        )
        record.conflict_resolution = kind.value if kind else None
        record.sync_status = (
            SyncStatus.CONFLICT.value if needs_push else SyncStatus.SYNCED.value
        )
        record.last_sync_error = None
        return needs_push

    def _apply_rejected(
        self,
        session: Session,
        entry: QueueEntry,
        response: Rejected,
    ) -> SyncIssue:
        self.queue.mark_processed(
            [entry.id],
            {entry.id: EntryOutcome.REJECTED},
            session=session,
            errors={entry.id: response.reason},
        )
        record = session.get(TrackedRecord, entry.record_id)
        if record is not None:
            record.sync_status = SyncStatus.ERROR.value
            record.last_sync_error = response.reason
        logger.warning(
            "Entry %d (%s %s/%s) rejected by remote: %s",
            entry.id,
            entry.operation.value,
            entry.affected_table,
            entry.record_id,
            response.reason,
        )
        return self._db.add_issue(
            session,
            entry.organization_id,
            IssueKind.REJECTED,
            entry.affected_table,
            entry.record_id,
            response.reason,
            entry_id=entry.id,
        )


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()
