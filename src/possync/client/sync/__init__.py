"""Sync engine of a station.

Architecture:
    ChangeRecorder → SyncQueueStore → SyncDispatcher ⇄ RemoteEndpoint
                                          ↓
                                   ConflictResolver

Components:
- **ChangeRecorder**: Applies local mutations and queues them in the same
  transaction
- **SyncQueueStore**: Durable per-organization queue, drained by
  (priority, created_at, id)
- **SyncDispatcher**: Sends batches, applies accepted/conflict/rejected
  responses, backs off per organization on transport failures
- **ConflictResolver**: Last-writer-wins, delta merge of additive counters
- **SequenceAllocator**: Duplicate-free document numbering
- **SyncScheduler**: Periodic cycles on APScheduler

All public symbols are re-exported here.
"""

from possync.client.sync.conflict import ConflictResolver, Resolution, Winner
from possync.client.sync.dispatcher import (
    DEFAULT_BATCH_SIZE,
    RemoteEndpoint,
    SyncDispatcher,
)
from possync.client.sync.queue import PendingBatch, SyncQueueStore
from possync.client.sync.recorder import ChangeRecorder
from possync.client.sync.retry import OrganizationBackoff, backoff_delay
from possync.client.sync.scheduler import DEFAULT_SYNC_INTERVAL, SyncScheduler
from possync.client.sync.sequence import (
    DEFAULT_PADDING,
    DEFAULT_PREFIXES,
    SequenceAllocator,
    format_number,
)
from possync.client.sync.types import (
    Accepted,
    ChangePayload,
    Conflict,
    ConflictDetected,
    DeletePayload,
    EntryResponse,
    InsertPayload,
    IssueCallback,
    LocalIntegrityViolation,
    OutboundEntry,
    PermanentRejection,
    QueueEntry,
    RecordState,
    Rejected,
    SyncError,
    SyncResult,
    TransientTransportError,
    TransportError,
    UnknownRecordError,
    UpdatePayload,
    payload_from_json,
    payload_to_json,
    response_from_dict,
)

__all__ = [
    # Components
    "ChangeRecorder",
    "ConflictResolver",
    "OrganizationBackoff",
    "PendingBatch",
    "RemoteEndpoint",
    "SequenceAllocator",
    "SyncDispatcher",
    "SyncQueueStore",
    "SyncScheduler",
    # Conflict resolution
    "Resolution",
    "Winner",
    # Payloads and entries
    "ChangePayload",
    "DeletePayload",
    "InsertPayload",
    "OutboundEntry",
    "QueueEntry",
    "UpdatePayload",
    "payload_from_json",
    "payload_to_json",
    # Responses
    "Accepted",
    "Conflict",
    "EntryResponse",
    "RecordState",
    "Rejected",
    "response_from_dict",
    # Results
    "IssueCallback",
    "SyncResult",
    # Errors
    "ConflictDetected",
    "LocalIntegrityViolation",
    "PermanentRejection",
    "SyncError",
    "TransientTransportError",
    "TransportError",
    "UnknownRecordError",
    # Constants
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_PADDING",
    "DEFAULT_PREFIXES",
    "DEFAULT_SYNC_INTERVAL",
    "backoff_delay",
    "format_number",
]
