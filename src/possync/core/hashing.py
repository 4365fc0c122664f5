"""Integrity hashing for tracked records.

This module provides:
- canonical_json: Stable serialization of a record's field set
- integrity_hash: SHA-256 digest over the synchronized fields
- json_fields: Field values as stored in JSON columns and sent on the wire

The digest only depends on the logical field values. Keys are sorted at
every nesting level and sync metadata fields are always excluded, so the
same record hashes identically on every station and on the remote.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

# Fields that describe sync state rather than business data
SYNC_METADATA_FIELDS = frozenset(
    {
        "sync_version",
        "last_sync",
        "integrity_hash",
        "sync_status",
        "conflict_resolution",
        "last_sync_error",
    }
)


def _encode_value(value: Any) -> Any:
    """Encode values json can't handle natively."""
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        # Normalize so 1.50 and 1.5 hash the same
        return format(value.normalize(), "f")
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Cannot hash value of type {type(value).__name__}")


def synchronized_fields(
    fields: Mapping[str, Any],
    exclude: Iterable[str] = (),
) -> dict[str, Any]:
    """Return the subset of fields that participate in sync.

    Args:
        fields: Full field mapping of a record.
        exclude: Extra field names to drop (purely local fields).

    Returns:
        New dict without sync metadata and excluded fields.
    """
    skipped = SYNC_METADATA_FIELDS.union(exclude)
    return {key: value for key, value in fields.items() if key not in skipped}


def canonical_json(fields: Mapping[str, Any]) -> str:
    """Serialize fields in a stable, order-independent form."""
    return json.dumps(
        fields,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_encode_value,
    )


def integrity_hash(
    fields: Mapping[str, Any],
    exclude: Iterable[str] = (),
) -> str:
    """Compute the integrity hash of a record's synchronized fields.

    Args:
        fields: Field mapping of the record.
        exclude: Purely local field names that must not affect the hash.

    Returns:
        Hex-encoded SHA-256 digest (64 characters).
    """
    payload = canonical_json(synchronized_fields(fields, exclude))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def json_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Convert field values to their JSON form (Decimal, dates, UUIDs, sets).

    The result hashes the same as the input, so a record keeps its
    integrity hash once stored and read back.
    """
    return dict(json.loads(canonical_json(fields)))
