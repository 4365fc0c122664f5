"""Tests for integrity hashing."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import pytest

from possync.core.hashing import (
    SYNC_METADATA_FIELDS,
    canonical_json,
    integrity_hash,
    json_fields,
    synchronized_fields,
)


class TestCanonicalJson:
    """Tests for canonical_json."""

    def test_key_order_independent(self) -> None:
        """Nested keys are sorted at every level."""
        a = {"name": "Soda", "tags": {"b": 1, "a": 2}}
        b = {"tags": {"a": 2, "b": 1}, "name": "Soda"}
        assert canonical_json(a) == canonical_json(b)

    def test_compact_separators(self) -> None:
        assert canonical_json({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_non_ascii_kept(self) -> None:
        assert canonical_json({"name": "Café"}) == '{"name":"Café"}'

    def test_extended_types(self) -> None:
        """Datetimes, decimals and UUIDs have a stable text form."""
        value = {
            "at": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
            "price": Decimal("1.50"),
            "ref": UUID("12345678-1234-5678-1234-567812345678"),
        }
        assert canonical_json(value) == (
            '{"at":"2024-05-01T12:00:00+00:00","price":"1.5",'
            '"ref":"12345678-1234-5678-1234-567812345678"}'
        )

    def test_unsupported_type(self) -> None:
        with pytest.raises(TypeError):
            canonical_json({"blob": object()})


class TestIntegrityHash:
    """Tests for integrity_hash."""

    def test_sha256_hex(self) -> None:
        digest = integrity_hash({"name": "Soda"})
        assert len(digest) == 64
        int(digest, 16)

    def test_sync_metadata_ignored(self) -> None:
        """Sync metadata never changes the hash."""
        fields = {"name": "Soda", "price": 2}
        with_metadata = {
            **fields,
            "sync_version": 7,
            "integrity_hash": "x" * 64,
            "sync_status": "synced",
            "last_sync": "2024-01-01",
        }
        assert integrity_hash(with_metadata) == integrity_hash(fields)

    def test_field_change_changes_hash(self) -> None:
        assert integrity_hash({"price": 2}) != integrity_hash({"price": 3})

    def test_excluded_fields(self) -> None:
        """Local-only fields can be left out of the hash."""
        a = integrity_hash({"price": 2, "drawer_open": True}, exclude={"drawer_open"})
        b = integrity_hash({"price": 2, "drawer_open": False}, exclude={"drawer_open"})
        assert a == b

    def test_decimal_normalized(self) -> None:
        assert integrity_hash({"p": Decimal("1.50")}) == integrity_hash({"p": Decimal("1.5")})


class TestSynchronizedFields:
    """Tests for synchronized_fields."""

    def test_drops_metadata_and_excluded(self) -> None:
        fields = {name: 1 for name in SYNC_METADATA_FIELDS}
        fields.update(name="Soda", note="local")
        assert synchronized_fields(fields, exclude={"note"}) == {"name": "Soda"}

    def test_returns_copy(self) -> None:
        fields = {"name": "Soda"}
        result = synchronized_fields(fields)
        result["name"] = "Water"
        assert fields["name"] == "Soda"


class TestJsonFields:
    """Tests for json_fields."""

    def test_converts_extended_types(self) -> None:
        fields = {
            "price": Decimal("1.50"),
            "sold_at": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
            "ref": UUID("12345678-1234-5678-1234-567812345678"),
            "tags": {"b", "a"},
            "qty": 3,
        }
        assert json_fields(fields) == {
            "price": "1.5",
            "sold_at": "2024-05-01T12:00:00+00:00",
            "ref": "12345678-1234-5678-1234-567812345678",
            "tags": ["a", "b"],
            "qty": 3,
        }

    def test_hash_unchanged(self) -> None:
        """Converted fields hash like the originals."""
        fields = {"price": Decimal("1.50"), "sold_at": datetime(2024, 5, 1, tzinfo=UTC)}
        assert integrity_hash(json_fields(fields)) == integrity_hash(fields)
