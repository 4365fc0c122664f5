"""Per-table sync rules.

This module provides:
- TrackedTable: priorities, additive counters and local-only fields of a table
- TableRegistry: lookup with a default for tables without explicit rules

Priorities are integers, lower values are drained first. By default a
delete goes before an insert, which goes before an update. A no-op update
(integrity hash unchanged) is still recorded but sorted last.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from possync.core.hashing import integrity_hash, synchronized_fields
from possync.core.types import Operation

CRITICAL_PRIORITY = -1
NOOP_PRIORITY = 9

DEFAULT_PRIORITIES: Mapping[Operation, int] = MappingProxyType(
    {
        Operation.DELETE: 0,
        Operation.INSERT: 1,
        Operation.UPDATE: 2,
    }
)

CRITICAL_PRIORITIES: Mapping[Operation, int] = MappingProxyType(
    {op: CRITICAL_PRIORITY for op in Operation}
)


@dataclass(frozen=True)
class TrackedTable:
    """Sync rules for one table.

    Attributes:
        name: Table name as used in queue entries.
        priorities: Queue priority per operation.
        additive_fields: Numeric counters merged by summing deltas on conflict.
        local_fields: Station-only fields, never hashed nor sent to the remote.
    """

    name: str
    priorities: Mapping[Operation, int] = field(default_factory=lambda: DEFAULT_PRIORITIES)
    additive_fields: frozenset[str] = field(default_factory=frozenset)
    local_fields: frozenset[str] = field(default_factory=frozenset)

    def priority_for(self, operation: Operation, *, noop: bool = False) -> int:
        """Queue priority for an operation on this table."""
        if noop and operation is Operation.UPDATE:
            return max(NOOP_PRIORITY, self.priorities[operation])
        return self.priorities[operation]

    def hash(self, fields: Mapping[str, Any]) -> str:
        """Integrity hash of a record of this table."""
        return integrity_hash(fields, exclude=self.local_fields)

    def sync_view(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Fields of a record as sent to the remote."""
        return synchronized_fields(fields, exclude=self.local_fields)


DEFAULT_TABLES: tuple[TrackedTable, ...] = (
    TrackedTable("subscriptions", priorities=CRITICAL_PRIORITIES),
    TrackedTable("activation_keys", priorities=CRITICAL_PRIORITIES),
    TrackedTable("products", additive_fields=frozenset({"current_quantity"})),
    TrackedTable(
        "cash_registers",
        additive_fields=frozenset({"quantity", "cash_total"}),
    ),
)


class TableRegistry:
    """Registry of TrackedTable rules keyed by table name."""

    def __init__(self, tables: Iterable[TrackedTable] | None = None) -> None:
        self._tables: dict[str, TrackedTable] = {}
        for table in DEFAULT_TABLES if tables is None else tables:
            self.register(table)

    def register(self, table: TrackedTable) -> None:
        """Add or replace the rules of a table."""
        self._tables[table.name] = table

    def get(self, name: str) -> TrackedTable:
        """Rules for a table (defaults when none were registered)."""
        table = self._tables.get(name)
        if table is None:
            return TrackedTable(name)
        return table

    def __contains__(self, name: str) -> bool:
        return name in self._tables

    def __len__(self) -> int:
        return len(self._tables)
