"""Sequence Allocator: gap-tolerant, duplicate-free document numbering.

This module provides:
- SequenceAllocator: next_number / configure / peek per organization and
  document type
- format_number: prefix + zero padded number

Allocation is a single UPDATE ... RETURNING on the counter row inside a
BEGIN IMMEDIATE transaction, so two cash registers sharing one store can
never read the same value. Numbering does not depend on the sync cycle;
allocated numbers travel to the remote as ordinary record data.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from possync.client.models import SequenceCounter
from possync.core.sqltypes import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from possync.client.database import LocalDatabase

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 6

DEFAULT_PREFIXES: Mapping[str, str] = MappingProxyType(
    {
        "invoice": "FAC-",
        "transaction": "TXN-",
    }
)


def format_number(prefix: str, number: int, padding: int = DEFAULT_PADDING) -> str:
    """Format a document number, e.g. ("FAC-", 42, 6) -> "FAC-000042"."""
    return f"{prefix}{number:0{padding}d}"


class SequenceAllocator:
    """Hands out document numbers per organization and document type."""

    def __init__(
        self,
        db: LocalDatabase,
        prefixes: Mapping[str, str] | None = None,
        padding: int = DEFAULT_PADDING,
    ) -> None:
        """Initialize the allocator.

        Args:
            db: Local database holding the counters.
            prefixes: Prefix per document type for counters created on demand.
            padding: Zero padding for counters created on demand.
        """
        self._db = db
        self._prefixes = dict(DEFAULT_PREFIXES if prefixes is None else prefixes)
        self._padding = padding

    def _ensure_counter(self, session: Session, organization_id: str, document_type: str) -> None:
        stmt = (
            sqlite_insert(SequenceCounter)
            .values(
                organization_id=organization_id,
                document_type=document_type,
                prefix=self._prefixes.get(document_type, ""),
                next_number=1,
                padding=self._padding,
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["organization_id", "document_type"])
        )
        session.execute(stmt)

    def next_number(
        self,
        organization_id: str,
        document_type: str,
        session: Session | None = None,
    ) -> str:
        """Allocate the next number of a document type.

        Args:
            organization_id: Tenant the document belongs to.
            document_type: E.g. "invoice" or "transaction".
            session: Allocate inside the caller's transaction (the number is
                released again if that transaction rolls back).

        Returns:
            Formatted number, e.g. "FAC-000001".
        """
        if session is None:
            with self._db.unit_of_work() as own_session:
                return self._allocate(own_session, organization_id, document_type)
        return self._allocate(session, organization_id, document_type)

    def _allocate(self, session: Session, organization_id: str, document_type: str) -> str:
        self._ensure_counter(session, organization_id, document_type)
        stmt = (
            update(SequenceCounter)
            .where(
                SequenceCounter.organization_id == organization_id,
                SequenceCounter.document_type == document_type,
            )
            .values(next_number=SequenceCounter.next_number + 1, updated_at=utcnow())
            .returning(
                SequenceCounter.next_number,
                SequenceCounter.prefix,
                SequenceCounter.padding,
            )
            .execution_options(synchronize_session=False)
        )
        row = session.execute(stmt).one()
        number = row.next_number - 1
        formatted = format_number(row.prefix, number, row.padding)
        logger.debug("Allocated %s for %s/%s", formatted, organization_id, document_type)
        return formatted

    def configure(
        self,
        organization_id: str,
        document_type: str,
        prefix: str,
        padding: int = DEFAULT_PADDING,
        start: int | None = None,
    ) -> None:
        """Set prefix and padding of a counter, optionally its next number.

        Raises:
            ValueError: If start would hand out numbers already issued.
        """
        if padding < 0:
            raise ValueError("padding must be >= 0")
        with self._db.unit_of_work() as session:
            self._ensure_counter(session, organization_id, document_type)
            counter = session.execute(
                select(SequenceCounter).where(
                    SequenceCounter.organization_id == organization_id,
                    SequenceCounter.document_type == document_type,
                )
            ).scalar_one()
            if start is not None:
                if start < counter.next_number:
                    raise ValueError(
                        f"Cannot restart {document_type} at {start}, "
                        f"numbers up to {counter.next_number - 1} were issued"
                    )
                counter.next_number = start
            counter.prefix = prefix
            counter.padding = padding
            counter.updated_at = utcnow()

        logger.info(
            "Sequence %s/%s configured: prefix=%r padding=%d",
            organization_id,
            document_type,
            prefix,
            padding,
        )

    def peek(self, organization_id: str, document_type: str) -> str:
        """Number the next call to next_number would return, without consuming it."""
        with self._db.session() as session:
            counter = session.execute(
                select(SequenceCounter).where(
                    SequenceCounter.organization_id == organization_id,
                    SequenceCounter.document_type == document_type,
                )
            ).scalar_one_or_none()
            if counter is None:
                return format_number(self._prefixes.get(document_type, ""), 1, self._padding)
            return format_number(counter.prefix, counter.next_number, counter.padding)
