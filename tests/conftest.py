"""Shared pytest fixtures.

Provides a local station store, the recorder/queue built on it, a
reference remote database and a loopback endpoint that exchanges batches
with that remote in-process.
"""

from __future__ import annotations

from collections.abc import Callable, Generator, Iterator, Sequence
from pathlib import Path

import pytest

from possync.client.database import LocalDatabase
from possync.client.sync import (
    ChangeRecorder,
    EntryResponse,
    OutboundEntry,
    SyncQueueStore,
    TransientTransportError,
    response_from_dict,
)
from possync.server.database import RemoteDatabase

ORG = "org-1"
OTHER_ORG = "org-2"


@pytest.fixture
def local_db(tmp_path: Path) -> Generator[LocalDatabase, None, None]:
    """Create a local station database."""
    database = LocalDatabase(tmp_path / "local.db")
    yield database
    database.close()


@pytest.fixture
def queue(local_db: LocalDatabase) -> SyncQueueStore:
    """Create a queue store on the local database."""
    return SyncQueueStore(local_db)


@pytest.fixture
def recorder(queue: SyncQueueStore, local_db: LocalDatabase) -> ChangeRecorder:
    """Create a change recorder for station 'station-a'."""
    return ChangeRecorder(queue, local_db.tables, client_id="station-a")


@pytest.fixture
def remote_db(tmp_path: Path) -> Generator[RemoteDatabase, None, None]:
    """Create a reference remote database."""
    database = RemoteDatabase(tmp_path / "remote.db")
    yield database
    database.close()


class LoopbackEndpoint:
    """Endpoint applying batches on a RemoteDatabase in-process.

    Attributes:
        drop_after: Answer this many entries, then fail as if the
            connection dropped (None = answer everything).
        fail: Fail before answering anything.
        batches: Every batch received, for assertions.
    """

    def __init__(self, remote: RemoteDatabase) -> None:
        self.remote = remote
        self.drop_after: int | None = None
        self.fail = False
        self.batches: list[list[OutboundEntry]] = []

    def exchange(
        self,
        organization_id: str,
        entries: Sequence[OutboundEntry],
        client_id: str | None = None,
    ) -> Iterator[EntryResponse]:
        self.batches.append(list(entries))
        if self.fail:
            raise TransientTransportError("Connection refused")
        for count, entry in enumerate(entries):
            if self.drop_after is not None and count >= self.drop_after:
                raise TransientTransportError("Connection reset by peer")
            answer = self.remote.apply_entry(organization_id, entry.to_dict(), client_id)
            yield response_from_dict(answer)

    @property
    def sent(self) -> list[OutboundEntry]:
        return [entry for batch in self.batches for entry in batch]


@pytest.fixture
def loopback(remote_db: RemoteDatabase) -> LoopbackEndpoint:
    """Create an endpoint wired to the remote database."""
    return LoopbackEndpoint(remote_db)


@pytest.fixture
def make_record(
    local_db: LocalDatabase, recorder: ChangeRecorder
) -> Callable[..., None]:
    """Insert a tracked record in its own transaction."""

    def _make(
        table: str,
        record_id: str,
        fields: dict,
        organization_id: str = ORG,
    ) -> None:
        with local_db.unit_of_work() as session:
            recorder.insert(session, organization_id, table, record_id, fields)

    return _make
