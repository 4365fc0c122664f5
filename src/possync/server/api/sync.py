"""Sync exchange API routes.

POST /api/organizations/{organization_id}/sync answers with NDJSON: one
line per entry, in request order, each written only once its entry is
committed. A client whose connection drops keeps every line it received.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from possync.server.api.deps import get_db, require_token
from possync.server.database import RemoteDatabase
from possync.server.schemas import (
    AcceptedResponse,
    ConflictResponse,
    RecordResponse,
    RejectedResponse,
    SyncBatchRequest,
    record_to_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/organizations/{organization_id}",
    tags=["sync"],
    dependencies=[Depends(require_token)],
)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_ANSWER_MODELS = {
    "accepted": AcceptedResponse,
    "conflict": ConflictResponse,
    "rejected": RejectedResponse,
}


def answer_line(answer: dict[str, Any]) -> str:
    """Serialize one per-entry answer as an NDJSON line."""
    model = _ANSWER_MODELS[answer["status"]]
    return model.model_validate(answer).model_dump_json() + "\n"


@router.post("/sync")
def sync_batch(
    organization_id: str,
    request: SyncBatchRequest,
    db: RemoteDatabase = Depends(get_db),
) -> StreamingResponse:
    """Apply a batch of entries and stream the answers."""
    logger.info(
        "Sync batch for organization %s from %s: %d entries",
        organization_id,
        request.client_id or "unknown client",
        len(request.entries),
    )

    def answers() -> Iterator[str]:
        for entry in request.entries:
            answer = db.apply_entry(
                organization_id, entry.model_dump(mode="json"), request.client_id
            )
            yield answer_line(answer)

    return StreamingResponse(answers(), media_type=NDJSON_MEDIA_TYPE)


@router.get("/records/{table}/{record_id}", response_model=RecordResponse)
def get_record(
    organization_id: str,
    table: str,
    record_id: str,
    db: RemoteDatabase = Depends(get_db),
) -> RecordResponse:
    """Get the canonical state of a record."""
    record = db.get_record(organization_id, table, record_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Record not found: {table}/{record_id}",
        )
    return record_to_response(record)


@router.get("/records", response_model=list[RecordResponse])
def list_records(
    organization_id: str,
    table: str | None = None,
    include_deleted: bool = False,
    db: RemoteDatabase = Depends(get_db),
) -> list[RecordResponse]:
    """List the records of an organization."""
    return [
        record_to_response(r)
        for r in db.list_records(organization_id, table, include_deleted)
    ]
