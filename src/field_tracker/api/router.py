"""API router for the historize ledger.

Read-only endpoints over the ledger collections. Routes are thin: all
querying lives in LedgerReader, obtained from application state.

Endpoints:
- GET /ledger/{collection}/{entity_id}          : value chain of one field
- GET /ledger/{collection}/{entity_id}/value-at : value in force at a timestamp
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from field_tracker.api.schemas import LedgerHistoryResponse, LedgerRowResponse
from field_tracker.errors import NotFoundError
from field_tracker.ledger.reader import LedgerReader

router = APIRouter(prefix="/ledger", tags=["Ledger"])


def get_ledger_reader(request: Request) -> LedgerReader:
    """Dependency returning the reader created at startup."""
    return request.app.state.ledger_reader


def parse_entity_id(entity_id: str) -> Any:
    """Document ids are ObjectIds unless the string is not one."""
    return ObjectId(entity_id) if ObjectId.is_valid(entity_id) else entity_id


@router.get(
    "/{collection}/{entity_id}",
    response_model=LedgerHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="Value history of a tracked field",
)
async def get_history(
    collection: str,
    entity_id: str,
    reader: Annotated[LedgerReader, Depends(get_ledger_reader)],
    path: Annotated[str, Query(description="Dotted path of the tracked field")],
    item_id: Annotated[str | None, Query(description="Array element or sub-document id")] = None,
) -> LedgerHistoryResponse:
    """Return every ledger row of one field, oldest first.

    Args:
        collection: Ledger collection name.
        entity_id: Id of the tracked document.
        reader: Ledger reader.
        path: Dotted path of the tracked field.
        item_id: Element id for fields inside arrays or sub-documents.

    Returns:
        LedgerHistoryResponse with the ordered rows.
    """
    rows = await reader.history(
        collection,
        parse_entity_id(entity_id),
        path,
        item_id=parse_entity_id(item_id) if item_id is not None else None,
    )
    return LedgerHistoryResponse(
        collection=collection,
        entity_id=entity_id,
        path=path,
        rows=[LedgerRowResponse.from_row(row) for row in rows],
        total=len(rows),
    )


@router.get(
    "/{collection}/{entity_id}/value-at",
    response_model=LedgerRowResponse,
    status_code=status.HTTP_200_OK,
    summary="Value of a tracked field at a point in time",
)
async def get_value_at(
    collection: str,
    entity_id: str,
    reader: Annotated[LedgerReader, Depends(get_ledger_reader)],
    path: Annotated[str, Query(description="Dotted path of the tracked field")],
    at: Annotated[datetime, Query(description="Point in time (ISO 8601)")],
    item_id: Annotated[str | None, Query(description="Array element or sub-document id")] = None,
) -> LedgerRowResponse:
    """Return the ledger row in force at ``at``.

    Raises:
        HTTPException 404: If no value was recorded at that time.
    """
    try:
        row = await reader.value_at(
            collection,
            parse_entity_id(entity_id),
            path,
            at,
            item_id=parse_entity_id(item_id) if item_id is not None else None,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return LedgerRowResponse.from_row(row)
