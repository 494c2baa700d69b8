"""Historical ledger reader.

Read side of the historize ledger. Each (entity, item, path) owns a chain
of rows whose ``[start, end)`` intervals follow one another; the last row
of the chain is open (``end`` is null) and holds the current value.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pymongo import ASCENDING, DESCENDING

from field_tracker.core.interfaces import IDocumentDatabase
from field_tracker.core.models import LedgerRow
from field_tracker.errors import NotFoundError


def _row_filter(entity_id: Any, path: str, item_id: Any) -> dict[str, Any]:
    row_filter: dict[str, Any] = {"entityId": entity_id, "path": path}
    if item_id is not None:
        row_filter["itemId"] = item_id
    return row_filter


class LedgerReader:
    """Queries historize ledger collections.

    Args:
        database: Database holding the ledger collections.
    """

    def __init__(self, database: IDocumentDatabase) -> None:
        self._database = database

    async def history(
        self,
        collection: str,
        entity_id: Any,
        path: str,
        item_id: Any = None,
    ) -> list[LedgerRow]:
        """All rows of one value chain, oldest first.

        Args:
            collection: Ledger collection name.
            entity_id: ``_id`` of the tracked document.
            path: Dotted path of the tracked field.
            item_id: ``_id`` of the array element or sub-document, if any.

        Returns:
            Ledger rows ordered by ``start`` ascending.
        """
        cursor = self._database[collection].find(
            _row_filter(entity_id, path, item_id), sort=[("start", ASCENDING)]
        )
        return [LedgerRow.model_validate(row) for row in await cursor.to_list(length=None)]

    async def open_row(
        self,
        collection: str,
        entity_id: Any,
        path: str,
        item_id: Any = None,
    ) -> LedgerRow | None:
        """The open row of a value chain, or None when nothing was recorded."""
        row_filter = _row_filter(entity_id, path, item_id)
        row_filter["end"] = None
        rows = await self._database[collection].find(row_filter, limit=1).to_list(length=1)
        return LedgerRow.model_validate(rows[0]) if rows else None

    async def value_at(
        self,
        collection: str,
        entity_id: Any,
        path: str,
        at: datetime,
        item_id: Any = None,
    ) -> LedgerRow:
        """The row in force at ``at``: ``start <= at`` and ``end > at`` or open.

        Raises:
            NotFoundError: If the value chain starts after ``at`` or does not exist.
        """
        row_filter = _row_filter(entity_id, path, item_id)
        row_filter["start"] = {"$lte": at}
        row_filter["$or"] = [{"end": None}, {"end": {"$gt": at}}]
        rows = await (
            self._database[collection]
            .find(row_filter, sort=[("start", DESCENDING)], limit=1)
            .to_list(length=1)
        )
        if not rows:
            raise NotFoundError(f"No value of {path!r} recorded for {entity_id!r} at {at.isoformat()}")
        return LedgerRow.model_validate(rows[0])
