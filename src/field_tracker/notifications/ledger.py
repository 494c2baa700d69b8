"""Historize ledger writer.

Each change of a historized field closes the currently open ledger row of
its (entity, item, path) and opens a new one. Both operations go into one
ordered bulk write per ledger collection, close first, so a row is never
seen doubly open.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pymongo import InsertOne, UpdateOne

from field_tracker.core.interfaces import IDocumentDatabase
from field_tracker.core.models import ChangeRecord, TrackedField
from field_tracker.core.normalizer import literal
from field_tracker.observability import get_logger

logger = get_logger(__name__)


def build_ledger_operations(
    field: TrackedField,
    entity_id: Any,
    change: ChangeRecord,
) -> list[UpdateOne | InsertOne]:
    """Close-then-insert operations recording one change.

    Args:
        field: The historized field.
        entity_id: ``_id`` of the changed document.
        change: The drained change record.

    Returns:
        ``[UpdateOne(close), InsertOne(open)]``, or an empty list when the
        record carries no value.
    """
    if not change.has_value:
        return []

    start = change.updated_at or datetime.now(UTC)
    row_filter: dict[str, Any] = {"entityId": entity_id, "path": str(field.path), "end": None}
    document: dict[str, Any] = {"entityId": entity_id, "path": str(field.path), "start": start, "end": None}
    if change.item_id is not None:
        row_filter["itemId"] = document["itemId"] = change.item_id

    document["value"] = change.value
    if "previous_value" in change.model_fields_set:
        document["previousValue"] = change.previous_value
    if change.origin is not None:
        document["origin"] = change.origin
    if change.metadata is not None:
        document["metadata"] = change.metadata

    close = UpdateOne(
        row_filter,
        [
            {
                "$set": {
                    "end": start,
                    "nextValue": literal(change.value),
                    "duration": {
                        "$dateDiff": {"startDate": "$start", "endDate": start, "unit": "millisecond"}
                    },
                }
            }
        ],
    )
    return [close, InsertOne(document)]


class LedgerWriter:
    """Appends drained changes to the ledger collections of historized fields.

    Args:
        database: Database holding the ledger collections.
    """

    def __init__(self, database: IDocumentDatabase) -> None:
        self._database = database

    def build_operations(
        self,
        changes: list[tuple[TrackedField, Any, ChangeRecord]],
    ) -> dict[str, list[UpdateOne | InsertOne]]:
        """Group ledger operations by target collection, preserving change order."""
        operations: dict[str, list[UpdateOne | InsertOne]] = {}
        for field, entity_id, change in changes:
            if field.historize_target is None:
                continue
            ops = build_ledger_operations(field, entity_id, change)
            if ops:
                operations.setdefault(field.historize_target, []).extend(ops)
        return operations

    async def append(
        self,
        changes: list[tuple[TrackedField, Any, ChangeRecord]],
        session: Any = None,
    ) -> int:
        """Write the ledger rows of ``changes``.

        Args:
            changes: (field, entity id, change record) triples.
            session: Caller-supplied session, propagated to the bulk writes.

        Returns:
            Number of ledger rows opened.
        """
        opened = 0
        for target, ops in self.build_operations(changes).items():
            await self._database[target].bulk_write(ops, ordered=True, session=session)
            opened += len(ops) // 2
            logger.info("Appended ledger rows", collection=target, rows=len(ops) // 2)
        return opened
