"""Change-notification coordinator.

Second phase of the tag-then-drain protocol. The write itself raised the
``changePending`` flag of every shadow record it changed (phase A, built by
the projection builder). After the write, the coordinator:

1. reads every document holding a pending record of a notifying field,
   projecting only the pending records, enriched with item id and metadata;
2. clears the flags of the records it read: same filter, drained ids only,
   and no record updated after the latest one read;
3. hands each field's changes to its callback as one batch;
4. appends ledger rows for historized fields.

The clear runs before any callback so a failing callback never leaves a
flag pending. Nothing is rolled back when the drain fails: the shadow
values are already committed and the flags stay set for a later drain.
"""

from __future__ import annotations

import inspect
from datetime import datetime
from typing import Any

from field_tracker.core.interfaces import ChangeCallback, IDocumentCollection
from field_tracker.core.models import ChangeRecord, FieldChange, TrackedField, WriteContext
from field_tracker.core.projection import ELEMENT_VAR, merge_at
from field_tracker.notifications.ledger import LedgerWriter
from field_tracker.observability import get_logger

logger = get_logger(__name__)

PENDING = "changePending"


def notifying_fields(fields: list[TrackedField]) -> list[TrackedField]:
    """Fields with a callback or a ledger target and a supported array depth."""
    return [field for field in fields if field.notifies and field.supported]


def build_drain_filter(fields: list[TrackedField]) -> dict[str, Any]:
    """``$or`` of the pending flags. Dot notation also matches inside arrays."""
    return {"$or": [{f"{field.info_path}.{PENDING}": True} for field in fields]}


def _enrichment(field: TrackedField, item_ref: str | None) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    if item_ref is not None:
        parts.append({"itemId": item_ref})
    if field.metadata is not None:
        parts.append({"metadata": field.metadata})
    return parts


def build_drain_projection(fields: list[TrackedField]) -> dict[str, Any]:
    """Find projection returning only the pending records of each field.

    Scalar fields project their record or null. Array-nested fields project
    the list of pending element records, each carrying the element ``_id``
    as ``itemId``.
    """
    projection: dict[str, Any] = {}
    for field in fields:
        if field.array_path is None:
            info_ref = field.info_path.ref
            parent = field.info_path.parent
            item_ref = None if parent.is_root else f"{parent.ref}._id"
            projection[field.path.projection_key] = {
                "$cond": {
                    "if": {"$eq": [f"{info_ref}.{PENDING}", True]},
                    "then": {"$mergeObjects": [info_ref, *_enrichment(field, item_ref)]},
                    "else": None,
                }
            }
        else:
            info_rel = field.element_info_path
            projection[field.path.projection_key] = {
                "$map": {
                    "input": {
                        "$filter": {
                            "input": {"$ifNull": [field.array_path.ref, []]},
                            "as": "item",
                            "cond": {"$eq": [f"$$item.{info_rel}.{PENDING}", True]},
                        }
                    },
                    "as": "item",
                    "in": {"$mergeObjects": [f"$$item.{info_rel}", *_enrichment(field, "$$item._id")]},
                }
            }
    return projection


def _clear_condition(info_ref: str, cutoff: datetime | None) -> dict[str, Any]:
    pending = {"$eq": [f"{info_ref}.{PENDING}", True]}
    if cutoff is None:
        return pending
    return {"$and": [pending, {"$lte": [f"{info_ref}.updatedAt", cutoff]}]}


def _cleared(info_ref: str, cutoff: datetime | None) -> dict[str, Any]:
    return {
        "$cond": {
            "if": _clear_condition(info_ref, cutoff),
            "then": {"$mergeObjects": [info_ref, {PENDING: False}]},
            "else": info_ref,
        }
    }


def drained_cutoff(fields: list[TrackedField], rows: list[dict[str, Any]]) -> datetime | None:
    """Latest ``updatedAt`` among the drained records."""
    stamps: list[datetime] = []
    for field in fields:
        for row in rows:
            projected = row.get(field.path.projection_key)
            records = projected if isinstance(projected, list) else [projected]
            stamps.extend(
                record["updatedAt"]
                for record in records
                if isinstance(record, dict) and isinstance(record.get("updatedAt"), datetime)
            )
    return max(stamps, default=None)


def build_clear_update(fields: list[TrackedField], cutoff: datetime | None = None) -> list[dict[str, Any]]:
    """Pipeline flipping pending flags back to false, leaving other records untouched.

    Args:
        fields: Notifying fields.
        cutoff: When given, only records updated at or before it are
            cleared, so a change flagged after the drain read stays pending.
    """
    scalar: dict[str, Any] = {}
    stages: list[dict[str, Any]] = []
    for field in fields:
        if field.array_path is None:
            scalar[str(field.info_path)] = _cleared(field.info_path.ref, cutoff)
            continue
        elem_ref = f"$${ELEMENT_VAR}"
        info_rel = field.element_info_path
        info_ref = f"{elem_ref}.{info_rel}"
        array_ref = field.array_path.ref
        mapped = {
            "$map": {
                "input": array_ref,
                "as": ELEMENT_VAR,
                "in": {
                    "$cond": {
                        "if": _clear_condition(info_ref, cutoff),
                        "then": merge_at(
                            elem_ref,
                            info_rel.parent,
                            {info_rel.name: {"$mergeObjects": [info_ref, {PENDING: False}]}},
                        ),
                        "else": elem_ref,
                    }
                },
            }
        }
        stages.append({"$set": {str(field.array_path): {"$cond": [{"$isArray": array_ref}, mapped, array_ref]}}})
    if scalar:
        stages.insert(0, {"$set": scalar})
    return stages


def collect_changes(field: TrackedField, rows: list[dict[str, Any]]) -> list[FieldChange]:
    """Non-empty change records of ``field`` in drained rows, one per changed record."""
    changes: list[FieldChange] = []
    for row in rows:
        projected = row.get(field.path.projection_key)
        if not projected:
            continue
        records = projected if isinstance(projected, list) else [projected]
        for record in records:
            changes.append(
                FieldChange(
                    document_id=row.get("_id"),
                    path=str(field.path),
                    change=ChangeRecord.model_validate(record),
                )
            )
    return changes


async def invoke_callback(callback: ChangeCallback, batch: list[FieldChange], session: Any) -> Any:
    """Call a one- or two-argument, sync or async change callback."""
    try:
        parameters = inspect.signature(callback).parameters.values()
    except (TypeError, ValueError):
        parameters = ()
    positional = [
        p for p in parameters if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    accepts_session = len(positional) >= 2 or any(p.kind == p.VAR_POSITIONAL for p in parameters)
    result = callback(batch, session) if accepts_session else callback(batch)
    if inspect.isawaitable(result):
        result = await result
    return result


class ChangeCoordinator:
    """Drains pending changes of one collection and dispatches them.

    Args:
        collection: The tracked collection; its clear update is issued with
            tracking disabled so it never re-triggers itself.
        fields: Tracked fields of the collection.
        ledger: Writer for historized fields.
        batch_size: Cursor batch size of the drain read.
    """

    def __init__(
        self,
        collection: IDocumentCollection,
        fields: list[TrackedField],
        ledger: LedgerWriter | None = None,
        batch_size: int = 500,
    ) -> None:
        self._collection = collection
        self._fields = notifying_fields(fields)
        self._ledger = ledger
        self._batch_size = batch_size

    @property
    def fields(self) -> list[TrackedField]:
        return self._fields

    async def drain(self, context: WriteContext) -> list[dict[str, Any]]:
        """Read pending records, then clear their flags.

        Returns:
            The drained rows, one per document, keyed by field projection key.
        """
        drain_filter = build_drain_filter(self._fields)
        cursor = self._collection.find(
            drain_filter,
            build_drain_projection(self._fields),
            session=context.session,
            batch_size=self._batch_size,
        )
        rows = await cursor.to_list(length=None)
        if not rows:
            return rows
        clear_filter = {"_id": {"$in": [row["_id"] for row in rows]}, **drain_filter}
        await self._collection.update_many(
            clear_filter,
            build_clear_update(self._fields, drained_cutoff(self._fields, rows)),
            session=context.session,
            skip_track_plugin=True,
        )
        logger.info(
            "Drained pending changes",
            collection=self._collection.name,
            documents=len(rows),
            operation_id=context.operation_id,
        )
        return rows

    async def process(self, context: WriteContext) -> dict[str, list[FieldChange]]:
        """Run the whole drain: read, clear, dispatch callbacks, historize.

        Returns:
            Changes per field path, as dispatched.
        """
        if not self._fields:
            return {}
        rows = await self.drain(context)
        if not rows:
            return {}

        dispatched: dict[str, list[FieldChange]] = {}
        historized: list[tuple[TrackedField, Any, ChangeRecord]] = []
        for field in self._fields:
            changes = collect_changes(field, rows)
            if not changes:
                continue
            dispatched[str(field.path)] = changes
            if field.on_change is not None:
                logger.debug(
                    "Dispatching field changes",
                    path=str(field.path),
                    changes=len(changes),
                    operation_id=context.operation_id,
                )
                await invoke_callback(field.on_change, changes, context.session)
            if field.historize_target is not None:
                historized.extend((field, change.document_id, change.change) for change in changes)

        if historized and self._ledger is not None:
            await self._ledger.append(historized, session=context.session)
        return dispatched
