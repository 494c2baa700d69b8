"""Tracked collection adapter.

Wraps an AsyncIOMotorCollection so that every write path keeps the
shadow-info records of tracked fields consistent and drains the resulting
change notifications:

    pre hook (stamp or consolidate) -> driver call -> post hook (drain)

Every write method accepts three tracking keyword arguments on top of the
driver's own:

- ``origin``: call-level origin, overriding field and plugin origins;
- ``session``: client session, propagated to every store call of the write;
- ``skip_track_plugin``: disables all tracking for this one call.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any

from pymongo import InsertOne, ReplaceOne, UpdateMany, UpdateOne

from field_tracker.core.consolidation import (
    add_merge_update_stages,
    consolidate_update,
    get_merge_stage,
    get_merge_target,
)
from field_tracker.core.interfaces import IDocumentCollection
from field_tracker.core.models import FieldChange, TrackedField, WriteContext
from field_tracker.core.projection import build_change_stages, stamp_initial_info
from field_tracker.notifications.coordinator import ChangeCoordinator
from field_tracker.notifications.ledger import LedgerWriter
from field_tracker.observability import get_logger

if TYPE_CHECKING:
    from field_tracker.adapters.registry import FieldTracker

logger = get_logger(__name__)


def has_changes(result: Any) -> bool:
    """True when a write result reports modified or upserted documents."""
    modified = getattr(result, "modified_count", 0) or 0
    upserted = getattr(result, "upserted_count", None)
    if upserted is None:
        upserted = 0 if getattr(result, "upserted_id", None) is None else 1
    return modified + upserted > 0


class TrackedCollection:
    """Collection wrapper running the tracking hooks around each write.

    Args:
        collection: The underlying motor collection.
        fields: Resolved tracked-field descriptors of the collection.
        registry: Registry used to resolve ``$merge`` targets.
        batch_size: Cursor batch size of the drain read.
    """

    def __init__(
        self,
        collection: IDocumentCollection,
        fields: list[TrackedField],
        registry: FieldTracker | None = None,
        batch_size: int = 500,
    ) -> None:
        self._collection = collection
        self._fields = fields
        self._registry = registry
        self._coordinator = ChangeCoordinator(
            self,
            fields,
            ledger=LedgerWriter(collection.database),
            batch_size=batch_size,
        )

    @property
    def name(self) -> str:
        return self._collection.name

    @property
    def fields(self) -> list[TrackedField]:
        return self._fields

    @property
    def database(self) -> Any:
        return self._collection.database

    @property
    def collection(self) -> IDocumentCollection:
        """The wrapped driver collection."""
        return self._collection

    @staticmethod
    def _context(origin: Any, session: Any, skip_track_plugin: bool) -> WriteContext:
        return WriteContext(origin=origin, session=session, skip=skip_track_plugin)

    async def drain(self, context: WriteContext | None = None) -> dict[str, list[FieldChange]]:
        """Dispatch every pending change of this collection.

        Also usable on its own to flush flags left pending by a failed drain.
        """
        return await self._coordinator.process(context or WriteContext())

    def _consolidate(
        self,
        filter: dict[str, Any] | None,
        update: Any,
        array_filters: list[dict[str, Any]] | None,
        context: WriteContext,
    ) -> tuple[Any, list[dict[str, Any]] | None]:
        pipeline = consolidate_update(self._fields, filter, update, array_filters, context.origin)
        if pipeline is None:
            logger.debug(
                "Update touches no tracked field",
                collection=self.name,
                operation_id=context.operation_id,
            )
            return update, array_filters
        logger.debug(
            "Consolidated update",
            collection=self.name,
            stages=len(pipeline),
            operation_id=context.operation_id,
        )
        return pipeline, None

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    async def insert_one(
        self,
        document: dict[str, Any],
        *,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Stamp the initial shadow info of ``document`` and insert it."""
        context = self._context(origin, session, skip_track_plugin)
        if context.skip:
            return await self._collection.insert_one(document, session=session, **kwargs)
        stamp_initial_info(document, self._fields, context.origin)
        result = await self._collection.insert_one(document, session=session, **kwargs)
        await self._coordinator.process(context)
        return result

    async def insert_many(
        self,
        documents: list[dict[str, Any]],
        *,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Stamp every document, insert them, then drain once."""
        context = self._context(origin, session, skip_track_plugin)
        if context.skip:
            return await self._collection.insert_many(documents, session=session, **kwargs)
        for document in documents:
            stamp_initial_info(document, self._fields, context.origin)
        result = await self._collection.insert_many(documents, session=session, **kwargs)
        await self._coordinator.process(context)
        return result

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_one(
        self,
        filter: dict[str, Any],
        update: Any,
        *,
        array_filters: list[dict[str, Any]] | None = None,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        context = self._context(origin, session, skip_track_plugin)
        if not context.skip:
            update, array_filters = self._consolidate(filter, update, array_filters, context)
        result = await self._collection.update_one(
            filter, update, array_filters=array_filters, session=session, **kwargs
        )
        if not context.skip and has_changes(result):
            await self._coordinator.process(context)
        return result

    async def update_many(
        self,
        filter: dict[str, Any],
        update: Any,
        *,
        array_filters: list[dict[str, Any]] | None = None,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        context = self._context(origin, session, skip_track_plugin)
        if not context.skip:
            update, array_filters = self._consolidate(filter, update, array_filters, context)
        result = await self._collection.update_many(
            filter, update, array_filters=array_filters, session=session, **kwargs
        )
        if not context.skip and has_changes(result):
            await self._coordinator.process(context)
        return result

    async def find_one_and_update(
        self,
        filter: dict[str, Any],
        update: Any,
        *,
        array_filters: list[dict[str, Any]] | None = None,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Consolidated find-and-update. Always drains: the driver reports no counts."""
        context = self._context(origin, session, skip_track_plugin)
        if not context.skip:
            update, array_filters = self._consolidate(filter, update, array_filters, context)
        document = await self._collection.find_one_and_update(
            filter, update, array_filters=array_filters, session=session, **kwargs
        )
        if not context.skip:
            await self._coordinator.process(context)
        return document

    async def find_one_and_replace(
        self,
        filter: dict[str, Any],
        replacement: dict[str, Any],
        *,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Find-and-replace keeping the shadow records of tracked fields.

        A replacement touching a tracked field is sent as a find-and-update
        pipeline that carries the top-level shadow records over.
        """
        context = self._context(origin, session, skip_track_plugin)
        if context.skip:
            return await self._collection.find_one_and_replace(
                filter, replacement, session=session, **kwargs
            )
        pipeline, _ = self._consolidate(filter, replacement, None, context)
        if pipeline is replacement:
            document = await self._collection.find_one_and_replace(
                filter, replacement, session=session, **kwargs
            )
        else:
            document = await self._collection.find_one_and_update(
                filter, pipeline, session=session, **kwargs
            )
        await self._coordinator.process(context)
        return document

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    def _consolidate_request(self, request: Any, context: WriteContext) -> Any:
        if isinstance(request, InsertOne):
            stamp_initial_info(request._doc, self._fields, context.origin)
            return request
        if not isinstance(request, (UpdateOne, UpdateMany, ReplaceOne)):
            return request

        array_filters = getattr(request, "_array_filters", None)
        pipeline, remaining = self._consolidate(request._filter, request._doc, array_filters, context)
        if pipeline is request._doc:
            return request

        options: dict[str, Any] = {
            "upsert": request._upsert,
            "collation": request._collation,
            "hint": request._hint,
        }
        if getattr(request, "_sort", None) is not None:
            options["sort"] = request._sort
        if isinstance(request, UpdateMany):
            options.pop("sort", None)
            return UpdateMany(request._filter, pipeline, array_filters=remaining, **options)
        return UpdateOne(request._filter, pipeline, array_filters=remaining, **options)

    async def bulk_write(
        self,
        requests: list[Any],
        *,
        ordered: bool = True,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Bulk write with each insert stamped and each update consolidated.

        ``ReplaceOne`` requests touching a tracked field become pipeline
        ``UpdateOne`` requests so their shadow records survive.
        """
        context = self._context(origin, session, skip_track_plugin)
        if not context.skip:
            requests = [self._consolidate_request(request, context) for request in requests]
        result = await self._collection.bulk_write(requests, ordered=ordered, session=session, **kwargs)
        if not context.skip and (has_changes(result) or getattr(result, "inserted_count", 0)):
            await self._coordinator.process(context)
        return result

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def aggregate(
        self,
        pipeline: list[dict[str, Any]],
        *,
        origin: Any = None,
        session: Any = None,
        skip_track_plugin: bool = False,
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        """Run an aggregation to completion and return its documents.

        When the pipeline ends in ``$merge`` into a tracked collection, the
        merge's ``whenMatched`` is rewritten to maintain the TARGET
        collection's shadow records, and the target is drained afterwards.
        The caller's pipeline is not mutated.
        """
        context = self._context(origin, session, skip_track_plugin)
        target: TrackedCollection | None = None
        if not context.skip and pipeline:
            pipeline = [*pipeline[:-1], copy.deepcopy(pipeline[-1])]
            merge = get_merge_stage(pipeline)
            if merge is not None and self._registry is not None:
                target = self._registry.get(get_merge_target(merge))
            if merge is not None and target is not None:
                stages = build_change_stages(target.fields, context.origin)
                if stages and add_merge_update_stages(merge, stages, target.fields):
                    logger.debug(
                        "Consolidated merge stage",
                        collection=self.name,
                        target=target.name,
                        operation_id=context.operation_id,
                    )

        cursor = self._collection.aggregate(pipeline, session=session, **kwargs)
        documents = await cursor.to_list(length=None)
        if target is not None:
            await target.drain(context)
        return documents

    # ------------------------------------------------------------------
    # Pass-through
    # ------------------------------------------------------------------

    def find(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.find(*args, **kwargs)

    async def find_one(self, *args: Any, **kwargs: Any) -> Any:
        return await self._collection.find_one(*args, **kwargs)

    async def delete_one(self, *args: Any, **kwargs: Any) -> Any:
        return await self._collection.delete_one(*args, **kwargs)

    async def delete_many(self, *args: Any, **kwargs: Any) -> Any:
        return await self._collection.delete_many(*args, **kwargs)

    async def count_documents(self, *args: Any, **kwargs: Any) -> int:
        return await self._collection.count_documents(*args, **kwargs)

    async def create_index(self, *args: Any, **kwargs: Any) -> str:
        return await self._collection.create_index(*args, **kwargs)
