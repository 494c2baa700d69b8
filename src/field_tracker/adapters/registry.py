"""Tracked collection registry.

Holds the plugin-level options and the tracked collections of one
database. ``$merge`` interception resolves its target through this
registry, so a collection must be registered before any aggregation
merges into it.
"""

from __future__ import annotations

from typing import Any, Callable

from pymongo import ASCENDING

from field_tracker.adapters.collection import TrackedCollection
from field_tracker.core.interfaces import IDocumentDatabase
from field_tracker.core.resolver import ensure_shadow_paths, resolve_tracked_fields
from field_tracker.core.schema import DocumentSchema
from field_tracker.errors import TrackConfigurationError
from field_tracker.observability import get_logger
from field_tracker.settings import TrackerSettings

logger = get_logger(__name__)

LEDGER_INDEX = [("entityId", ASCENDING), ("itemId", ASCENDING), ("path", ASCENDING), ("end", ASCENDING)]


class FieldTracker:
    """Registry of tracked collections.

    Args:
        database: The motor database.
        settings: Tracker settings; defaults are read from the environment.
        origin: Plugin-level origin supplier (or constant), used by fields
            that declare none.
    """

    def __init__(
        self,
        database: IDocumentDatabase,
        settings: TrackerSettings | None = None,
        origin: Callable[[], Any] | Any = None,
    ) -> None:
        self._database = database
        self._settings = settings or TrackerSettings()
        self._origin = origin
        self._collections: dict[str, TrackedCollection] = {}
        self._schemas: dict[str, DocumentSchema] = {}

    @property
    def database(self) -> IDocumentDatabase:
        return self._database

    @property
    def collections(self) -> dict[str, TrackedCollection]:
        return dict(self._collections)

    def track(self, name: str, schema: DocumentSchema) -> TrackedCollection:
        """Register collection ``name`` with its schema.

        Resolves the tracked fields and adds their shadow paths to
        ``schema``.

        Raises:
            TrackConfigurationError: If the collection is already registered
                or the schema declares invalid tracking options.
        """
        if name in self._collections:
            raise TrackConfigurationError(f"Collection {name!r} is already tracked")
        fields = resolve_tracked_fields(schema, self._origin, self._settings.info_suffix)
        ensure_shadow_paths(schema, fields)
        tracked = TrackedCollection(
            self._database[name],
            fields,
            registry=self,
            batch_size=self._settings.drain_batch_size,
        )
        self._collections[name] = tracked
        self._schemas[name] = schema
        logger.info("Tracking collection", collection=name, fields=len(fields))
        return tracked

    def get(self, name: str) -> TrackedCollection | None:
        return self._collections.get(name)

    def __getitem__(self, name: str) -> TrackedCollection:
        tracked = self._collections.get(name)
        if tracked is None:
            raise KeyError(name)
        return tracked

    async def ensure_indexes(self) -> list[str]:
        """Create the declared, pending-flag and ledger indexes.

        Declared indexes are the schema paths marked ``indexed``, which
        include every shadow ``value`` added at registration.

        Returns:
            Names of the indexes created (or already present).
        """
        created: list[str] = []
        ledgers: set[str] = set()
        for name, tracked in self._collections.items():
            for path in self._schemas[name].indexed_paths():
                created.append(await tracked.create_index(str(path)))
            for field in tracked.fields:
                created.append(
                    await tracked.create_index(f"{field.info_path}.changePending", sparse=True)
                )
                if field.historize_target is not None:
                    ledgers.add(field.historize_target)
            logger.info("Ensured tracking indexes", collection=name)
        for ledger in sorted(ledgers):
            created.append(await self._database[ledger].create_index(LEDGER_INDEX))
            logger.info("Ensured ledger index", collection=ledger)
        return created
