"""Abstract interfaces (Protocol classes) for field-tracker.

Defines the contracts between the tracking engine and the document store
driver. The engine depends on these protocols, never on motor directly,
which lets tests drive it with mock collections.

Protocols defined:
- ICursor
- IDocumentCollection
- IDocumentDatabase
- ChangeCallback
"""

from typing import Any, Protocol

from field_tracker.core.models import FieldChange


class ICursor(Protocol):
    """Asynchronous cursor returned by find() and aggregate()."""

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        """Exhaust the cursor.

        Args:
            length: Maximum number of documents, None for all.

        Returns:
            The documents read.
        """
        ...


class IDocumentCollection(Protocol):
    """Subset of an AsyncIOMotorCollection consumed by the engine."""

    @property
    def name(self) -> str:
        """Collection name."""
        ...

    @property
    def database(self) -> "IDocumentDatabase":
        """Owning database."""
        ...

    def find(self, filter: dict[str, Any] | None = None, projection: Any = None, **kwargs: Any) -> ICursor:
        """Start a query. Supports ``session`` and ``batch_size`` keyword arguments."""
        ...

    def aggregate(self, pipeline: list[dict[str, Any]], **kwargs: Any) -> ICursor:
        """Start an aggregation. Supports the ``session`` keyword argument."""
        ...

    async def insert_one(self, document: dict[str, Any], **kwargs: Any) -> Any:
        """Insert one document."""
        ...

    async def insert_many(self, documents: list[dict[str, Any]], **kwargs: Any) -> Any:
        """Insert several documents."""
        ...

    async def update_one(self, filter: dict[str, Any], update: Any, **kwargs: Any) -> Any:
        """Update the first matching document; result exposes modified/upserted counts."""
        ...

    async def update_many(self, filter: dict[str, Any], update: Any, **kwargs: Any) -> Any:
        """Update every matching document; result exposes modified/upserted counts."""
        ...

    async def bulk_write(self, requests: list[Any], **kwargs: Any) -> Any:
        """Submit write operations in one batch; result exposes modified/upserted counts."""
        ...

    async def find_one_and_update(self, filter: dict[str, Any], update: Any, **kwargs: Any) -> Any:
        """Update one document and return it."""
        ...

    async def find_one_and_replace(self, filter: dict[str, Any], replacement: dict[str, Any], **kwargs: Any) -> Any:
        """Replace one document and return it."""
        ...


class IDocumentDatabase(Protocol):
    """Subset of an AsyncIOMotorDatabase consumed by the engine."""

    def __getitem__(self, name: str) -> IDocumentCollection:
        """Return the collection called ``name``."""
        ...


class ChangeCallback(Protocol):
    """Change callback registered with ``TrackOptions.on_update``.

    Receives one batch per field per write, never empty. May also accept
    the active session as a second argument, and may be a coroutine.
    """

    def __call__(self, changes: list[FieldChange], session: Any = None, /) -> Any:
        """Handle a batch of changes of one tracked field."""
        ...
