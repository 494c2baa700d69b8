"""Test fixtures for field-tracker.

Provides:
- received: A list collecting every change batch delivered to callbacks
- product_schema: The product catalogue schema used across the suite
- product_fields: Resolved tracked fields of product_schema
- make_cursor: Factory for mock motor cursors returning fixed documents
- mock_database: A mock AsyncIOMotorDatabase handing out ledger collections
- mock_collection: A mock AsyncIOMotorCollection named "products"
"""

from types import SimpleNamespace
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from field_tracker.core.models import FieldChange, TrackedField, TrackOptions
from field_tracker.core.resolver import resolve_tracked_fields
from field_tracker.core.schema import ArrayField, DocumentSchema, EmbeddedField, ScalarField

STATUSES = ["disponible", "indisponible", "précommande", "erreur"]


@pytest.fixture()
def received() -> list[list[FieldChange]]:
    """Batches delivered to the status callbacks, in call order."""
    return []


@pytest.fixture()
def product_schema(received: list[list[FieldChange]]) -> DocumentSchema:
    """Build the product schema.

    Args:
        received: Injected batch collector, fed by the status callbacks.

    Returns:
        A schema with tracked root, embedded and array-nested fields.
    """

    def on_status(changes: list[FieldChange]) -> None:
        received.append(changes)

    def embedded_children() -> list[Any]:
        return [
            ScalarField("code", type=str),
            ScalarField("status", type=str, track=TrackOptions(on_update=on_status, metadata={"code": "$code"})),
            ScalarField("stage", type=str, track=True),
        ]

    return DocumentSchema(
        fields=[
            ScalarField("code", type=str),
            ScalarField(
                "status",
                type=str,
                enum=list(STATUSES),
                track=TrackOptions(
                    on_update=on_status,
                    metadata={"code": "$code"},
                    historize_col="products_history",
                ),
            ),
            ScalarField(
                "stage",
                type=str,
                track=TrackOptions(origin=lambda: "schema-origin", on_update=on_status),
            ),
            ScalarField("description", type=str),
            ArrayField(
                "array",
                children=[
                    ScalarField("code", type=str),
                    ScalarField("status", type=str, track=TrackOptions(on_update=on_status)),
                    ScalarField("stage", type=str, track=True),
                ],
            ),
            EmbeddedField("embeddedSchema", children=embedded_children()),
            ArrayField("embeddedSchemaArray", children=embedded_children()),
        ]
    )


@pytest.fixture()
def product_fields(product_schema: DocumentSchema) -> list[TrackedField]:
    return resolve_tracked_fields(product_schema)


@pytest.fixture()
def make_cursor() -> Callable[[list[dict[str, Any]]], MagicMock]:
    """Return a factory building cursors whose to_list() yields ``documents``."""

    def factory(documents: list[dict[str, Any]]) -> MagicMock:
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=documents)
        return cursor

    return factory


@pytest.fixture()
def ledger_collection() -> MagicMock:
    collection = MagicMock()
    collection.bulk_write = AsyncMock(return_value=SimpleNamespace(inserted_count=1))
    collection.create_index = AsyncMock(return_value="ledger_index")
    return collection


@pytest.fixture()
def mock_database(ledger_collection: MagicMock) -> MagicMock:
    """Database whose every item lookup returns ledger_collection."""
    database = MagicMock()
    database.__getitem__.return_value = ledger_collection
    return database


@pytest.fixture()
def mock_collection(mock_database: MagicMock, make_cursor: Callable[..., MagicMock]) -> MagicMock:
    """Create a mock motor collection with no pending changes.

    Returns:
        MagicMock with async write methods reporting one modified document.
    """
    collection = MagicMock()
    collection.name = "products"
    collection.database = mock_database
    collection.find.return_value = make_cursor([])
    collection.aggregate.return_value = make_cursor([])
    modified = SimpleNamespace(modified_count=1, upserted_id=None)
    collection.insert_one = AsyncMock(return_value=SimpleNamespace(inserted_id="new-id"))
    collection.insert_many = AsyncMock(return_value=SimpleNamespace(inserted_ids=["a", "b"]))
    collection.update_one = AsyncMock(return_value=modified)
    collection.update_many = AsyncMock(return_value=modified)
    collection.bulk_write = AsyncMock(
        return_value=SimpleNamespace(modified_count=1, upserted_count=0, inserted_count=0)
    )
    collection.find_one_and_update = AsyncMock(return_value={"_id": "doc"})
    collection.find_one_and_replace = AsyncMock(return_value={"_id": "doc"})
    collection.create_index = AsyncMock(side_effect=lambda keys, **kwargs: str(keys))
    return collection
