"""Tests for the change-notification coordinator (drain, clear, dispatch)."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from field_tracker.core.models import FieldChange, TrackedField, WriteContext
from field_tracker.core.paths import FieldPath
from field_tracker.notifications.coordinator import (
    ChangeCoordinator,
    build_clear_update,
    build_drain_filter,
    build_drain_projection,
    collect_changes,
    drained_cutoff,
    invoke_callback,
    notifying_fields,
)
from field_tracker.notifications.ledger import LedgerWriter

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _field(product_fields, dotted):
    return next(field for field in product_fields if str(field.path) == dotted)


@pytest.fixture()
def drain_collection(make_cursor):
    """Collection whose drain read returns one changed status and one changed array element."""
    collection = MagicMock()
    collection.name = "products"
    collection.find.return_value = make_cursor(
        [
            {
                "_id": "p1",
                "status": {
                    "value": "rupture",
                    "previousValue": "disponible",
                    "updatedAt": NOW,
                    "changePending": True,
                    "metadata": {"code": "A001"},
                },
                "stage": None,
                "array_status": [
                    {"value": "validé", "previousValue": "en attente", "changePending": True, "itemId": "x100"}
                ],
                "embeddedSchema_status": None,
                "embeddedSchemaArray_status": [],
            }
        ]
    )
    collection.update_many = AsyncMock()
    return collection


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def test_notifying_fields(product_fields):
    assert [str(field.path) for field in notifying_fields(product_fields)] == [
        "status",
        "stage",
        "array.status",
        "embeddedSchema.status",
        "embeddedSchemaArray.status",
    ]


def test_drain_filter(product_fields):
    fields = notifying_fields(product_fields)
    assert build_drain_filter(fields) == {
        "$or": [
            {"statusInfo.changePending": True},
            {"stageInfo.changePending": True},
            {"array.statusInfo.changePending": True},
            {"embeddedSchema.statusInfo.changePending": True},
            {"embeddedSchemaArray.statusInfo.changePending": True},
        ]
    }


def test_drain_projection_root_field_with_metadata(product_fields):
    projection = build_drain_projection([_field(product_fields, "status")])
    assert projection == {
        "status": {
            "$cond": {
                "if": {"$eq": ["$statusInfo.changePending", True]},
                "then": {"$mergeObjects": ["$statusInfo", {"metadata": {"code": "$code"}}]},
                "else": None,
            }
        }
    }


def test_drain_projection_sub_document_carries_item_id(product_fields):
    projection = build_drain_projection([_field(product_fields, "embeddedSchema.status")])
    merged = projection["embeddedSchema_status"]["$cond"]["then"]["$mergeObjects"]
    assert merged[0] == "$embeddedSchema.statusInfo"
    assert merged[1] == {"itemId": "$embeddedSchema._id"}


def test_drain_projection_array_field_filters_pending_elements(product_fields):
    projection = build_drain_projection([_field(product_fields, "array.status")])
    assert projection == {
        "array_status": {
            "$map": {
                "input": {
                    "$filter": {
                        "input": {"$ifNull": ["$array", []]},
                        "as": "item",
                        "cond": {"$eq": ["$$item.statusInfo.changePending", True]},
                    }
                },
                "as": "item",
                "in": {"$mergeObjects": ["$$item.statusInfo", {"itemId": "$$item._id"}]},
            }
        }
    }


def test_clear_update_only_flips_pending_records(product_fields):
    stages = build_clear_update([_field(product_fields, "status"), _field(product_fields, "array.status")])
    assert stages[0] == {
        "$set": {
            "statusInfo": {
                "$cond": {
                    "if": {"$eq": ["$statusInfo.changePending", True]},
                    "then": {"$mergeObjects": ["$statusInfo", {"changePending": False}]},
                    "else": "$statusInfo",
                }
            }
        }
    }
    mapped = stages[1]["$set"]["array"]["$cond"][1]["$map"]
    assert mapped["in"]["$cond"]["then"] == {
        "$mergeObjects": [
            "$$elemt",
            {"statusInfo": {"$mergeObjects": ["$$elemt.statusInfo", {"changePending": False}]}},
        ]
    }
    assert mapped["in"]["$cond"]["else"] == "$$elemt"


def test_clear_update_spares_records_flagged_after_the_read(product_fields):
    stages = build_clear_update([_field(product_fields, "status"), _field(product_fields, "array.status")], NOW)
    assert stages[0]["$set"]["statusInfo"]["$cond"]["if"] == {
        "$and": [
            {"$eq": ["$statusInfo.changePending", True]},
            {"$lte": ["$statusInfo.updatedAt", NOW]},
        ]
    }
    mapped = stages[1]["$set"]["array"]["$cond"][1]["$map"]
    assert mapped["in"]["$cond"]["if"] == {
        "$and": [
            {"$eq": ["$$elemt.statusInfo.changePending", True]},
            {"$lte": ["$$elemt.statusInfo.updatedAt", NOW]},
        ]
    }


def test_drained_cutoff_is_the_latest_record(product_fields):
    later = datetime(2024, 3, 1, 12, 5, tzinfo=UTC)
    rows = [
        {"_id": "p1", "status": {"value": "a", "updatedAt": NOW}, "array_status": [{"value": "b", "updatedAt": later}]},
        {"_id": "p2", "status": None, "array_status": [{"value": "c"}]},
    ]
    assert drained_cutoff(notifying_fields(product_fields), rows) == later
    assert drained_cutoff(notifying_fields(product_fields), [{"_id": "p3", "status": None}]) is None


# ---------------------------------------------------------------------------
# Change collection and callbacks
# ---------------------------------------------------------------------------


def test_collect_changes_flattens_array_records(product_fields):
    rows = [
        {"_id": "p1", "array_status": [{"value": "a", "itemId": "e1"}, {"value": "b", "itemId": "e2"}]},
        {"_id": "p2", "array_status": []},
    ]
    changes = collect_changes(_field(product_fields, "array.status"), rows)
    assert [(c.document_id, c.path, c.change.item_id, c.change.value) for c in changes] == [
        ("p1", "array.status", "e1", "a"),
        ("p1", "array.status", "e2", "b"),
    ]


def test_collect_changes_skips_null_records(product_fields):
    assert collect_changes(_field(product_fields, "status"), [{"_id": "p1", "status": None}]) == []


@pytest.mark.asyncio()
async def test_invoke_callback_single_argument():
    seen = []
    await invoke_callback(lambda batch: seen.append(batch), ["batch"], "session")
    assert seen == [["batch"]]


@pytest.mark.asyncio()
async def test_invoke_callback_with_session():
    seen = []

    def callback(batch, session):
        seen.append((batch, session))

    await invoke_callback(callback, ["batch"], "session")
    assert seen == [(["batch"], "session")]


@pytest.mark.asyncio()
async def test_invoke_callback_awaits_coroutines():
    seen = []

    async def callback(batch):
        seen.append(batch)
        return "done"

    assert await invoke_callback(callback, ["batch"], None) == "done"
    assert seen == [["batch"]]


# ---------------------------------------------------------------------------
# Full drain
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_process_reads_clears_and_dispatches(product_fields, drain_collection, received):
    ledger = AsyncMock(spec=LedgerWriter)
    coordinator = ChangeCoordinator(drain_collection, product_fields, ledger=ledger, batch_size=50)
    context = WriteContext(session="session")

    dispatched = await coordinator.process(context)

    fields = notifying_fields(product_fields)
    drain_collection.find.assert_called_once_with(
        build_drain_filter(fields),
        build_drain_projection(fields),
        session="session",
        batch_size=50,
    )
    drain_collection.update_many.assert_awaited_once_with(
        {"_id": {"$in": ["p1"]}, **build_drain_filter(fields)},
        build_clear_update(fields, NOW),
        session="session",
        skip_track_plugin=True,
    )
    assert list(dispatched) == ["status", "array.status"]
    assert len(received) == 2
    (status_change,) = received[0]
    assert isinstance(status_change, FieldChange)
    assert status_change.document_id == "p1"
    assert status_change.change.value == "rupture"
    assert status_change.change.previous_value == "disponible"
    assert status_change.change.metadata == {"code": "A001"}
    assert received[1][0].change.item_id == "x100"

    ledger.append.assert_awaited_once()
    historized = ledger.append.await_args.args[0]
    assert [(field.path, entity_id, record.value) for field, entity_id, record in historized] == [
        (_field(product_fields, "status").path, "p1", "rupture")
    ]


@pytest.mark.asyncio()
async def test_process_without_pending_rows_does_not_clear(product_fields, mock_collection, received):
    coordinator = ChangeCoordinator(mock_collection, product_fields)
    assert await coordinator.process(WriteContext()) == {}
    mock_collection.update_many.assert_not_awaited()
    assert received == []


@pytest.mark.asyncio()
async def test_clear_happens_before_a_failing_callback(make_cursor):
    def explode(batch):
        raise RuntimeError("callback failed")

    field = TrackedField(path=FieldPath(("status",)), info_path=FieldPath(("statusInfo",)), on_change=explode)
    collection = MagicMock()
    collection.name = "products"
    collection.find.return_value = make_cursor([{"_id": "p1", "status": {"value": "x"}}])
    collection.update_many = AsyncMock()

    with pytest.raises(RuntimeError):
        await ChangeCoordinator(collection, [field]).process(WriteContext())
    collection.update_many.assert_awaited_once()


@pytest.mark.asyncio()
async def test_process_with_no_notifying_fields_skips_the_read(mock_collection, product_fields):
    silent = [field for field in product_fields if not field.notifies]
    assert await ChangeCoordinator(mock_collection, silent).process(WriteContext()) == {}
    mock_collection.find.assert_not_called()
