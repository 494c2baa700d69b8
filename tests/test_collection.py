"""Tests for the TrackedCollection write-path hooks."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import DeleteOne, InsertOne, ReplaceOne, UpdateMany, UpdateOne

from field_tracker.adapters.collection import TrackedCollection, has_changes
from field_tracker.core.consolidation import CARRIED_FIELD
from field_tracker.core.projection import build_change_stages
from field_tracker.errors import UnsupportedUpdateError
from field_tracker.notifications.coordinator import (
    build_clear_update,
    build_drain_filter,
    notifying_fields,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def tracked(mock_collection, product_fields) -> TrackedCollection:
    return TrackedCollection(mock_collection, product_fields)


def test_has_changes():
    assert has_changes(SimpleNamespace(modified_count=1, upserted_id=None))
    assert has_changes(SimpleNamespace(modified_count=0, upserted_id="new"))
    assert has_changes(SimpleNamespace(modified_count=0, upserted_count=2))
    assert not has_changes(SimpleNamespace(modified_count=0, upserted_id=None))
    assert not has_changes(SimpleNamespace(modified_count=0, upserted_count=0))


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_update_one_scalar_scenario(tracked, mock_collection, make_cursor, received, ledger_collection):
    mock_collection.find.return_value = make_cursor(
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
            }
        ]
    )

    await tracked.update_one({"code": "A001"}, {"$set": {"status": "rupture"}})

    args, kwargs = mock_collection.update_one.await_args
    assert args[0] == {"code": "A001"}
    assert args[1][0] == {"$set": {"status": "rupture"}}
    projection = args[1][1]["$set"]["statusInfo"]["$cond"]
    assert projection["if"] == {"$ne": ["$statusInfo.value", "$status"]}
    assert projection["then"]["changePending"] is True
    assert kwargs == {"array_filters": None, "session": None}

    fields = notifying_fields(tracked.fields)
    mock_collection.update_many.assert_awaited_once_with(
        {"_id": {"$in": ["p1"]}, **build_drain_filter(fields)},
        build_clear_update(fields, NOW),
        array_filters=None,
        session=None,
    )

    assert len(received) == 1
    (entry,) = received[0]
    assert entry.path == "status"
    assert entry.change.value == "rupture"
    assert entry.change.previous_value == "disponible"

    ledger_collection.bulk_write.assert_awaited_once()


@pytest.mark.asyncio()
async def test_update_one_array_element_scenario(tracked, mock_collection, make_cursor, received, ledger_collection):
    x100 = ObjectId()
    mock_collection.find.return_value = make_cursor(
        [
            {
                "_id": "p4",
                "array_status": [
                    {"value": "validé", "previousValue": "en attente", "changePending": True, "itemId": x100}
                ],
            }
        ]
    )

    await tracked.update_one({"code": "A004", "array.code": "X100"}, {"$set": {"array.$.status": "validé"}})

    pipeline = mock_collection.update_one.await_args.args[1]
    assert len(pipeline) == 2
    assert list(pipeline[0]["$set"]) == ["array"]
    assert list(pipeline[1]["$set"]) == ["array"]
    per_element = pipeline[1]["$set"]["array"]["$cond"][1]["$map"]["in"]["$cond"]
    assert per_element["else"] == "$$elemt"

    assert len(received) == 1
    (entry,) = received[0]
    assert entry.path == "array.status"
    assert entry.change.item_id == x100
    assert entry.change.value == "validé"
    ledger_collection.bulk_write.assert_not_awaited()


@pytest.mark.asyncio()
async def test_untracked_update_is_sent_unchanged(tracked, mock_collection):
    await tracked.update_one({"code": "A001"}, {"$set": {"description": "x"}}, array_filters=[{"a.b": 1}])
    mock_collection.update_one.assert_awaited_once_with(
        {"code": "A001"}, {"$set": {"description": "x"}}, array_filters=[{"a.b": 1}], session=None
    )


@pytest.mark.asyncio()
async def test_array_filters_are_dropped_once_folded(tracked, mock_collection):
    await tracked.update_many(
        {"code": "A004"},
        {"$set": {"array.$[item].status": "validé"}},
        array_filters=[{"item.code": "X100"}],
    )
    assert mock_collection.update_many.await_args.kwargs["array_filters"] is None


@pytest.mark.asyncio()
async def test_set_on_insert_with_tracked_field_is_rejected_before_writing(tracked, mock_collection):
    update = {"$set": {"status": "rupture"}, "$setOnInsert": {"createdBy": "importer"}}
    with pytest.raises(UnsupportedUpdateError):
        await tracked.update_one({"code": "A001"}, update, upsert=True)
    mock_collection.update_one.assert_not_awaited()


@pytest.mark.asyncio()
async def test_set_on_insert_without_tracked_field_is_sent_natively(tracked, mock_collection):
    update = {"$set": {"description": "x"}, "$setOnInsert": {"createdBy": "importer"}}
    await tracked.update_one({"code": "A001"}, update, upsert=True)
    mock_collection.update_one.assert_awaited_once_with(
        {"code": "A001"}, update, array_filters=None, session=None, upsert=True
    )


@pytest.mark.asyncio()
async def test_no_drain_when_nothing_changed(tracked, mock_collection):
    mock_collection.update_one.return_value = SimpleNamespace(modified_count=0, upserted_id=None)
    await tracked.update_one({"code": "A001"}, {"$set": {"status": "disponible"}})
    mock_collection.find.assert_not_called()


@pytest.mark.asyncio()
async def test_skip_flag_disables_tracking(tracked, mock_collection):
    update = {"$set": {"status": "rupture"}}
    await tracked.update_one({"code": "A001"}, update, skip_track_plugin=True)
    mock_collection.update_one.assert_awaited_once_with(
        {"code": "A001"}, update, array_filters=None, session=None
    )
    mock_collection.find.assert_not_called()


@pytest.mark.asyncio()
async def test_session_is_propagated(tracked, mock_collection, make_cursor):
    mock_collection.find.return_value = make_cursor([{"_id": "p1", "stage": {"value": "b"}}])
    session = object()
    await tracked.update_one({"code": "A001"}, {"$set": {"stage": "b"}}, session=session)
    assert mock_collection.update_one.await_args.kwargs["session"] is session
    assert mock_collection.find.call_args.kwargs["session"] is session
    assert mock_collection.update_many.await_args.kwargs["session"] is session


@pytest.mark.asyncio()
async def test_call_origin_overrides_schema_origin(tracked, mock_collection):
    await tracked.update_one({"code": "A001"}, {"$set": {"stage": "b"}}, origin="api-user")
    stage = mock_collection.update_one.await_args.args[1][1]["$set"]["stageInfo"]
    assert stage["$cond"]["then"]["origin"] == "api-user"

    await tracked.update_one({"code": "A001"}, {"$set": {"stage": "c"}})
    stage = mock_collection.update_one.await_args.args[1][1]["$set"]["stageInfo"]
    assert stage["$cond"]["then"]["origin"] == "schema-origin"


@pytest.mark.asyncio()
async def test_find_one_and_update_always_drains(tracked, mock_collection):
    document = await tracked.find_one_and_update({"code": "A001"}, {"$set": {"status": "erreur"}})
    assert document == {"_id": "doc"}
    assert mock_collection.find_one_and_update.await_args.args[1][0] == {"$set": {"status": "erreur"}}
    mock_collection.find.assert_called_once()


@pytest.mark.asyncio()
async def test_find_one_and_replace_becomes_pipeline(tracked, mock_collection):
    await tracked.find_one_and_replace({"code": "A001"}, {"code": "A001", "status": "erreur"})
    mock_collection.find_one_and_replace.assert_not_awaited()
    pipeline = mock_collection.find_one_and_update.await_args.args[1]
    assert "$replaceWith" in pipeline[0]
    assert {"$unset": CARRIED_FIELD} in pipeline
    assert "statusInfo" in pipeline[-1]["$set"]


@pytest.mark.asyncio()
async def test_find_one_and_replace_untracked(tracked, mock_collection):
    await tracked.find_one_and_replace({"code": "A001"}, {"code": "A001", "description": "x"})
    mock_collection.find_one_and_replace.assert_awaited_once_with(
        {"code": "A001"}, {"code": "A001", "description": "x"}, session=None
    )


# ---------------------------------------------------------------------------
# Inserts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_insert_one_stamps_and_drains(tracked, mock_collection):
    document = {"code": "A001", "status": "disponible", "array": [{"code": "X100", "status": "en attente"}]}
    await tracked.insert_one(document, origin="importer")

    inserted = mock_collection.insert_one.await_args.args[0]
    assert inserted["statusInfo"]["value"] == "disponible"
    assert inserted["statusInfo"]["origin"] == "importer"
    assert inserted["statusInfo"]["changePending"] is True
    element_info = inserted["array"][0]["stageInfo"]
    assert set(element_info) == {"updatedAt", "origin"}
    assert element_info["origin"] == "importer"
    mock_collection.find.assert_called_once()


@pytest.mark.asyncio()
async def test_insert_many_skip_flag(tracked, mock_collection):
    documents = [{"code": "A001", "status": "disponible"}]
    await tracked.insert_many(documents, skip_track_plugin=True)
    assert "statusInfo" not in documents[0]
    mock_collection.find.assert_not_called()


@pytest.mark.asyncio()
async def test_insert_many_stamps_every_document(tracked, mock_collection):
    documents = [{"code": "A001", "status": "disponible"}, {"code": "A002", "status": "erreur"}]
    await tracked.insert_many(documents)
    assert [d["statusInfo"]["value"] for d in documents] == ["disponible", "erreur"]
    mock_collection.find.assert_called_once()


# ---------------------------------------------------------------------------
# Bulk writes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_bulk_write_consolidates_each_request(tracked, mock_collection):
    requests = [
        InsertOne({"code": "A009", "status": "disponible"}),
        UpdateOne({"code": "A001"}, {"$set": {"status": "rupture"}}, upsert=True),
        UpdateMany({"code": "A004"}, {"$set": {"array.$[item].status": "validé"}}, array_filters=[{"item.code": "X100"}]),
        UpdateOne({"code": "A002"}, {"$set": {"description": "x"}}),
        ReplaceOne({"code": "A003"}, {"code": "A003", "status": "erreur"}),
        DeleteOne({"code": "A005"}),
    ]

    await tracked.bulk_write(requests, origin="batch")

    sent = mock_collection.bulk_write.await_args.args[0]
    assert sent[0]._doc["statusInfo"]["origin"] == "batch"

    assert isinstance(sent[1], UpdateOne)
    assert sent[1]._upsert is True
    assert sent[1]._doc[1]["$set"]["statusInfo"]["$cond"]["then"]["origin"] == "batch"

    assert isinstance(sent[2], UpdateMany)
    assert sent[2]._array_filters is None
    assert list(sent[2]._doc[1]["$set"]) == ["array"]

    assert sent[3] is requests[3]

    assert isinstance(sent[4], UpdateOne)
    assert "$replaceWith" in sent[4]._doc[0]

    assert sent[5] is requests[5]
    assert mock_collection.bulk_write.await_args.kwargs == {"ordered": True, "session": None}
    mock_collection.find.assert_called_once()


@pytest.mark.asyncio()
async def test_bulk_write_without_changes_does_not_drain(tracked, mock_collection):
    mock_collection.bulk_write.return_value = SimpleNamespace(modified_count=0, upserted_count=0, inserted_count=0)
    await tracked.bulk_write([UpdateOne({"code": "A001"}, {"$set": {"status": "disponible"}})])
    mock_collection.find.assert_not_called()


# ---------------------------------------------------------------------------
# Aggregation with $merge
# ---------------------------------------------------------------------------


@pytest.fixture()
def source(make_cursor) -> MagicMock:
    collection = MagicMock()
    collection.name = "imports"
    collection.database = MagicMock()
    collection.aggregate.return_value = make_cursor([])
    return collection


@pytest.mark.asyncio()
async def test_merge_shorthand_targets_the_merged_collection(source, tracked, mock_collection):
    registry = MagicMock()
    registry.get.return_value = tracked
    importer = TrackedCollection(source, [], registry=registry)
    pipeline = [{"$project": {"code": 1, "status": 1}}, {"$merge": {"into": "products", "on": "code", "whenMatched": "merge"}}]

    await importer.aggregate(pipeline)

    registry.get.assert_called_once_with("products")
    sent = source.aggregate.call_args.args[0]
    when_matched = sent[-1]["$merge"]["whenMatched"]
    assert when_matched[0] == {"$replaceRoot": {"newRoot": {"$mergeObjects": ["$$ROOT", "$$new"]}}}
    assert when_matched[1:] == build_change_stages(tracked.fields)
    assert pipeline[-1]["$merge"]["whenMatched"] == "merge"
    mock_collection.find.assert_called_once()


@pytest.mark.asyncio()
async def test_merge_string_form(source, tracked):
    registry = MagicMock()
    registry.get.return_value = tracked
    importer = TrackedCollection(source, [], registry=registry)

    await importer.aggregate([{"$merge": "products"}], origin="nightly")

    merge = source.aggregate.call_args.args[0][-1]["$merge"]
    assert merge["into"] == "products"
    stage = merge["whenMatched"][1]["$set"]["stageInfo"]
    assert stage["$cond"]["then"]["origin"] == "nightly"


@pytest.mark.asyncio()
async def test_merge_into_untracked_collection(source):
    registry = MagicMock()
    registry.get.return_value = None
    importer = TrackedCollection(source, [], registry=registry)
    pipeline = [{"$merge": {"into": "elsewhere"}}]

    await importer.aggregate(pipeline)

    assert source.aggregate.call_args.args[0] == [{"$merge": {"into": "elsewhere"}}]


@pytest.mark.asyncio()
async def test_plain_aggregate_returns_documents(tracked, mock_collection, make_cursor):
    mock_collection.aggregate.return_value = make_cursor([{"_id": "p1"}])
    assert await tracked.aggregate([{"$match": {}}]) == [{"_id": "p1"}]
    mock_collection.find.assert_not_called()


# ---------------------------------------------------------------------------
# Pass-through
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_pass_through_methods(tracked, mock_collection):
    mock_collection.find_one = AsyncMock(return_value={"_id": "p1"})
    mock_collection.delete_one = AsyncMock(return_value="deleted")
    mock_collection.count_documents = AsyncMock(return_value=3)

    assert await tracked.find_one({"code": "A001"}) == {"_id": "p1"}
    assert await tracked.delete_one({"code": "A001"}) == "deleted"
    assert await tracked.count_documents({}) == 3
    tracked.find({"code": "A001"})
    mock_collection.find.assert_called_once_with({"code": "A001"})
