"""Update consolidation.

Joins a caller's write with the shadow-info stages of the tracked fields it
touches. Object-style updates are first normalized into pipeline form;
pipeline updates and ``$merge`` ``whenMatched`` pipelines get the stages
appended at the end.
"""

from __future__ import annotations

from typing import Any

from field_tracker.core.models import TrackedField
from field_tracker.core.normalizer import (
    is_operator_update,
    replacement_to_pipeline,
    update_to_pipeline,
)
from field_tracker.core.paths import FieldPath
from field_tracker.core.projection import ELEMENT_VAR, build_change_stages, map_array, merge_at
from field_tracker.core.touch import touched_fields

# Temporary field holding the stored containers of nested shadow records
CARRIED_FIELD = "_trackedPrevious"


def _shadow_paths(field: TrackedField) -> list[FieldPath]:
    paths = [field.info_path]
    if field.embedded_history_path is not None:
        paths.append(field.embedded_history_path)
    return paths


def preserved_paths(fields: list[TrackedField]) -> list[FieldPath]:
    """Shadow paths a whole-document replacement must carry over."""
    return [path for field in fields for path in _shadow_paths(field)]


def carried_containers(fields: list[TrackedField]) -> list[str]:
    """Top-level fields holding shadow records below the root."""
    names: list[str] = []
    for field in fields:
        if len(field.array_ancestors) > 1:
            continue
        for path in _shadow_paths(field):
            if len(path) > 1 and path.segments[0] not in names:
                names.append(path.segments[0])
    return names


def _carry_into_array(array: FieldPath, relative: FieldPath) -> dict[str, Any]:
    """Give each new element the record of the stored element with the same ``_id``."""
    stored = f"${CARRIED_FIELD}.{array}"
    elem = f"$${ELEMENT_VAR}"
    previous = {
        "$arrayElemAt": [
            {
                "$filter": {
                    "input": {"$cond": [{"$isArray": stored}, stored, []]},
                    "as": "stored",
                    "cond": {"$eq": ["$$stored._id", f"{elem}._id"]},
                }
            },
            0,
        ]
    }
    carried = merge_at(
        elem, relative.parent, {relative.name: {"$ifNull": [f"{elem}.{relative}", f"$$previous.{relative}"]}}
    )
    matched = {
        "$and": [
            {"$ne": [{"$type": f"{elem}._id"}, "missing"]},
            {"$ne": [{"$type": f"$$previous.{relative}"}, "missing"]},
        ]
    }
    return map_array(
        array.ref, 0, {"$let": {"vars": {"previous": previous}, "in": {"$cond": [matched, carried, elem]}}}
    )


def carry_over_stages(fields: list[TrackedField]) -> list[dict[str, Any]]:
    """Stages restoring nested shadow records from :data:`CARRIED_FIELD`, then dropping it.

    Sub-document records come back when the new document still has the
    sub-document and does not supply the record itself. Array element
    records are matched on the element ``_id``; elements without one start
    over. Records below more than one array are not carried.
    """
    parents: dict[FieldPath, dict[str, str]] = {}
    array_stages: list[dict[str, Any]] = []
    for field in fields:
        if len(field.array_ancestors) > 1:
            continue
        for path in _shadow_paths(field):
            if len(path) == 1:
                continue
            if field.array_ancestors:
                array = field.array_ancestors[0]
                array_stages.append({"$set": {str(array): _carry_into_array(array, path.relative_to(array))}})
            else:
                parents.setdefault(path.parent, {})[path.name] = f"${CARRIED_FIELD}.{path}"
    stages: list[dict[str, Any]] = [
        {
            "$set": {
                str(parent): {
                    "$cond": [
                        {"$eq": [{"$type": parent.ref}, "object"]},
                        {"$mergeObjects": [records, parent.ref]},
                        parent.ref,
                    ]
                }
            }
        }
        for parent, records in parents.items()
    ]
    stages.extend(array_stages)
    if not stages:
        return []
    return [*stages, {"$unset": CARRIED_FIELD}]


def replace_document(fields: list[TrackedField], replacement: dict[str, Any]) -> list[dict[str, Any]]:
    """Pipeline replacing the document while keeping every carried shadow record."""
    containers = carried_containers(fields)
    stash = (CARRIED_FIELD, containers) if containers else None
    return replacement_to_pipeline(replacement, preserved_paths(fields), stash) + carry_over_stages(fields)


def consolidate_update(
    fields: list[TrackedField],
    filter: dict[str, Any] | None,
    update: dict[str, Any] | list[dict[str, Any]],
    array_filters: list[dict[str, Any]] | None = None,
    origin: Any = None,
) -> list[dict[str, Any]] | None:
    """Rewrite ``update`` so it also maintains the touched fields' shadow records.

    Args:
        fields: Tracked fields of the collection.
        filter: The write's filter.
        update: Object-style update, replacement document, or pipeline.
        array_filters: The write's array filters, folded into the pipeline.
        origin: Call-level origin.

    Returns:
        The consolidated pipeline, or None when no tracked field is touched
        and the caller's update should be sent unchanged.
    """
    touched = touched_fields(fields, update)
    if not touched:
        return None
    stages = build_change_stages(touched, origin)
    if not stages:
        return None

    if isinstance(update, list):
        pipeline = list(update)
    elif not is_operator_update(update):
        pipeline = replace_document(fields, update)
    else:
        pipeline = update_to_pipeline(filter, update, array_filters)
    return pipeline + stages


# -----------------------------------------------------------------------------
# $merge aggregation
# -----------------------------------------------------------------------------


def get_merge_stage(pipeline: list[dict[str, Any]]) -> dict[str, Any] | None:
    """The ``$merge`` specification closing ``pipeline``, if any."""
    if not pipeline:
        return None
    last = pipeline[-1]
    merge = last.get("$merge") if isinstance(last, dict) else None
    if isinstance(merge, str):
        merge = {"into": merge}
        last["$merge"] = merge
    return merge


def get_merge_target(merge: dict[str, Any]) -> str:
    into = merge["into"]
    return into if isinstance(into, str) else into["coll"]


def add_merge_update_stages(
    merge: dict[str, Any],
    stages: list[dict[str, Any]],
    fields: list[TrackedField],
) -> bool:
    """Append ``stages`` to the ``whenMatched`` pipeline of a ``$merge``, in place.

    The ``"merge"`` (also the server default) and ``"replace"`` shorthands
    are expanded into their explicit pipelines first; ``"replace"`` keeps the
    target's shadow records as a replacement update does. ``"keepExisting"``
    and ``"fail"`` never modify matched documents and are left alone.

    Returns:
        True when the merge was rewritten.
    """
    when_matched = merge.get("whenMatched", "merge")
    if isinstance(when_matched, list):
        merge["whenMatched"] = [*when_matched, *stages]
        return True
    if when_matched == "merge":
        merge["whenMatched"] = [
            {"$replaceRoot": {"newRoot": {"$mergeObjects": ["$$ROOT", "$$new"]}}},
            *stages,
        ]
        return True
    if when_matched == "replace":
        kept: dict[str, Any] = {
            path.name: f"$$ROOT.{path}"
            for path in preserved_paths(fields)
            if len(path) == 1
        }
        containers = carried_containers(fields)
        if containers:
            kept[CARRIED_FIELD] = {name: f"$$ROOT.{name}" for name in containers}
        new_root: Any = {"$mergeObjects": [kept, "$$new"]} if kept else "$$new"
        merge["whenMatched"] = [{"$replaceRoot": {"newRoot": new_root}}, *carry_over_stages(fields), *stages]
        return True
    return False
