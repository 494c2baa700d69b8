"""Shadow-info projection builder.

Builds the ``$set`` stages appended to a write's update pipeline. For each
tracked field the stage compares the field's new value with the value
recorded in its shadow-info record and, only when they differ, replaces
the record with a fresh one (previous value and timestamp rolled over,
change-pending flag raised). Unchanged records are written back verbatim.

Array-nested fields are rewritten element by element so that elements
whose value did not change keep a byte-identical shadow record.

Also provides the client-side stamp applied to documents before insert.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Iterable

from field_tracker.core.models import ShadowInfo, TrackedField
from field_tracker.core.normalizer import literal
from field_tracker.core.paths import MISSING, FieldPath

# Variable bound to the current array element inside $map
ELEMENT_VAR = "elemt"


def changed_condition(value_ref: str, info_ref: str) -> dict[str, Any]:
    """Native deep inequality between the current value and the recorded one."""
    return {"$ne": [f"{info_ref}.value", value_ref]}


def build_field_projection(value_ref: str, info_ref: str, origin: Any, pending: bool) -> dict[str, Any]:
    """Conditional expression producing the new shadow-info record.

    Args:
        value_ref: Reference to the tracked value (``$status``, ``$$elemt.status``).
        info_ref: Reference to its shadow-info record.
        origin: Resolved origin, omitted from the record when None.
        pending: Value of the change-pending flag on a change.
    """
    changed: dict[str, Any] = {
        "value": value_ref,
        "updatedAt": "$$NOW",
        "previousValue": f"{info_ref}.value",
        "previousUpdatedAt": f"{info_ref}.updatedAt",
    }
    if origin is not None:
        changed["origin"] = literal(origin)
    changed["changePending"] = pending
    return {
        "$cond": {
            "if": changed_condition(value_ref, info_ref),
            "then": changed,
            "else": info_ref,
        }
    }


def build_history_projection(history_ref: str, value_ref: str, info_ref: str, origin: Any) -> dict[str, Any]:
    """Append ``[timestamp_ms, value, origin]`` to embedded history on change."""
    entry = [{"$toLong": "$$NOW"}, value_ref, literal(origin)]
    return {
        "$concatArrays": [
            {"$ifNull": [history_ref, []]},
            {"$cond": {"if": changed_condition(value_ref, info_ref), "then": [entry], "else": []}},
        ]
    }


def merge_at(base_ref: str, parent: FieldPath, values: dict[str, Any]) -> dict[str, Any]:
    if parent.is_root:
        return {"$mergeObjects": [base_ref, values]}
    head = parent.segments[0]
    return {
        "$mergeObjects": [
            base_ref,
            {head: merge_at(f"{base_ref}.{head}", FieldPath(parent.segments[1:]), values)},
        ]
    }


def build_scalar_update(field: TrackedField, origin: Any) -> dict[str, Any]:
    """``$set`` entries for a field outside any array."""
    update = {
        str(field.info_path): build_field_projection(
            field.path.ref, field.info_path.ref, origin, field.notifies
        )
    }
    history = field.embedded_history_path
    if history is not None:
        update[str(history)] = build_history_projection(
            history.ref, field.path.ref, field.info_path.ref, origin
        )
    return update


def element_var(depth: int) -> str:
    """``$map`` variable bound at array nesting ``depth`` (0 is outermost)."""
    return ELEMENT_VAR if depth == 0 else f"{ELEMENT_VAR}{depth}"


def map_array(array_ref: str, depth: int, per_element: Any) -> dict[str, Any]:
    mapped = {"$map": {"input": array_ref, "as": element_var(depth), "in": per_element}}
    return {"$cond": [{"$isArray": array_ref}, mapped, array_ref]}


def build_array_update(field: TrackedField, origin: Any) -> dict[str, Any]:
    """``$set`` entry rewriting the outermost enclosing array of an array-nested field.

    Every array ancestor gets its own ``$map``. Only the innermost one
    compares values, so elements whose value did not change come out
    identical at every level. Fields below more than one array keep their
    record current but never raise the pending flag.
    """
    ancestors = field.array_ancestors
    assert ancestors
    depth = len(ancestors) - 1
    elem_ref = f"$${element_var(depth)}"
    value_ref = f"{elem_ref}.{field.element_path}"
    info_rel = field.element_info_path
    info_ref = f"{elem_ref}.{info_rel}"
    pending = field.notifies and field.supported

    values: dict[str, Any] = {
        info_rel.name: build_field_projection(value_ref, info_ref, origin, pending)
    }
    if field.historize_embedded_field is not None:
        history_ref = f"{elem_ref}.{info_rel.parent.child(field.historize_embedded_field)}"
        values[field.historize_embedded_field] = build_history_projection(
            history_ref, value_ref, info_ref, origin
        )

    expression: dict[str, Any] = {
        "$cond": {
            "if": changed_condition(value_ref, info_ref),
            "then": merge_at(elem_ref, info_rel.parent, values),
            "else": elem_ref,
        }
    }
    for level in range(depth, 0, -1):
        relative = ancestors[level].relative_to(ancestors[level - 1])
        outer_ref = f"$${element_var(level - 1)}"
        inner = map_array(f"{outer_ref}.{relative}", level, expression)
        expression = merge_at(outer_ref, relative.parent, {relative.name: inner})
    return {str(ancestors[0]): map_array(ancestors[0].ref, 0, expression)}


def build_change_stages(fields: Iterable[TrackedField], origin: Any = None) -> list[dict[str, Any]]:
    """Pipeline stages maintaining the shadow records of ``fields``.

    Scalar fields share one ``$set`` stage; each array-nested field gets its
    own stage so fields sharing an array never collide on the same key.
    Fields nested in more than one array are maintained without notification.

    Args:
        fields: Tracked fields touched by the write.
        origin: Call-level origin; overrides field and plugin origins.
    """
    scalar: dict[str, Any] = {}
    stages: list[dict[str, Any]] = []
    for field in fields:
        resolved = field.resolve_origin(origin)
        if field.array_path is None:
            scalar.update(build_scalar_update(field, resolved))
        else:
            stages.append({"$set": build_array_update(field, resolved)})
    if scalar:
        stages.insert(0, {"$set": scalar})
    return stages


# -----------------------------------------------------------------------------
# Insert-time stamping
# -----------------------------------------------------------------------------


def _stamp(container: Any, path: FieldPath, field: TrackedField, origin: Any, now: datetime) -> None:
    if isinstance(container, list):
        for element in container:
            _stamp(element, path, field, origin, now)
        return
    if not isinstance(container, dict):
        return

    head = path.segments[0]
    if len(path) > 1:
        _stamp(container.get(head), FieldPath(path.segments[1:]), field, origin, now)
        return

    value = container.get(head, MISSING)
    info = ShadowInfo(updated_at=now)
    if value is not MISSING:
        info.value = value
    if origin is not None:
        info.origin = origin
    if field.notifies and field.supported:
        info.change_pending = True
    container[field.info_path.name] = info.to_document()

    if field.historize_embedded_field is not None:
        container[field.historize_embedded_field] = [
            [int(now.timestamp() * 1000), None if value is MISSING else value, origin]
        ]


def stamp_initial_info(
    document: dict[str, Any],
    fields: Iterable[TrackedField],
    origin: Any = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Write the initial shadow-info record of every tracked field, in place.

    Walks through any number of enclosing arrays. No previous value is set.

    Returns:
        The same document, for chaining.
    """
    stamped_at = now or datetime.now(UTC)
    for field in fields:
        _stamp(document, field.path, field, field.resolve_origin(origin), stamped_at)
    return document

