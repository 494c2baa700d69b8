"""Touch detection: does a write reference a tracked field?

Decides purely from the update payload, object-style or pipeline-style,
whether a tracked path may be modified. The detector leans toward false
positives: a false positive only costs a no-op projection, while a false
negative leaves a shadow record stale.
"""

from __future__ import annotations

from typing import Any, Iterable

from field_tracker.core.models import TrackedField
from field_tracker.core.paths import MISSING, FieldPath, get_path

# Operators whose argument is a {path: value} document
UPDATE_BUCKETS: tuple[str, ...] = (
    "$set",
    "$setOnInsert",
    "$addFields",
    "$inc",
    "$pull",
    "$push",
    "$unset",
    "$addToSet",
    "$pop",
    "$pullAll",
    "$mul",
    "$min",
    "$max",
    "$currentDate",
)

# Pipeline stages that may rewrite any part of the document
_WHOLE_DOCUMENT_STAGES = frozenset({"$replaceRoot", "$replaceWith", "$project", "$unset"})


def _bucket_touches(bucket: Any, path: FieldPath) -> bool:
    if not isinstance(bucket, dict) or not bucket:
        return False

    dotted = str(path)
    if bucket.get(dotted, MISSING) is not MISSING:
        return True
    if get_path(bucket, path) is not MISSING:
        return True

    for key in bucket:
        if key.startswith("$"):
            continue
        stripped = FieldPath.parse(key).strip_positional()
        if stripped.is_root:
            continue
        # whole sub-document replaced, or a deeper part of the tracked value
        if stripped.is_prefix_of(path) or path.is_prefix_of(stripped):
            return True

    for prefix in path.prefixes():
        if bucket.get(str(prefix), MISSING) is not MISSING:
            return True
    return False


def _rename_touches(rename: Any, path: FieldPath) -> bool:
    if not isinstance(rename, dict):
        return False
    mirrored = {target: True for target in rename.values() if isinstance(target, str)}
    return _bucket_touches(rename, path) or _bucket_touches(mirrored, path)


def touches(update: dict[str, Any] | list[dict[str, Any]], path: str | FieldPath) -> bool:
    """Return True when ``update`` may modify ``path``.

    Args:
        update: An object-style update document, a replacement document, or
            a list of pipeline stages.
        path: The tracked path.
    """
    field_path = FieldPath.parse(path)
    stages = update if isinstance(update, list) else [update]
    for stage in stages:
        if not isinstance(stage, dict):
            continue
        if isinstance(update, list) and _WHOLE_DOCUMENT_STAGES.intersection(stage):
            return True
        # bare keys: replacement documents and pipeline $set-style stages
        if _bucket_touches(stage, field_path):
            return True
        if any(_bucket_touches(stage.get(op), field_path) for op in UPDATE_BUCKETS):
            return True
        if _rename_touches(stage.get("$rename"), field_path):
            return True
    return False


def touched_fields(
    fields: Iterable[TrackedField],
    update: dict[str, Any] | list[dict[str, Any]],
) -> list[TrackedField]:
    """Filter ``fields`` down to those ``update`` touches."""
    return [tracked for tracked in fields if touches(update, tracked.path)]
