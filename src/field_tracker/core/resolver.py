"""Tracked-field resolution.

Walks a DocumentSchema and produces the flat list of TrackedField
descriptors, then makes sure every descriptor's shadow-info sibling (and
embedded-history sibling, when configured) exists in the schema.

Recursion rules:
- a marked node is tracked as a unit, whatever its kind;
- an unmarked sub-document is descended into;
- an unmarked array of sub-documents is descended into with the array
  appended to the field's array ancestors.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from field_tracker.core.models import TrackedField, TrackOptions
from field_tracker.core.paths import FieldPath
from field_tracker.core.schema import (
    ArrayField,
    DocumentSchema,
    EmbeddedField,
    ScalarField,
    SchemaNode,
)
from field_tracker.errors import TrackConfigurationError
from field_tracker.observability import get_logger

logger = get_logger(__name__)


def _track_options(node: SchemaNode) -> TrackOptions | None:
    if node.track is None or node.track is False:
        return None
    if node.track is True:
        return TrackOptions()
    if isinstance(node.track, TrackOptions):
        return node.track
    raise TrackConfigurationError(
        f"Invalid track declaration on {node.name!r}: expected True or TrackOptions"
    )


def _build_field(
    node: SchemaNode,
    path: FieldPath,
    arrays: tuple[FieldPath, ...],
    options: TrackOptions,
    default_origin: Any,
    info_suffix: str,
) -> TrackedField:
    value_type: Any = object
    enum: tuple[Any, ...] | None = None
    if isinstance(node, ScalarField):
        value_type = node.type
        enum = tuple(node.enum) if node.enum is not None else None
    elif isinstance(node, ArrayField):
        value_type = list
    else:
        value_type = dict

    if options.on_update is not None and not callable(options.on_update):
        raise TrackConfigurationError(f"on_update of {path} is not callable")

    return TrackedField(
        path=path,
        info_path=path.info(info_suffix),
        array_ancestors=arrays,
        value_type=value_type,
        enum=enum,
        origin=options.origin if options.origin is not None else default_origin,
        on_change=options.on_update,
        metadata=options.metadata,
        historize_target=options.historize_col,
        historize_embedded_field=options.historize_field,
    )


def _collect(
    nodes: list[SchemaNode],
    parent: FieldPath,
    arrays: tuple[FieldPath, ...],
    default_origin: Any,
    info_suffix: str,
) -> list[TrackedField]:
    fields: list[TrackedField] = []
    for node in list(nodes):
        path = parent.child(node.name)
        options = _track_options(node)
        if options is not None:
            fields.append(_build_field(node, path, arrays, options, default_origin, info_suffix))
        elif isinstance(node, EmbeddedField):
            fields.extend(_collect(node.children, path, arrays, default_origin, info_suffix))
        elif isinstance(node, ArrayField) and node.children is not None:
            fields.extend(
                _collect(node.children, path, arrays + (path,), default_origin, info_suffix)
            )
    return fields


def resolve_tracked_fields(
    schema: DocumentSchema,
    default_origin: Callable[[], Any] | Any = None,
    info_suffix: str = "Info",
) -> list[TrackedField]:
    """Produce the tracked-field descriptors of a schema.

    Fields nested in more than one array keep their shadow record at insert
    time but are logged and left out of change processing.

    Args:
        schema: The collection schema.
        default_origin: Plugin-level origin applied to fields declaring none.
        info_suffix: Suffix of the shadow-info sibling.

    Returns:
        Descriptors in schema declaration order.
    """
    fields = _collect(schema.fields, FieldPath(()), (), default_origin, info_suffix)
    for tracked in fields:
        if not tracked.supported:
            logger.warning(
                "Tracked field nested in more than one array, change notification disabled",
                path=str(tracked.path),
                arrays=[str(a) for a in tracked.array_ancestors],
            )
        else:
            logger.debug(
                "Resolved tracked field",
                path=str(tracked.path),
                info_path=str(tracked.info_path),
                notifies=tracked.notifies,
            )
    return fields


def ensure_shadow_paths(schema: DocumentSchema, fields: list[TrackedField]) -> None:
    """Add missing shadow-info and embedded-history siblings to the schema.

    Idempotent: paths already declared are left untouched.
    """
    for tracked in fields:
        enum: list[Any] | None = None
        if tracked.enum is not None:
            enum = list(tracked.enum)
            if None not in enum:
                enum.append(None)
        info = EmbeddedField(
            name=tracked.info_path.name,
            children=[
                ScalarField("value", type=tracked.value_type, enum=enum, indexed=True),
                ScalarField("previousValue", type=tracked.value_type, enum=enum),
                ScalarField("updatedAt", type=datetime),
                ScalarField("previousUpdatedAt", type=datetime),
                ScalarField("origin"),
                ScalarField("changePending", type=bool),
            ],
        )
        if schema.add_path(tracked.info_path, info):
            logger.debug("Added shadow-info path", path=str(tracked.info_path))

        history_path = tracked.embedded_history_path
        if history_path is not None and schema.add_path(
            history_path, ArrayField(history_path.name, item_type=list)
        ):
            logger.debug("Added embedded history path", path=str(history_path))
