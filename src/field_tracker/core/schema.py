"""Typed document schema tree.

A collection's shape is declared once at registration as a tree of
ScalarField, EmbeddedField and ArrayField nodes. The field resolver walks
it and adds the shadow-info and embedded-history siblings of tracked
fields; the registry reads the indexed paths from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from field_tracker.core.models import TrackOptions
from field_tracker.core.paths import FieldPath
from field_tracker.errors import TrackConfigurationError

TrackDeclaration = Union[bool, TrackOptions, None]


@dataclass
class ScalarField:
    """A leaf value (string, number, date, mixed ...).

    Attributes:
        name: Key of the field inside its parent document.
        type: Python type used for documentation and shadow typing.
        enum: Allowed values, if restricted.
        track: True or TrackOptions to maintain a shadow-info record.
        indexed: Whether FieldTracker.ensure_indexes() creates an index on this path.
    """

    name: str
    type: Any = object
    enum: list[Any] | None = None
    track: TrackDeclaration = None
    indexed: bool = False


@dataclass
class EmbeddedField:
    """A nested sub-document with its own children."""

    name: str
    children: list[SchemaNode] = field(default_factory=list)
    track: TrackDeclaration = None


@dataclass
class ArrayField:
    """An array, either of scalars (``item_type``) or of sub-documents (``children``)."""

    name: str
    item_type: Any = object
    children: list[SchemaNode] | None = None
    track: TrackDeclaration = None


SchemaNode = Union[ScalarField, EmbeddedField, ArrayField]


def _children_of(node: SchemaNode | DocumentSchema) -> list[SchemaNode] | None:
    if isinstance(node, DocumentSchema):
        return node.fields
    if isinstance(node, EmbeddedField):
        return node.children
    if isinstance(node, ArrayField):
        return node.children
    return None


@dataclass
class DocumentSchema:
    """Root of a collection schema."""

    fields: list[SchemaNode] = field(default_factory=list)

    def path(self, dotted: str | FieldPath) -> SchemaNode | None:
        """Return the node at a dotted path, descending through arrays of sub-documents."""
        container: SchemaNode | DocumentSchema = self
        node: SchemaNode | None = None
        for segment in FieldPath.parse(dotted).segments:
            children = _children_of(container)
            if children is None:
                return None
            node = next((child for child in children if child.name == segment), None)
            if node is None:
                return None
            container = node
        return node

    def indexed_paths(self) -> list[FieldPath]:
        """Paths of every scalar declared ``indexed``, in declaration order."""
        found: list[FieldPath] = []

        def walk(container: SchemaNode | DocumentSchema, prefix: FieldPath) -> None:
            for child in _children_of(container) or []:
                path = prefix.child(child.name)
                if isinstance(child, ScalarField):
                    if child.indexed:
                        found.append(path)
                else:
                    walk(child, path)

        walk(self, FieldPath(()))
        return found

    def add_path(self, dotted: str | FieldPath, node: SchemaNode) -> bool:
        """Add ``node`` at ``dotted`` unless a node already lives there.

        Returns:
            True when the node was added, False when the path already existed.

        Raises:
            TrackConfigurationError: If the parent path is not a container.
        """
        path = FieldPath.parse(dotted)
        if self.path(path) is not None:
            return False
        parent: SchemaNode | DocumentSchema | None = (
            self if path.parent.is_root else self.path(path.parent)
        )
        children = _children_of(parent) if parent is not None else None
        if children is None:
            raise TrackConfigurationError(f"Cannot add {path}: {path.parent} is not a document")
        node.name = path.name
        children.append(node)
        return True
