"""Domain models for field tracking.

Pydantic models for the registration-time options and descriptors and for
the records read back from MongoDB (shadow info, change records, ledger
rows). Persisted documents use camelCase keys; the models expose
snake_case attributes with camelCase aliases.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from field_tracker.core.paths import FieldPath


class TrackOptions(BaseModel):
    """Per-field tracking options declared on the schema.

    Attributes:
        origin: Zero-argument supplier (or constant) stamped as the change origin
            when the write call does not supply one.
        on_update: Callback receiving the batch of FieldChange for this field,
            optionally followed by the active session.
        metadata: Static values or aggregation expressions (``"$code"``) merged
            into every emitted change record.
        historize_col: Collection receiving one ledger row per change.
        historize_field: Sibling array field receiving inline
            ``[timestamp_ms, value, origin]`` history tuples.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    origin: Any = None
    on_update: Callable[..., Any] | None = None
    metadata: dict[str, Any] | None = None
    historize_col: str | None = None
    historize_field: str | None = None


class TrackedField(BaseModel):
    """Resolved descriptor of one tracked field. Immutable once built.

    Attributes:
        path: Dotted path of the tracked value.
        info_path: Path of the shadow-info record (``path + "Info"``).
        array_ancestors: Array-valued paths between the root and ``path``,
            outermost first.
        value_type: Declared type of the tracked value.
        enum: Declared allowed values, if any.
        origin: Resolved origin supplier (field-level, else plugin-level).
        on_change: Change callback, if any.
        metadata: Metadata merged into change records.
        historize_target: Ledger collection name, if any.
        historize_embedded_field: Sibling embedded-history field name, if any.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    path: FieldPath
    info_path: FieldPath
    array_ancestors: tuple[FieldPath, ...] = ()
    value_type: Any = object
    enum: tuple[Any, ...] | None = None
    origin: Any = None
    on_change: Callable[..., Any] | None = None
    metadata: dict[str, Any] | None = None
    historize_target: str | None = None
    historize_embedded_field: str | None = None

    @property
    def notifies(self) -> bool:
        """True when a drain is needed: a callback or a ledger target is registered."""
        return self.on_change is not None or self.historize_target is not None

    @property
    def supported(self) -> bool:
        """Change notification handles at most one enclosing array."""
        return len(self.array_ancestors) <= 1

    @property
    def array_path(self) -> FieldPath | None:
        return self.array_ancestors[-1] if self.array_ancestors else None

    @property
    def element_path(self) -> FieldPath:
        """Path of the value relative to its array element (or to the root)."""
        if self.array_path is None:
            return self.path
        return self.path.relative_to(self.array_path)

    @property
    def element_info_path(self) -> FieldPath:
        if self.array_path is None:
            return self.info_path
        return self.info_path.relative_to(self.array_path)

    @property
    def embedded_history_path(self) -> FieldPath | None:
        if self.historize_embedded_field is None:
            return None
        return self.path.sibling(self.historize_embedded_field)

    def resolve_origin(self, explicit: Any = None) -> Any:
        """Call-level origin, else this field's supplier, else None."""
        if explicit is not None:
            return explicit
        if callable(self.origin):
            return self.origin()
        return self.origin


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True, extra="ignore")


class ShadowInfo(_CamelModel):
    """Shadow-info record stored next to a tracked field."""

    value: Any = None
    previous_value: Any = Field(default=None, alias="previousValue")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    previous_updated_at: datetime | None = Field(default=None, alias="previousUpdatedAt")
    origin: Any = None
    change_pending: bool | None = Field(default=None, alias="changePending")

    def to_document(self) -> dict[str, Any]:
        """Persisted form: camelCase keys, only explicitly set attributes."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class ChangeRecord(ShadowInfo):
    """A drained shadow-info record, enriched for notification."""

    item_id: Any = Field(default=None, alias="itemId")
    metadata: Any = None

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set


class FieldChange(BaseModel):
    """One entry of a change-callback batch."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    document_id: Any
    path: str
    change: ChangeRecord


class LedgerRow(_CamelModel):
    """One row of a historize ledger collection."""

    id: Any = Field(default=None, alias="_id")
    entity_id: Any = Field(alias="entityId")
    item_id: Any = Field(default=None, alias="itemId")
    path: str
    start: datetime
    end: datetime | None = None
    value: Any = None
    previous_value: Any = Field(default=None, alias="previousValue")
    next_value: Any = Field(default=None, alias="nextValue")
    duration: int | None = None
    origin: Any = None
    metadata: Any = None


@dataclass
class WriteContext:
    """Per-operation state threaded explicitly through one write's hook chain.

    Attributes:
        origin: Call-level origin; takes precedence over field and plugin origins.
        session: Caller-supplied client session, propagated to every store call.
        skip: Disables every tracking hook for this operation.
        operation_id: Correlation id bound onto log events of this operation.
    """

    origin: Any = None
    session: Any = None
    skip: bool = False
    operation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
