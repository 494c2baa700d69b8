"""Pydantic response schemas for the ledger API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from field_tracker.core.models import LedgerRow


def _json_id(value: Any) -> Any:
    """Render ObjectIds and other BSON ids as strings, leave plain values alone."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class LedgerRowResponse(BaseModel):
    """One ledger row.

    Attributes:
        entity_id: ``_id`` of the tracked document.
        item_id: ``_id`` of the array element or sub-document, if any.
        path: Dotted path of the tracked field.
        start: When the value came into force.
        end: When it was replaced; None while in force.
        value: The recorded value.
        previous_value: Value before this one.
        next_value: Value that replaced this one.
        duration_ms: Time the value stayed in force, once closed.
        origin: Who or what made the change.
        metadata: Metadata attached to the change.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: Any
    item_id: Any = None
    path: str
    start: datetime
    end: datetime | None = None
    value: Any = None
    previous_value: Any = None
    next_value: Any = None
    duration_ms: int | None = Field(default=None, description="Milliseconds the value stayed in force")
    origin: Any = None
    metadata: Any = None

    @classmethod
    def from_row(cls, row: LedgerRow) -> "LedgerRowResponse":
        return cls(
            entity_id=_json_id(row.entity_id),
            item_id=_json_id(row.item_id),
            path=row.path,
            start=row.start,
            end=row.end,
            value=row.value,
            previous_value=row.previous_value,
            next_value=row.next_value,
            duration_ms=row.duration,
            origin=row.origin,
            metadata=row.metadata,
        )


class LedgerHistoryResponse(BaseModel):
    """Value chain of one tracked field of one document."""

    model_config = ConfigDict(frozen=True)

    collection: str
    entity_id: str
    path: str
    rows: list[LedgerRowResponse]
    total: int
