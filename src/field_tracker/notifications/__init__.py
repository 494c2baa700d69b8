"""Change notification: drain of pending changes and ledger appends."""

from __future__ import annotations

from field_tracker.notifications.coordinator import ChangeCoordinator
from field_tracker.notifications.ledger import LedgerWriter, build_ledger_operations

__all__ = [
    "ChangeCoordinator",
    "LedgerWriter",
    "build_ledger_operations",
]
