"""Historize ledger read side.

Answers what value a tracked field held, and for how long, from the
append-only ledger collections written on every change.
"""

from __future__ import annotations

from field_tracker.ledger.reader import LedgerReader

__all__ = ["LedgerReader"]
