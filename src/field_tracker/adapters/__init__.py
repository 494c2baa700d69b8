"""Adapters: integration of the tracking engine with the motor driver.

Contains:
- collection.py: TrackedCollection, the write-path hooks around one collection
- registry.py  : FieldTracker, the registry of tracked collections
"""

__all__: list[str] = []
