"""Dotted document paths.

FieldPath centralizes segment decomposition, prefix tests and positional
marker stripping so the touch detector, the normalizer and the projection
builder never concatenate raw strings themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

# $, $[] and $[identifier]
_POSITIONAL_SEGMENT = re.compile(r"^\$(\[[^\]]*\])?$")


class _Missing:
    """Sentinel type for a path that does not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def is_positional(segment: str) -> bool:
    """Return True for the ``$``, ``$[]`` and ``$[id]`` update markers."""
    return bool(_POSITIONAL_SEGMENT.match(segment))


@dataclass(frozen=True)
class FieldPath:
    """An immutable dotted path such as ``array.status``.

    Attributes:
        segments: The path split on dots.
    """

    segments: tuple[str, ...]

    @classmethod
    def parse(cls, dotted: str | FieldPath) -> FieldPath:
        """Build a FieldPath from a dotted string (FieldPath passes through)."""
        if isinstance(dotted, FieldPath):
            return dotted
        if not dotted:
            return cls(())
        return cls(tuple(dotted.split(".")))

    def __str__(self) -> str:
        return ".".join(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def name(self) -> str:
        """Last segment."""
        return self.segments[-1] if self.segments else ""

    @property
    def parent(self) -> FieldPath:
        """Path without its last segment (empty for top-level paths)."""
        return FieldPath(self.segments[:-1])

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def ref(self) -> str:
        """Aggregation field reference, e.g. ``$array.status``."""
        return f"${self}"

    @property
    def projection_key(self) -> str:
        """Flat key usable as a projection output field."""
        return "_".join(self.segments)

    def child(self, *segments: str) -> FieldPath:
        """Append one or more segments (each may itself be dotted)."""
        extra: list[str] = []
        for segment in segments:
            extra.extend(FieldPath.parse(segment).segments)
        return FieldPath(self.segments + tuple(extra))

    def sibling(self, name: str) -> FieldPath:
        """Path sharing this path's parent, ending in ``name``."""
        return self.parent.child(name)

    def info(self, suffix: str = "Info") -> FieldPath:
        """Shadow-info sibling path, e.g. ``array.statusInfo``."""
        return FieldPath(self.segments[:-1] + (f"{self.name}{suffix}",))

    def relative_to(self, prefix: FieldPath) -> FieldPath:
        """Strip a leading prefix. The prefix must match."""
        if not prefix.is_prefix_of(self):
            raise ValueError(f"{prefix} is not a prefix of {self}")
        return FieldPath(self.segments[len(prefix.segments):])

    def is_prefix_of(self, other: FieldPath, strict: bool = False) -> bool:
        """Segment-wise prefix test (``a.b`` is a prefix of ``a.b.c``, not of ``a.bc``)."""
        if strict and len(self.segments) >= len(other.segments):
            return False
        return other.segments[: len(self.segments)] == self.segments

    def prefixes(self) -> list[FieldPath]:
        """Strict prefixes, from the most specific to the root-most segment."""
        return [FieldPath(self.segments[:i]) for i in range(len(self.segments) - 1, 0, -1)]

    def strip_positional(self) -> FieldPath:
        """Drop ``$``, ``$[]``, ``$[id]`` and numeric index segments."""
        return FieldPath(
            tuple(s for s in self.segments if not is_positional(s) and not s.isdigit())
        )

    def has_positional(self) -> bool:
        return any(is_positional(s) or s.isdigit() for s in self.segments)


def get_path(obj: Any, path: str | FieldPath) -> Any:
    """Resolve a dotted path through nested dicts and lists.

    Numeric segments index into lists. Returns MISSING when any step fails,
    so an explicit ``None`` value stays distinguishable from an absent one.
    """
    current = obj
    for segment in FieldPath.parse(path).segments:
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current
