"""Exception hierarchy for field-tracker.

Configuration problems surface at registration time; update translation
problems surface from the pre-write hook before anything reaches the
database. Drain and callback failures are not wrapped: they propagate to
the caller of the triggering write unchanged.
"""


class FieldTrackerError(Exception):
    """Base class for every error raised by field-tracker."""


class TrackConfigurationError(FieldTrackerError):
    """A schema or track option declaration is invalid."""


class UnsupportedUpdateError(FieldTrackerError):
    """An update operator or query condition cannot be rewritten as a pipeline.

    Args:
        operator: The operator or condition that could not be translated.
        detail: Human-readable explanation.
    """

    def __init__(self, operator: str, detail: str = "") -> None:
        self.operator = operator
        message = f"Cannot translate {operator!r} into an update pipeline"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NotFoundError(FieldTrackerError):
    """A requested ledger entry does not exist."""
