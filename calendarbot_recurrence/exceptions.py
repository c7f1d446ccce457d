"""Exception hierarchy for the recurring schedule engine.

Every error the engine raises derives from RecurrenceEngineError so callers can
handle engine failures for one series without affecting the expansion of others.
None of these conditions is process-fatal.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class RecurrenceEngineError(Exception):
    """Base exception for all recurrence engine errors."""


class InvalidRule(RecurrenceEngineError, ValueError):
    """Recurrence rule is malformed or describes an invalid combination.

    Raised when:
    - A rule string cannot be parsed (unknown key, bad FREQ, bad integer)
    - COUNT and UNTIL are both present
    - A rule with interval < 1 is strictly encoded before storage

    An absent rule string is not an error: decode() returns None for it.
    """


class StorageUnavailable(RecurrenceEngineError):
    """The storage collaborator failed to read or write series data.

    The materializer fails closed on this error: no occurrences are returned
    for the affected series rather than unoverridden ones.
    """

    def __init__(self, message: str, series_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.series_id = series_id


class SplitIncomplete(RecurrenceEngineError):
    """A series split (or future-cancel) did not complete atomically.

    Surfaced to the caller and never retried automatically.
    """

    def __init__(
        self,
        message: str,
        original_id: Optional[str] = None,
        boundary_instant: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.original_id = original_id
        self.boundary_instant = boundary_instant


class OccurrenceNotFound(RecurrenceEngineError):
    """An edit targets an instant the series does not actually produce."""

    def __init__(
        self,
        message: str,
        series_id: Optional[str] = None,
        occurrence_instant: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.series_id = series_id
        self.occurrence_instant = occurrence_instant


class SeriesNotFound(RecurrenceEngineError):
    """No series template exists for the requested id."""

    def __init__(self, series_id: str) -> None:
        super().__init__(f"Series not found: {series_id}")
        self.series_id = series_id


class ExpansionLimitExceeded(RecurrenceEngineError):
    """A window holds more occurrences than the configured expansion guard.

    Raised instead of returning a truncated expansion, so callers never see a
    partial window as if it were complete.
    """

    def __init__(self, message: str, limit: Optional[int] = None) -> None:
        super().__init__(message)
        self.limit = limit
