"""Storage contract the engine reaches persistence through."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..exceptions import SplitIncomplete
from ..models import (
    OccurrenceCompletion,
    OccurrenceOverride,
    RecurrenceRule,
    SeriesSplit,
    SeriesTemplate,
    TemplatePayload,
    TimeWindow,
)


class OccurrenceStore(ABC):
    """Narrow async storage interface for series templates and their side tables.

    Side-table rows (overrides, exceptions, completions) are keyed by
    (series_id, occurrence_instant) where the instant is the occurrence's
    original scheduled start. An override and an exception never coexist at
    the same key. Deleting a template deletes its side-table rows.

    Implementations raise their own errors; the engine translates them.
    """

    # Templates

    @abstractmethod
    async def load_template(self, series_id: str) -> SeriesTemplate:
        """Return the template for series_id.

        Raises:
            SeriesNotFound: If no such series exists
        """

    @abstractmethod
    async def save_template(self, template: SeriesTemplate) -> None:
        """Insert or replace a template."""

    @abstractmethod
    async def delete_template(self, series_id: str) -> None:
        """Delete a template and every side-table row that belongs to it."""

    # Window-bounded reads

    @abstractmethod
    async def fetch_overrides(self, series_id: str, window: TimeWindow) -> list[OccurrenceOverride]:
        """Overrides whose key falls inside window (inclusive)."""

    @abstractmethod
    async def fetch_exceptions(self, series_id: str, window: TimeWindow) -> list[datetime]:
        """Excepted instants inside window (inclusive)."""

    @abstractmethod
    async def fetch_completions(
        self, series_id: str, window: TimeWindow
    ) -> list[OccurrenceCompletion]:
        """Completions whose key falls inside window (inclusive)."""

    # Side-table writes

    @abstractmethod
    async def upsert_override(self, override: OccurrenceOverride) -> None:
        """Insert or replace an override; removes an exception at the same key."""

    @abstractmethod
    async def upsert_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        """Record an exception; removes an override at the same key."""

    @abstractmethod
    async def delete_override(self, series_id: str, occurrence_instant: datetime) -> None:
        """Delete an override if present."""

    @abstractmethod
    async def delete_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        """Delete an exception if present."""

    @abstractmethod
    async def upsert_completion(self, completion: OccurrenceCompletion) -> None:
        """Insert or replace a completion."""

    @abstractmethod
    async def delete_completion(self, series_id: str, occurrence_instant: datetime) -> None:
        """Delete a completion if present."""

    # Atomic multi-row operations

    @abstractmethod
    async def split_series(self, split: SeriesSplit) -> None:
        """Apply a series split as one atomic unit.

        Writes the termination of split.truncated_original onto the stored
        original, inserts split.new_template and moves every side-table row of
        the original keyed at or after split.reparent_from to the new series.
        Either all of it happens or none of it does.

        Raises:
            SplitIncomplete: If the stored original no longer matches
                split.expected_rule / split.expected_fields
        """

    @abstractmethod
    async def truncate_series(
        self,
        truncated_template: SeriesTemplate,
        drop_from: datetime,
        *,
        expected_rule: Optional[RecurrenceRule] = None,
    ) -> None:
        """Write the termination of truncated_template onto the stored series and
        delete its side-table rows keyed at or after drop_from, as one atomic unit.

        Raises:
            SplitIncomplete: If the stored rule no longer matches expected_rule
        """

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the store."""


def ensure_unchanged(
    series_id: str,
    boundary: datetime,
    stored_rule: RecurrenceRule,
    stored_fields: TemplatePayload,
    expected_rule: Optional[RecurrenceRule],
    expected_fields: Optional[TemplatePayload] = None,
) -> None:
    """Refuse a split or truncation computed from a stale read of the series.

    Raises:
        SplitIncomplete: If the stored rule or fields differ from the expected ones
    """
    if expected_rule is not None and stored_rule != expected_rule:
        changed = "rule"
    elif expected_fields is not None and stored_fields != expected_fields:
        changed = "fields"
    else:
        return
    raise SplitIncomplete(
        f"Series {series_id} {changed} changed after the split at {boundary.isoformat()} was prepared",
        original_id=series_id,
        boundary_instant=boundary,
    )
