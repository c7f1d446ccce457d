"""In-memory OccurrenceStore for tests and embedding."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ..exceptions import SeriesNotFound
from ..models import (
    OccurrenceCompletion,
    OccurrenceOverride,
    RecurrenceRule,
    SeriesSplit,
    SeriesTemplate,
    TimeWindow,
)
from ..timezone_utils import to_utc
from .base import OccurrenceStore, ensure_unchanged

logger = logging.getLogger(__name__)


class InMemoryOccurrenceStore(OccurrenceStore):
    """Dict-backed store.

    Multi-row operations build the new state on copies and swap it in once
    complete, so a failure part way leaves the previous state untouched.
    """

    def __init__(self) -> None:
        self._templates: dict[str, SeriesTemplate] = {}
        self._overrides: dict[str, dict[datetime, OccurrenceOverride]] = {}
        self._exceptions: dict[str, set[datetime]] = {}
        self._completions: dict[str, dict[datetime, OccurrenceCompletion]] = {}
        self._lock = asyncio.Lock()

    async def load_template(self, series_id: str) -> SeriesTemplate:
        template = self._templates.get(series_id)
        if template is None:
            raise SeriesNotFound(series_id)
        return template.model_copy(deep=True)

    async def save_template(self, template: SeriesTemplate) -> None:
        async with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)

    async def delete_template(self, series_id: str) -> None:
        async with self._lock:
            self._templates.pop(series_id, None)
            self._overrides.pop(series_id, None)
            self._exceptions.pop(series_id, None)
            self._completions.pop(series_id, None)

    async def fetch_overrides(self, series_id: str, window: TimeWindow) -> list[OccurrenceOverride]:
        rows = self._overrides.get(series_id, {})
        return [rows[key] for key in sorted(rows) if window.contains(key)]

    async def fetch_exceptions(self, series_id: str, window: TimeWindow) -> list[datetime]:
        return sorted(key for key in self._exceptions.get(series_id, set()) if window.contains(key))

    async def fetch_completions(
        self, series_id: str, window: TimeWindow
    ) -> list[OccurrenceCompletion]:
        rows = self._completions.get(series_id, {})
        return [rows[key] for key in sorted(rows) if window.contains(key)]

    async def upsert_override(self, override: OccurrenceOverride) -> None:
        key = to_utc(override.occurrence_instant)
        async with self._lock:
            self._require(override.series_id)
            self._exceptions.get(override.series_id, set()).discard(key)
            self._overrides.setdefault(override.series_id, {})[key] = override

    async def upsert_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        key = to_utc(occurrence_instant)
        async with self._lock:
            self._require(series_id)
            self._overrides.get(series_id, {}).pop(key, None)
            self._exceptions.setdefault(series_id, set()).add(key)

    async def delete_override(self, series_id: str, occurrence_instant: datetime) -> None:
        async with self._lock:
            self._overrides.get(series_id, {}).pop(to_utc(occurrence_instant), None)

    async def delete_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        async with self._lock:
            self._exceptions.get(series_id, set()).discard(to_utc(occurrence_instant))

    async def upsert_completion(self, completion: OccurrenceCompletion) -> None:
        async with self._lock:
            self._require(completion.series_id)
            key = to_utc(completion.occurrence_instant)
            self._completions.setdefault(completion.series_id, {})[key] = completion

    async def delete_completion(self, series_id: str, occurrence_instant: datetime) -> None:
        async with self._lock:
            self._completions.get(series_id, {}).pop(to_utc(occurrence_instant), None)

    async def split_series(self, split: SeriesSplit) -> None:
        async with self._lock:
            original_id = split.original_id
            new_id = split.new_template.id
            boundary = split.reparent_from
            current = self._current(original_id)
            ensure_unchanged(
                original_id,
                split.boundary_instant,
                current.rule,
                current.fields,
                split.expected_rule,
                split.expected_fields,
            )

            templates = dict(self._templates)
            templates[original_id] = _with_termination(current, split.truncated_original)
            templates[new_id] = split.new_template.model_copy(deep=True)

            overrides = dict(self._overrides)
            kept, moved = _partition(overrides.get(original_id, {}), boundary)
            overrides[original_id] = kept
            overrides[new_id] = {
                key: row.model_copy(update={"series_id": new_id}) for key, row in moved.items()
            }

            exceptions = dict(self._exceptions)
            original_exceptions = exceptions.get(original_id, set())
            exceptions[original_id] = {key for key in original_exceptions if key < boundary}
            exceptions[new_id] = {key for key in original_exceptions if key >= boundary}

            completions = dict(self._completions)
            kept_done, moved_done = _partition(completions.get(original_id, {}), boundary)
            completions[original_id] = kept_done
            completions[new_id] = {
                key: row.model_copy(update={"series_id": new_id}) for key, row in moved_done.items()
            }

            self._templates = templates
            self._overrides = overrides
            self._exceptions = exceptions
            self._completions = completions

        logger.debug("Split series %s at %s into %s", original_id, boundary, new_id)

    async def truncate_series(
        self,
        truncated_template: SeriesTemplate,
        drop_from: datetime,
        *,
        expected_rule: Optional[RecurrenceRule] = None,
    ) -> None:
        series_id = truncated_template.id
        drop_from = to_utc(drop_from)
        async with self._lock:
            current = self._current(series_id)
            ensure_unchanged(series_id, drop_from, current.rule, current.fields, expected_rule)

            templates = dict(self._templates)
            templates[series_id] = _with_termination(current, truncated_template)

            overrides = dict(self._overrides)
            overrides[series_id] = _partition(overrides.get(series_id, {}), drop_from)[0]

            exceptions = dict(self._exceptions)
            exceptions[series_id] = {key for key in exceptions.get(series_id, set()) if key < drop_from}

            completions = dict(self._completions)
            completions[series_id] = _partition(completions.get(series_id, {}), drop_from)[0]

            self._templates = templates
            self._overrides = overrides
            self._exceptions = exceptions
            self._completions = completions

    def _require(self, series_id: str) -> None:
        if series_id not in self._templates:
            raise SeriesNotFound(series_id)

    def _current(self, series_id: str) -> SeriesTemplate:
        template = self._templates.get(series_id)
        if template is None:
            raise SeriesNotFound(series_id)
        return template


def _with_termination(current: SeriesTemplate, truncated: SeriesTemplate) -> SeriesTemplate:
    """Copy only the termination of truncated onto the stored template."""
    return current.model_copy(
        update={"rule": truncated.rule, "recurrence_end": truncated.recurrence_end}, deep=True
    )

def _partition(rows: dict, boundary: datetime) -> tuple[dict, dict]:
    """Split a keyed side table into rows before boundary and rows at/after it."""
    before = {key: row for key, row in rows.items() if key < boundary}
    after = {key: row for key, row in rows.items() if key >= boundary}
    return before, after
