"""Read boundary between the engine and the storage collaborator.

The adapter contains no business logic. It shapes storage rows into lookup
structures keyed by occurrence instant and turns any backend failure into
StorageUnavailable so callers deal with one error type.
"""

import logging
from collections.abc import Awaitable
from datetime import datetime
from typing import TypeVar

from .exceptions import RecurrenceEngineError, StorageUnavailable
from .models import OccurrenceCompletion, OccurrenceOverride, SeriesTemplate, TimeWindow
from .store.base import OccurrenceStore
from .timezone_utils import to_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OverrideStoreAdapter:
    """Window-bounded access to overrides, exceptions and completions."""

    def __init__(self, store: OccurrenceStore):
        self.store = store

    async def load_template(self, series_id: str) -> SeriesTemplate:
        return await self._guard(series_id, "template", self.store.load_template(series_id))

    async def fetch_overrides(
        self, series_id: str, window: TimeWindow
    ) -> dict[datetime, OccurrenceOverride]:
        rows = await self._guard(series_id, "overrides", self.store.fetch_overrides(series_id, window))
        return {to_utc(row.occurrence_instant): row for row in rows}

    async def fetch_exceptions(self, series_id: str, window: TimeWindow) -> set[datetime]:
        rows = await self._guard(
            series_id, "exceptions", self.store.fetch_exceptions(series_id, window)
        )
        return {to_utc(instant) for instant in rows}

    async def fetch_completions(
        self, series_id: str, window: TimeWindow
    ) -> dict[datetime, OccurrenceCompletion]:
        rows = await self._guard(
            series_id, "completions", self.store.fetch_completions(series_id, window)
        )
        return {to_utc(row.occurrence_instant): row for row in rows}

    async def _guard(self, series_id: str, what: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except RecurrenceEngineError:
            raise
        except Exception as e:
            logger.warning("Failed to fetch %s for series %s: %s", what, series_id, e)
            raise StorageUnavailable(
                f"Failed to fetch {what} for series {series_id}", series_id=series_id
            ) from e
