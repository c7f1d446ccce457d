"""Merge expanded instants with per-occurrence overrides, exceptions and completions."""

import asyncio
import logging
from collections.abc import Iterable
from typing import Optional

from .exceptions import RecurrenceEngineError
from .models import BaseOccurrence, Occurrence, OverriddenOccurrence, SeriesTemplate, TimeWindow
from .override_store import OverrideStoreAdapter
from .rrule_expander import ExpanderConfig, expand_template
from .timezone_utils import to_utc

logger = logging.getLogger(__name__)


class OccurrenceMaterializer:
    """Produces the user-visible occurrences of a series inside a window.

    Reads fail closed: when override data cannot be fetched, StorageUnavailable
    propagates instead of returning occurrences that would ignore edits.
    """

    def __init__(self, adapter: OverrideStoreAdapter, config: Optional[ExpanderConfig] = None):
        self.adapter = adapter
        self.config = config or ExpanderConfig()

    async def materialize(self, template: SeriesTemplate, window: TimeWindow) -> list[Occurrence]:
        """Materialize one series.

        Args:
            template: Series template
            window: Inclusive query window

        Returns:
            Occurrences in chronological order of their scheduled instant

        Raises:
            StorageUnavailable: If override data could not be read
            ExpansionLimitExceeded: If a configured expansion guard is exceeded
        """
        instants = list(expand_template(template, window, config=self.config))
        if not instants:
            logger.debug("Series %s has no occurrences in %s..%s", template.id, window.start, window.end)
            return []

        overrides, exceptions, completions = await asyncio.gather(
            self.adapter.fetch_overrides(template.id, window),
            self.adapter.fetch_exceptions(template.id, window),
            self.adapter.fetch_completions(template.id, window),
        )

        occurrences: list[Occurrence] = []
        for instant in instants:
            key = to_utc(instant)
            if key in exceptions:
                continue

            completion = completions.get(key)
            override = overrides.get(key)
            if override is not None:
                occurrences.append(
                    OverriddenOccurrence(
                        series_id=template.id,
                        scheduled_instant=instant,
                        effective_fields=template.fields.overlay(override.fields),
                        completion=completion,
                        override=override.fields,
                    )
                )
            else:
                occurrences.append(
                    BaseOccurrence(
                        series_id=template.id,
                        scheduled_instant=instant,
                        effective_fields=template.fields,
                        completion=completion,
                    )
                )

        logger.debug(
            "Materialized %d occurrences for series %s (%d expanded, %d excepted, %d overridden)",
            len(occurrences),
            template.id,
            len(instants),
            len(exceptions),
            len(overrides),
        )
        return occurrences

    async def materialize_series(self, series_id: str, window: TimeWindow) -> list[Occurrence]:
        """Load a template by id and materialize it."""
        template = await self.adapter.load_template(series_id)
        return await self.materialize(template, window)

    async def materialize_many(
        self, templates: Iterable[SeriesTemplate], window: TimeWindow
    ) -> dict[str, list[Occurrence]]:
        """Materialize several series concurrently.

        A failure in one series yields an empty list for it and does not affect
        the others.
        """
        templates = list(templates)
        results = await asyncio.gather(
            *(self._materialize_isolated(template, window) for template in templates)
        )
        return {template.id: occurrences for template, occurrences in zip(templates, results)}

    async def _materialize_isolated(
        self, template: SeriesTemplate, window: TimeWindow
    ) -> list[Occurrence]:
        try:
            return await self.materialize(template, window)
        except RecurrenceEngineError as e:
            logger.warning("Skipping series %s: %s", template.id, e)
            return []
