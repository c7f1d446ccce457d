"""Unit tests for OverrideStoreAdapter and OccurrenceMaterializer."""

from datetime import UTC, datetime

import pytest

from calendarbot_recurrence.exceptions import ExpansionLimitExceeded, SeriesNotFound, StorageUnavailable
from calendarbot_recurrence.materializer import OccurrenceMaterializer
from calendarbot_recurrence.models import (
    BaseOccurrence,
    OccurrenceCompletion,
    OccurrenceOverride,
    OccurrencePatch,
    OverriddenOccurrence,
    SeriesTemplate,
    TimeWindow,
)
from calendarbot_recurrence.override_store import OverrideStoreAdapter
from calendarbot_recurrence.rrule_expander import ExpanderConfig
from calendarbot_recurrence.store.memory_store import InMemoryOccurrenceStore

pytestmark = pytest.mark.unit


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


JANUARY = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 31, 23, 59, 59))


class FlakyStore(InMemoryOccurrenceStore):
    """Memory store whose reads fail for selected series."""

    def __init__(self, failing_ids: set[str]):
        super().__init__()
        self.failing_ids = failing_ids

    async def fetch_overrides(self, series_id, window):
        if series_id in self.failing_ids:
            raise ConnectionError("backend down")
        return await super().fetch_overrides(series_id, window)


@pytest.fixture
def materializer(memory_store: InMemoryOccurrenceStore) -> OccurrenceMaterializer:
    return OccurrenceMaterializer(OverrideStoreAdapter(memory_store))


class TestOverrideStoreAdapter:
    @pytest.mark.asyncio
    async def test_fetch_when_backend_fails_then_storage_unavailable(
        self, weekly_template: SeriesTemplate
    ) -> None:
        store = FlakyStore({weekly_template.id})
        await store.save_template(weekly_template)
        adapter = OverrideStoreAdapter(store)

        with pytest.raises(StorageUnavailable) as exc_info:
            await adapter.fetch_overrides(weekly_template.id, JANUARY)

        assert exc_info.value.series_id == weekly_template.id
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_load_template_when_missing_then_engine_error_passes_through(self) -> None:
        adapter = OverrideStoreAdapter(InMemoryOccurrenceStore())
        with pytest.raises(SeriesNotFound):
            await adapter.load_template("missing")

    @pytest.mark.asyncio
    async def test_fetch_keys_rows_by_utc_instant(
        self, memory_store: InMemoryOccurrenceStore, weekly_template: SeriesTemplate
    ) -> None:
        await memory_store.save_template(weekly_template)
        await memory_store.upsert_exception(weekly_template.id, utc(2024, 1, 8, 9))

        exceptions = await OverrideStoreAdapter(memory_store).fetch_exceptions(weekly_template.id, JANUARY)
        assert exceptions == {utc(2024, 1, 8, 9)}


class TestOccurrenceMaterializer:
    @pytest.mark.asyncio
    async def test_materialize_when_no_edits_then_base_occurrences(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)

        occurrences = await materializer.materialize(weekly_template, JANUARY)

        assert [o.scheduled_instant for o in occurrences] == [
            utc(2024, 1, 1, 9),
            utc(2024, 1, 8, 9),
            utc(2024, 1, 15, 9),
            utc(2024, 1, 22, 9),
        ]
        assert all(isinstance(o, BaseOccurrence) for o in occurrences)
        assert occurrences[0].effective_fields == weekly_template.fields

    @pytest.mark.asyncio
    async def test_materialize_when_override_then_patch_wins_for_that_instant(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)
        await memory_store.upsert_override(
            OccurrenceOverride(
                series_id=weekly_template.id,
                occurrence_instant=utc(2024, 1, 8, 9),
                fields=OccurrencePatch(location="Room 9"),
            )
        )

        occurrences = await materializer.materialize(weekly_template, JANUARY)

        overridden = occurrences[1]
        assert isinstance(overridden, OverriddenOccurrence)
        assert overridden.effective_fields.location == "Room 9"
        assert overridden.effective_fields.title == "Team sync"
        assert [o.is_override for o in occurrences] == [False, True, False, False]

    @pytest.mark.asyncio
    async def test_materialize_when_exception_then_instant_suppressed(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)
        await memory_store.upsert_exception(weekly_template.id, utc(2024, 1, 15, 9))

        occurrences = await materializer.materialize(weekly_template, JANUARY)

        assert utc(2024, 1, 15, 9) not in [o.scheduled_instant for o in occurrences]
        assert len(occurrences) == 3

    @pytest.mark.asyncio
    async def test_materialize_when_completion_then_attached(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)
        await memory_store.upsert_completion(
            OccurrenceCompletion(series_id=weekly_template.id, occurrence_instant=utc(2024, 1, 1, 9))
        )

        occurrences = await materializer.materialize(weekly_template, JANUARY)

        assert [o.is_completed for o in occurrences] == [True, False, False, False]

    @pytest.mark.asyncio
    async def test_materialize_when_override_key_outside_window_then_not_surfaced(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)
        await memory_store.upsert_override(
            OccurrenceOverride(
                series_id=weekly_template.id,
                occurrence_instant=utc(2024, 1, 22, 9),
                fields=OccurrencePatch(rescheduled_to=utc(2024, 1, 10, 9)),
            )
        )
        window = TimeWindow(start=utc(2024, 1, 9), end=utc(2024, 1, 16))

        occurrences = await materializer.materialize(weekly_template, window)

        assert [o.scheduled_instant for o in occurrences] == [utc(2024, 1, 15, 9)]

    @pytest.mark.asyncio
    async def test_materialize_when_storage_fails_then_fails_closed(
        self, weekly_template: SeriesTemplate
    ) -> None:
        store = FlakyStore({weekly_template.id})
        await store.save_template(weekly_template)
        materializer = OccurrenceMaterializer(OverrideStoreAdapter(store))

        with pytest.raises(StorageUnavailable):
            await materializer.materialize(weekly_template, JANUARY)

    @pytest.mark.asyncio
    async def test_materialize_series_loads_template(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        weekly_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(weekly_template)
        occurrences = await materializer.materialize_series(weekly_template.id, JANUARY)
        assert len(occurrences) == 4

    @pytest.mark.asyncio
    async def test_materialize_many_when_one_series_fails_then_others_unaffected(
        self, weekly_template: SeriesTemplate, daily_template: SeriesTemplate
    ) -> None:
        store = FlakyStore({daily_template.id})
        await store.save_template(weekly_template)
        await store.save_template(daily_template)
        materializer = OccurrenceMaterializer(OverrideStoreAdapter(store))
        window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 3, 31, 23, 59, 59))

        results = await materializer.materialize_many([weekly_template, daily_template], window)

        assert len(results[weekly_template.id]) == 4
        assert results[daily_template.id] == []

    @pytest.mark.asyncio
    async def test_materialize_when_window_spans_years_then_every_occurrence_returned(
        self,
        materializer: OccurrenceMaterializer,
        memory_store: InMemoryOccurrenceStore,
        daily_template: SeriesTemplate,
    ) -> None:
        await memory_store.save_template(daily_template)
        three_years = TimeWindow(start=utc(2024, 3, 1), end=utc(2027, 2, 28, 23, 59, 59))

        occurrences = await materializer.materialize(daily_template, three_years)

        assert len(occurrences) == 1095
        assert occurrences[-1].scheduled_instant == utc(2027, 2, 28, 8)

    @pytest.mark.asyncio
    async def test_materialize_when_guard_exceeded_then_fails_instead_of_truncating(
        self, memory_store: InMemoryOccurrenceStore, daily_template: SeriesTemplate
    ) -> None:
        await memory_store.save_template(daily_template)
        materializer = OccurrenceMaterializer(
            OverrideStoreAdapter(memory_store), ExpanderConfig(max_occurrences_per_window=10)
        )
        spring = TimeWindow(start=utc(2024, 3, 1), end=utc(2024, 5, 31, 23, 59, 59))

        with pytest.raises(ExpansionLimitExceeded):
            await materializer.materialize(daily_template, spring)
        assert await materializer.materialize_many([daily_template], spring) == {daily_template.id: []}
