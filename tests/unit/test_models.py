"""Unit tests for calendarbot_recurrence.models."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import TypeAdapter, ValidationError

from calendarbot_recurrence.models import (
    BaseOccurrence,
    CountTermination,
    Frequency,
    InvalidationKey,
    Occurrence,
    OccurrencePatch,
    OverriddenOccurrence,
    RecurrenceRule,
    SeriesTemplate,
    TemplatePayload,
    TimeWindow,
    UntilTermination,
    Weekday,
)

pytestmark = pytest.mark.unit


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestRecurrenceRule:
    def test_rule_when_month_position_without_weekday_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecurrenceRule(frequency=Frequency.MONTHLY, month_position=2)

    def test_rule_when_month_position_on_weekly_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecurrenceRule(
                frequency=Frequency.WEEKLY, by_weekday=frozenset({Weekday.MO}), month_position=1
            )

    def test_rule_when_invalid_position_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecurrenceRule(
                frequency=Frequency.MONTHLY, by_weekday=frozenset({Weekday.MO}), month_position=0
            )

    def test_rule_when_interval_zero_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecurrenceRule(frequency=Frequency.DAILY, interval=0)

    def test_rule_when_count_zero_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CountTermination(count=0)

    def test_rule_termination_accessors(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.DAILY, termination=CountTermination(count=3))
        assert rule.count == 3
        assert rule.until is None

    def test_with_termination_keeps_shape(self) -> None:
        rule = RecurrenceRule(
            frequency=Frequency.WEEKLY,
            interval=2,
            by_weekday=frozenset({Weekday.TU}),
            termination=CountTermination(count=9),
        )
        until = utc(2024, 5, 1)
        changed = rule.with_termination(UntilTermination(until=until))
        assert changed.until == until
        assert changed.interval == 2
        assert changed.by_weekday == rule.by_weekday

    def test_until_when_aware_non_utc_then_normalized(self) -> None:
        termination = UntilTermination(until=datetime(2024, 1, 1, 12, 0, 0, 500, tzinfo=UTC) + timedelta(hours=1))
        assert termination.until == utc(2024, 1, 1, 13)
        assert termination.until.microsecond == 0

    def test_termination_deserialized_by_kind(self) -> None:
        rule = RecurrenceRule.model_validate(
            {"frequency": "daily", "termination": {"kind": "count", "count": 2}}
        )
        assert rule.count == 2


class TestPayloadAndPatch:
    def test_overlay_when_patch_sets_fields_then_only_those_replaced(self) -> None:
        payload = TemplatePayload(title="Sync", location="Room 1", priority="low")
        patched = payload.overlay(OccurrencePatch(location="Room 2", priority=None))
        assert patched.title == "Sync"
        assert patched.location == "Room 2"
        assert patched.priority is None

    def test_overlay_when_patch_empty_then_unchanged(self) -> None:
        payload = TemplatePayload(title="Sync")
        assert payload.overlay(OccurrencePatch()) == payload

    def test_patch_when_title_cleared_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OccurrencePatch(title=None)

    def test_patch_payload_updates_excludes_reschedule(self) -> None:
        patch = OccurrencePatch(title="Moved", rescheduled_to=utc(2024, 1, 2, 10))
        assert patch.payload_updates() == {"title": "Moved"}

    def test_merged_with_later_fields_win(self) -> None:
        first = OccurrencePatch(title="A", location="Room 1")
        second = OccurrencePatch(location="Room 2")
        merged = first.merged_with(second)
        assert merged.payload_updates() == {"title": "A", "location": "Room 2"}

    def test_merged_with_same_patch_is_idempotent(self) -> None:
        patch = OccurrencePatch(title="A")
        assert patch.merged_with(patch) == patch


class TestSeriesTemplate:
    def test_template_when_alias_timezone_then_normalized(self) -> None:
        template = SeriesTemplate(
            company_id="acme",
            anchor_start=utc(2024, 1, 1, 17),
            timezone="US/Pacific",
            rule=RecurrenceRule(frequency=Frequency.DAILY),
            fields=TemplatePayload(title="x"),
        )
        assert template.timezone == "America/Los_Angeles"
        # Anchor expressed in the series zone: 17:00 UTC is 09:00 PST
        assert template.anchor_start.hour == 9
        assert template.recurrence_start == template.anchor_start

    def test_template_when_until_rule_then_recurrence_end_filled(self) -> None:
        until = utc(2024, 2, 1)
        template = SeriesTemplate(
            company_id="acme",
            anchor_start=utc(2024, 1, 1),
            rule=RecurrenceRule(frequency=Frequency.DAILY, termination=UntilTermination(until=until)),
            fields=TemplatePayload(title="x"),
        )
        assert template.recurrence_end == until

    def test_template_when_recurrence_start_explicitly_none_then_anchor_used(self) -> None:
        template = SeriesTemplate(
            company_id="acme",
            anchor_start=utc(2024, 1, 1, 9),
            rule=RecurrenceRule(frequency=Frequency.DAILY),
            recurrence_start=None,
            fields=TemplatePayload(title="x"),
        )
        assert template.recurrence_start == utc(2024, 1, 1, 9)
        assert template.effective_start == utc(2024, 1, 1, 9)

    def test_effective_start_when_recurrence_start_after_anchor_then_later_instant(self) -> None:
        template = SeriesTemplate(
            company_id="acme",
            anchor_start=utc(2024, 1, 1, 9),
            rule=RecurrenceRule(frequency=Frequency.DAILY),
            recurrence_start=utc(2024, 1, 5, 9),
            fields=TemplatePayload(title="x"),
        )
        assert template.effective_start == utc(2024, 1, 5, 9)

    def test_template_when_unknown_timezone_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SeriesTemplate(
                company_id="acme",
                anchor_start=utc(2024, 1, 1),
                timezone="Mars/Olympus",
                rule=RecurrenceRule(frequency=Frequency.DAILY),
                fields=TemplatePayload(title="x"),
            )

    def test_template_when_naive_anchor_then_utc(self) -> None:
        template = SeriesTemplate(
            company_id="acme",
            anchor_start=datetime(2024, 1, 1, 9),
            rule=RecurrenceRule(frequency=Frequency.DAILY),
            fields=TemplatePayload(title="x"),
        )
        assert template.anchor_start == utc(2024, 1, 1, 9)


class TestOccurrence:
    def test_base_occurrence_display_end_from_duration(self) -> None:
        occurrence = BaseOccurrence(
            series_id="s",
            scheduled_instant=utc(2024, 1, 1, 9),
            effective_fields=TemplatePayload(title="x", duration_minutes=45),
        )
        assert not occurrence.is_override
        assert not occurrence.is_completed
        assert occurrence.display_end == utc(2024, 1, 1, 9, 45)

    def test_overridden_occurrence_when_rescheduled_then_display_start_moves(self) -> None:
        patch = OccurrencePatch(rescheduled_to=utc(2024, 1, 1, 11))
        occurrence = OverriddenOccurrence(
            series_id="s",
            scheduled_instant=utc(2024, 1, 1, 9),
            effective_fields=TemplatePayload(title="x"),
            override=patch,
        )
        assert occurrence.is_override
        assert occurrence.display_start == utc(2024, 1, 1, 11)
        assert occurrence.scheduled_instant == utc(2024, 1, 1, 9)
        assert occurrence.display_end is None

    def test_occurrence_union_discriminates_on_kind(self) -> None:
        adapter = TypeAdapter(Occurrence)
        parsed = adapter.validate_python(
            {
                "kind": "overridden",
                "series_id": "s",
                "scheduled_instant": utc(2024, 1, 1, 9),
                "effective_fields": {"title": "x"},
                "override": {"title": "x"},
            }
        )
        assert isinstance(parsed, OverriddenOccurrence)


class TestWindowAndKeys:
    def test_window_when_end_before_start_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TimeWindow(start=utc(2024, 1, 2), end=utc(2024, 1, 1))

    def test_window_contains_is_inclusive(self) -> None:
        window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 2))
        assert window.contains(utc(2024, 1, 1))
        assert window.contains(utc(2024, 1, 2))
        assert not window.contains(utc(2024, 1, 2, 0, 0, 1))

    def test_invalidation_key_affects_overlapping_windows(self) -> None:
        key = InvalidationKey(series_id="s", start=utc(2024, 1, 15))
        assert key.affects("s", TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 31)))
        assert not key.affects("s", TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 14)))
        assert not key.affects("other", TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 31)))
