"""Shared fixtures for calendarbot_recurrence tests."""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from calendarbot_recurrence.models import (
    CountTermination,
    Frequency,
    RecurrenceRule,
    SeriesTemplate,
    TemplatePayload,
    UnboundedTermination,
    Weekday,
)
from calendarbot_recurrence.store.memory_store import InMemoryOccurrenceStore
from calendarbot_recurrence.store.sqlite_store import SqliteOccurrenceStore


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "critical_path: Core functionality tests")


def utc(*args: int) -> datetime:
    """Shorthand for an aware UTC datetime."""
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def weekly_monday_rule() -> RecurrenceRule:
    """Weekly on Monday, four occurrences."""
    return RecurrenceRule(
        frequency=Frequency.WEEKLY,
        by_weekday=frozenset({Weekday.MO}),
        termination=CountTermination(count=4),
    )


@pytest.fixture
def weekly_template(weekly_monday_rule: RecurrenceRule) -> SeriesTemplate:
    """Mondays 09:00 UTC from Jan 1 2024: Jan 1, 8, 15, 22."""
    return SeriesTemplate(
        id="series-weekly",
        company_id="acme",
        anchor_start=utc(2024, 1, 1, 9, 0),
        timezone="UTC",
        rule=weekly_monday_rule,
        fields=TemplatePayload(title="Team sync", location="Room 1", duration_minutes=30),
    )


@pytest.fixture
def daily_template() -> SeriesTemplate:
    """Unbounded daily series at 08:00 UTC from Mar 1 2024."""
    return SeriesTemplate(
        id="series-daily",
        company_id="acme",
        anchor_start=utc(2024, 3, 1, 8, 0),
        timezone="UTC",
        rule=RecurrenceRule(frequency=Frequency.DAILY, termination=UnboundedTermination()),
        fields=TemplatePayload(title="Standup"),
    )


@pytest.fixture
def memory_store() -> InMemoryOccurrenceStore:
    return InMemoryOccurrenceStore()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "recurrence.db"


@pytest.fixture
def sqlite_store(temp_db_path: Path) -> SqliteOccurrenceStore:
    return SqliteOccurrenceStore(temp_db_path)
