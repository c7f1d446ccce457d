"""Unit tests for calendarbot_recurrence.logging_config."""

import logging

import pytest
from colorlog import ColoredFormatter

from calendarbot_recurrence.logging_config import build_formatter, configure_logging

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch: pytest.MonkeyPatch):
    """Restore root and engine logger state after each test."""
    monkeypatch.delenv("CALENDARBOT_DEBUG", raising=False)
    monkeypatch.delenv("CALENDARBOT_LOG_LEVEL", raising=False)
    root = logging.getLogger()
    saved_level = root.level
    saved_handlers = list(root.handlers)
    engine = logging.getLogger("calendarbot_recurrence")
    saved_engine_level = engine.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    engine.setLevel(saved_engine_level)


def test_configure_logging_when_default_then_info() -> None:
    assert configure_logging() == logging.INFO
    assert logging.getLogger("calendarbot_recurrence.series_editor").level == logging.INFO


def test_configure_logging_when_force_debug_then_debug() -> None:
    assert configure_logging(force_debug=True) == logging.DEBUG
    assert logging.getLogger("calendarbot_recurrence").level == logging.DEBUG


def test_configure_logging_when_env_debug_then_debug(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CALENDARBOT_DEBUG", "yes")
    assert configure_logging(debug_mode=False) == logging.DEBUG


def test_configure_logging_when_env_level_then_root_level_overridden(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CALENDARBOT_LOG_LEVEL", "warning")
    assert configure_logging(debug_mode=True) == logging.WARNING


def test_configure_logging_quiets_third_party_loggers() -> None:
    configure_logging(force_debug=True)
    assert logging.getLogger("aiosqlite").level == logging.WARNING


def test_configure_logging_when_no_handlers_then_colored_handler_added() -> None:
    root = logging.getLogger()
    root.handlers[:] = []

    configure_logging()

    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, ColoredFormatter)


def test_configure_logging_when_handler_present_then_kept() -> None:
    root = logging.getLogger()
    existing = logging.NullHandler()
    root.handlers[:] = [existing]

    configure_logging()

    assert root.handlers == [existing]


def test_build_formatter_renders_logger_name_and_message() -> None:
    record = logging.LogRecord("calendarbot_recurrence.test", logging.INFO, __file__, 1, "hello", None, None)
    rendered = build_formatter().format(record)
    assert "calendarbot_recurrence.test: hello" in rendered
    assert "INFO" in rendered
