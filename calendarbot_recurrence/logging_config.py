"""Logging configuration for calendarbot_recurrence."""

import logging
import os
from typing import Optional

from colorlog import ColoredFormatter

LOG_FORMAT = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}

# Third-party loggers that are noisy at DEBUG
QUIET_LOGGERS: dict[str, int] = {
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}

ENGINE_MODULES = (
    "calendarbot_recurrence",
    "calendarbot_recurrence.rrule_codec",
    "calendarbot_recurrence.rrule_expander",
    "calendarbot_recurrence.override_store",
    "calendarbot_recurrence.materializer",
    "calendarbot_recurrence.series_editor",
    "calendarbot_recurrence.store",
)


def build_formatter() -> ColoredFormatter:
    """Console formatter: HH:MM:SS  LEVEL   logger.name: message (level colorized)."""
    return ColoredFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT, log_colors=LOG_COLORS)


def configure_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> int:
    """Configure logging for the recurrence engine.

    Installs a colorized console handler when the root logger has none, and
    sets the engine and third-party logger levels.

    Args:
        debug_mode: Whether to enable debug logging for engine modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        CALENDARBOT_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDARBOT_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        The root log level that was applied
    """
    env_debug = os.getenv("CALENDARBOT_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("CALENDARBOT_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    # Keep handlers an embedding application already installed
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(build_formatter())
        root_logger.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    engine_level = logging.DEBUG if final_debug else logging.INFO
    for name in ENGINE_MODULES:
        logging.getLogger(name).setLevel(engine_level)

    logging.getLogger(__name__).debug(
        "Logging configured: root=%s, debug=%s", logging.getLevelName(root_level), final_debug
    )
    return root_level
