"""Settings for the recurrence engine.

Values come from (highest priority first) environment variables prefixed with
CALENDARBOT_RECURRENCE_, a .env file, an optional YAML config file and the
defaults below.
"""

import logging
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .timezone_utils import DEFAULT_TIMEZONE, normalize_timezone_name

logger = logging.getLogger(__name__)

# YAML files may nest the engine settings under this key
YAML_SECTION = "recurrence"


class RecurrenceSettings(BaseSettings):
    """Recurrence engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CALENDARBOT_RECURRENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_path: Path = Field(
        default=Path("data/recurrence.db"), description="SQLite database for the reference store"
    )
    default_timezone: str = Field(
        default=DEFAULT_TIMEZONE, description="Timezone for series created without one"
    )
    max_occurrences_per_window: Optional[int] = Field(
        default=None,
        ge=1,
        description="Optional guard: queries expanding more occurrences fail instead",
    )
    preview_limit: int = Field(default=10, ge=1, description="Occurrences shown by the preview CLI")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Enable debug logging")

    @field_validator("default_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        return normalize_timezone_name(value)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {value}")
        return level


def _read_yaml(config_file: Path) -> dict[str, Any]:
    with config_file.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_file} must contain a mapping")
    section = data.get(YAML_SECTION, data)
    if not isinstance(section, dict):
        raise ValueError(f"'{YAML_SECTION}' in {config_file} must be a mapping")
    return section


def load_settings(config_file: Optional[Union[Path, str]] = None) -> RecurrenceSettings:
    """Load settings, overlaying a YAML file beneath the environment.

    Args:
        config_file: Optional YAML file; a missing file is ignored with a warning

    Returns:
        Validated settings
    """
    settings = RecurrenceSettings()
    if config_file is None:
        return settings

    path = Path(config_file).expanduser()
    if not path.exists():
        logger.warning("Config file not found, using environment and defaults: %s", path)
        return settings

    yaml_values = _read_yaml(path)
    unknown = set(yaml_values) - set(RecurrenceSettings.model_fields)
    if unknown:
        logger.warning("Ignoring unknown settings in %s: %s", path, ", ".join(sorted(unknown)))

    # Explicitly set values (environment, .env) win over the file
    values = {
        name: value
        for name, value in yaml_values.items()
        if name in RecurrenceSettings.model_fields and name not in settings.model_fields_set
    }
    values.update(settings.model_dump(include=settings.model_fields_set))
    logger.debug("Loaded %d settings from %s", len(values), path)
    return RecurrenceSettings(**values)
