"""Timezone helpers for the recurrence engine.

Instants handled by the engine are always timezone-aware. Naive datetimes are
interpreted as UTC, the same convention the CalendarBot parsers use.
"""

from __future__ import annotations

import datetime
import logging
import zoneinfo
from functools import lru_cache
from typing import Final

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE: Final = "UTC"

# Obsolete/alias names found in older records, mapped to canonical IANA names
TZ_ALIAS_MAP: Final[dict[str, str]] = {
    "US/Pacific": "America/Los_Angeles",
    "US/Mountain": "America/Denver",
    "US/Central": "America/Chicago",
    "US/Eastern": "America/New_York",
    "US/Alaska": "America/Anchorage",
    "US/Hawaii": "Pacific/Honolulu",
    "US/Arizona": "America/Phoenix",
    "GMT": "UTC",
    "Etc/UTC": "UTC",
    "Etc/GMT": "UTC",
    "Etc/Universal": "UTC",
    "Universal": "UTC",
    "Zulu": "UTC",
    "PST8PDT": "America/Los_Angeles",
    "MST7MDT": "America/Denver",
    "CST6CDT": "America/Chicago",
    "EST5EDT": "America/New_York",
    "Asia/Rangoon": "Asia/Yangon",
    "America/Godthab": "America/Nuuk",
}

# Storage keys and rule strings carry second precision
INSTANT_KEY_FORMAT: Final = "%Y-%m-%dT%H:%M:%SZ"
TICK: Final = datetime.timedelta(seconds=1)


def resolve_timezone_alias(tz_name: str) -> str:
    """Resolve a timezone alias to its canonical IANA identifier.

    Examples:
        >>> resolve_timezone_alias("US/Pacific")
        'America/Los_Angeles'
        >>> resolve_timezone_alias("Europe/Paris")
        'Europe/Paris'
    """
    return TZ_ALIAS_MAP.get(tz_name, tz_name)


def normalize_timezone_name(tz_name: str) -> str:
    """Return the canonical IANA name for tz_name.

    Raises:
        ValueError: If the name cannot be resolved to a known timezone
    """
    if not tz_name or not tz_name.strip():
        raise ValueError("timezone name must be a non-empty string")

    resolved = resolve_timezone_alias(tz_name.strip())
    try:
        zoneinfo.ZoneInfo(resolved)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz_name!r}") from e
    return resolved


@lru_cache(maxsize=64)
def get_zone(tz_name: str) -> zoneinfo.ZoneInfo:
    """Return a cached ZoneInfo for a (possibly aliased) timezone name."""
    return zoneinfo.ZoneInfo(normalize_timezone_name(tz_name))


def ensure_aware(dt: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes; leave aware ones untouched."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=datetime.UTC)
    return dt


def to_utc(dt: datetime.datetime) -> datetime.datetime:
    """Convert to an aware UTC datetime truncated to whole seconds."""
    return ensure_aware(dt).astimezone(datetime.UTC).replace(microsecond=0)


def to_zone(dt: datetime.datetime, tz_name: str) -> datetime.datetime:
    """Express an instant in the given timezone, truncated to whole seconds."""
    return ensure_aware(dt).astimezone(get_zone(tz_name)).replace(microsecond=0)


def instant_key(dt: datetime.datetime) -> str:
    """Fixed-width UTC string for an instant; sorts chronologically as text."""
    return to_utc(dt).strftime(INSTANT_KEY_FORMAT)


def parse_instant_key(key: str) -> datetime.datetime:
    """Inverse of instant_key()."""
    return datetime.datetime.strptime(key, INSTANT_KEY_FORMAT).replace(tzinfo=datetime.UTC)


def now_utc() -> datetime.datetime:
    """Current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC).replace(microsecond=0)
