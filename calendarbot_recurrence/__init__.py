"""calendarbot_recurrence - recurring schedule engine for CalendarBot.

Turns a series template plus a recurrence rule into concrete occurrences
inside a time window, and applies single / this-and-future / whole-series
edits without losing per-occurrence history.
"""

__version__ = "0.1.0"

from .exceptions import (
    ExpansionLimitExceeded,
    InvalidRule,
    OccurrenceNotFound,
    RecurrenceEngineError,
    SeriesNotFound,
    SplitIncomplete,
    StorageUnavailable,
)
from .materializer import OccurrenceMaterializer
from .models import (
    BaseOccurrence,
    EditResult,
    EditScope,
    Frequency,
    InvalidationKey,
    OccurrencePatch,
    OverriddenOccurrence,
    RecurrenceRule,
    SeriesTemplate,
    TemplatePayload,
    TimeWindow,
    Weekday,
)
from .override_store import OverrideStoreAdapter
from .rrule_codec import decode, describe_rule, encode
from .rrule_expander import ExpanderConfig, expand
from .series_editor import CacheInvalidator, SeriesEditor
from .store import InMemoryOccurrenceStore, OccurrenceStore, SqliteOccurrenceStore

__all__ = [
    "BaseOccurrence",
    "CacheInvalidator",
    "EditResult",
    "EditScope",
    "ExpanderConfig",
    "ExpansionLimitExceeded",
    "Frequency",
    "InMemoryOccurrenceStore",
    "InvalidRule",
    "InvalidationKey",
    "OccurrenceMaterializer",
    "OccurrenceNotFound",
    "OccurrencePatch",
    "OccurrenceStore",
    "OverriddenOccurrence",
    "OverrideStoreAdapter",
    "RecurrenceEngineError",
    "RecurrenceRule",
    "SeriesEditor",
    "SeriesNotFound",
    "SeriesTemplate",
    "SplitIncomplete",
    "SqliteOccurrenceStore",
    "StorageUnavailable",
    "TemplatePayload",
    "TimeWindow",
    "Weekday",
    "__version__",
    "decode",
    "describe_rule",
    "encode",
    "expand",
]
