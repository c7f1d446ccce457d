"""Storage collaborators for the recurrence engine."""

from .base import OccurrenceStore
from .memory_store import InMemoryOccurrenceStore
from .sqlite_store import SqliteOccurrenceStore

__all__ = ["InMemoryOccurrenceStore", "OccurrenceStore", "SqliteOccurrenceStore"]
