"""SQLite OccurrenceStore built on aiosqlite."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from ..exceptions import InvalidRule, SeriesNotFound
from ..models import (
    OccurrenceCompletion,
    OccurrenceOverride,
    OccurrencePatch,
    RecurrenceRule,
    SeriesSplit,
    SeriesTemplate,
    TemplatePayload,
    TimeWindow,
)
from ..rrule_codec import decode, encode
from ..timezone_utils import instant_key, parse_instant_key
from .base import OccurrenceStore, ensure_unchanged

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS series_templates (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        anchor_start TEXT NOT NULL,
        timezone TEXT NOT NULL,
        rule TEXT NOT NULL,
        recurrence_start TEXT NOT NULL,
        recurrence_end TEXT,
        fields TEXT NOT NULL,
        parent_series_id TEXT,
        created_at TEXT NOT NULL,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_series_templates_company
    ON series_templates(company_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrence_overrides (
        series_id TEXT NOT NULL,
        occurrence_instant TEXT NOT NULL,
        fields TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (series_id, occurrence_instant),
        FOREIGN KEY (series_id) REFERENCES series_templates(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrence_exceptions (
        series_id TEXT NOT NULL,
        occurrence_instant TEXT NOT NULL,
        PRIMARY KEY (series_id, occurrence_instant),
        FOREIGN KEY (series_id) REFERENCES series_templates(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrence_completions (
        series_id TEXT NOT NULL,
        occurrence_instant TEXT NOT NULL,
        completed_at TEXT NOT NULL,
        completed_by TEXT,
        PRIMARY KEY (series_id, occurrence_instant),
        FOREIGN KEY (series_id) REFERENCES series_templates(id) ON DELETE CASCADE
    )
    """,
)

_SIDE_TABLES = ("occurrence_overrides", "occurrence_exceptions", "occurrence_completions")

_UPSERT_TEMPLATE = """
    INSERT INTO series_templates (
        id, company_id, anchor_start, timezone, rule, recurrence_start,
        recurrence_end, fields, parent_series_id, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        company_id = excluded.company_id,
        anchor_start = excluded.anchor_start,
        timezone = excluded.timezone,
        rule = excluded.rule,
        recurrence_start = excluded.recurrence_start,
        recurrence_end = excluded.recurrence_end,
        fields = excluded.fields,
        parent_series_id = excluded.parent_series_id,
        updated_at = CURRENT_TIMESTAMP
"""

_INSERT_TEMPLATE = """
    INSERT INTO series_templates (
        id, company_id, anchor_start, timezone, rule, recurrence_start,
        recurrence_end, fields, parent_series_id, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

# Only the termination of a split or truncated series is rewritten
_UPDATE_TERMINATION = """
    UPDATE series_templates
    SET rule = ?, recurrence_end = ?, updated_at = CURRENT_TIMESTAMP
    WHERE id = ?
"""


class SqliteOccurrenceStore(OccurrenceStore):
    """OccurrenceStore persisted in a SQLite database.

    Every operation opens its own connection. Multi-row writes run inside an
    explicit BEGIN IMMEDIATE transaction and are rolled back on any error, which
    is what makes split_series() and truncate_series() atomic.
    """

    def __init__(self, database_path: Union[Path, str]):
        """Initialize the store.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path) if isinstance(database_path, str) else database_path
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.info("Occurrence store initialized (lazy): %s", self.database_path)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            # Double-check after acquiring lock
            if self._initialized:
                return

            async with aiosqlite.connect(str(self.database_path)) as db:
                # WAL for concurrent readers while a split transaction is open
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("PRAGMA foreign_keys=ON")
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()

            self._initialized = True
            logger.debug("Occurrence store schema ready: %s", self.database_path)

    async def initialize(self) -> None:
        """Create the schema now instead of on first use."""
        await self._ensure_initialized()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._ensure_initialized()
        async with aiosqlite.connect(str(self.database_path), isolation_level=None) as db:
            # foreign_keys is per connection
            await db.execute("PRAGMA foreign_keys=ON")
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # Templates

    async def load_template(self, series_id: str) -> SeriesTemplate:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM series_templates WHERE id = ?", (series_id,))
            row = await cursor.fetchone()
        if row is None:
            raise SeriesNotFound(series_id)
        return _row_to_template(row)

    async def save_template(self, template: SeriesTemplate) -> None:
        async with self._connect() as db:
            await db.execute(_UPSERT_TEMPLATE, _template_params(template))

    async def delete_template(self, series_id: str) -> None:
        async with self._connect() as db:
            # Side-table rows go with it via ON DELETE CASCADE
            await db.execute("DELETE FROM series_templates WHERE id = ?", (series_id,))

    async def list_templates(self, company_id: str) -> list[SeriesTemplate]:
        """All templates owned by company_id, oldest first."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM series_templates WHERE company_id = ? ORDER BY created_at, id",
                (company_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_template(row) for row in rows]

    # Window-bounded reads

    async def fetch_overrides(self, series_id: str, window: TimeWindow) -> list[OccurrenceOverride]:
        rows = await self._fetch_window("occurrence_overrides", series_id, window)
        return [
            OccurrenceOverride(
                series_id=row["series_id"],
                occurrence_instant=parse_instant_key(row["occurrence_instant"]),
                fields=OccurrencePatch.model_validate_json(row["fields"]),
                created_at=parse_instant_key(row["created_at"]),
            )
            for row in rows
        ]

    async def fetch_exceptions(self, series_id: str, window: TimeWindow) -> list[datetime]:
        rows = await self._fetch_window("occurrence_exceptions", series_id, window)
        return [parse_instant_key(row["occurrence_instant"]) for row in rows]

    async def fetch_completions(
        self, series_id: str, window: TimeWindow
    ) -> list[OccurrenceCompletion]:
        rows = await self._fetch_window("occurrence_completions", series_id, window)
        return [
            OccurrenceCompletion(
                series_id=row["series_id"],
                occurrence_instant=parse_instant_key(row["occurrence_instant"]),
                completed_at=parse_instant_key(row["completed_at"]),
                completed_by=row["completed_by"],
            )
            for row in rows
        ]

    async def _fetch_window(self, table: str, series_id: str, window: TimeWindow) -> list[Any]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM {table} "  # noqa: S608 - table name from a fixed tuple
                "WHERE series_id = ? AND occurrence_instant BETWEEN ? AND ? "
                "ORDER BY occurrence_instant",
                (series_id, instant_key(window.start), instant_key(window.end)),
            )
            return list(await cursor.fetchall())

    # Side-table writes

    async def upsert_override(self, override: OccurrenceOverride) -> None:
        key = instant_key(override.occurrence_instant)
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM occurrence_exceptions WHERE series_id = ? AND occurrence_instant = ?",
                (override.series_id, key),
            )
            await db.execute(
                """
                INSERT INTO occurrence_overrides (series_id, occurrence_instant, fields, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(series_id, occurrence_instant) DO UPDATE SET fields = excluded.fields
                """,
                (
                    override.series_id,
                    key,
                    override.fields.model_dump_json(exclude_unset=True),
                    instant_key(override.created_at),
                ),
            )

    async def upsert_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        key = instant_key(occurrence_instant)
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM occurrence_overrides WHERE series_id = ? AND occurrence_instant = ?",
                (series_id, key),
            )
            await db.execute(
                "INSERT OR IGNORE INTO occurrence_exceptions (series_id, occurrence_instant) VALUES (?, ?)",
                (series_id, key),
            )

    async def delete_override(self, series_id: str, occurrence_instant: datetime) -> None:
        await self._delete_row("occurrence_overrides", series_id, occurrence_instant)

    async def delete_exception(self, series_id: str, occurrence_instant: datetime) -> None:
        await self._delete_row("occurrence_exceptions", series_id, occurrence_instant)

    async def upsert_completion(self, completion: OccurrenceCompletion) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO occurrence_completions
                    (series_id, occurrence_instant, completed_at, completed_by)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(series_id, occurrence_instant) DO UPDATE SET
                    completed_at = excluded.completed_at,
                    completed_by = excluded.completed_by
                """,
                (
                    completion.series_id,
                    instant_key(completion.occurrence_instant),
                    instant_key(completion.completed_at),
                    completion.completed_by,
                ),
            )

    async def delete_completion(self, series_id: str, occurrence_instant: datetime) -> None:
        await self._delete_row("occurrence_completions", series_id, occurrence_instant)

    async def _delete_row(self, table: str, series_id: str, occurrence_instant: datetime) -> None:
        async with self._connect() as db:
            await db.execute(
                f"DELETE FROM {table} WHERE series_id = ? AND occurrence_instant = ?",  # noqa: S608
                (series_id, instant_key(occurrence_instant)),
            )

    # Atomic multi-row operations

    async def split_series(self, split: SeriesSplit) -> None:
        boundary = instant_key(split.reparent_from)
        new_id = split.new_template.id
        async with self._transaction() as db:
            current = await self._locked_template(db, split.original_id)
            ensure_unchanged(
                split.original_id,
                split.boundary_instant,
                current.rule,
                current.fields,
                split.expected_rule,
                split.expected_fields,
            )

            await db.execute(
                _UPDATE_TERMINATION, _termination_params(split.truncated_original, split.original_id)
            )
            # Plain INSERT: a clashing id must abort the whole split
            await db.execute(_INSERT_TEMPLATE, _template_params(split.new_template))
            for table in _SIDE_TABLES:
                await db.execute(
                    f"UPDATE {table} SET series_id = ? "  # noqa: S608
                    "WHERE series_id = ? AND occurrence_instant >= ?",
                    (new_id, split.original_id, boundary),
                )

        logger.info(
            "Split series %s at %s into %s", split.original_id, split.boundary_instant, new_id
        )

    async def truncate_series(
        self,
        truncated_template: SeriesTemplate,
        drop_from: datetime,
        *,
        expected_rule: Optional[RecurrenceRule] = None,
    ) -> None:
        series_id = truncated_template.id
        key = instant_key(drop_from)
        async with self._transaction() as db:
            current = await self._locked_template(db, series_id)
            ensure_unchanged(series_id, drop_from, current.rule, current.fields, expected_rule)

            await db.execute(_UPDATE_TERMINATION, _termination_params(truncated_template, series_id))
            for table in _SIDE_TABLES:
                await db.execute(
                    f"DELETE FROM {table} WHERE series_id = ? AND occurrence_instant >= ?",  # noqa: S608
                    (series_id, key),
                )

    async def _locked_template(self, db: aiosqlite.Connection, series_id: str) -> SeriesTemplate:
        """Read a template inside an open write transaction."""
        cursor = await db.execute("SELECT * FROM series_templates WHERE id = ?", (series_id,))
        row = await cursor.fetchone()
        if row is None:
            raise SeriesNotFound(series_id)
        return _row_to_template(row)


def _termination_params(truncated: SeriesTemplate, series_id: str) -> tuple[Any, ...]:
    return (
        encode(truncated.rule),
        instant_key(truncated.recurrence_end) if truncated.recurrence_end is not None else None,
        series_id,
    )


def _template_params(template: SeriesTemplate) -> tuple[Any, ...]:
    return (
        template.id,
        template.company_id,
        instant_key(template.anchor_start),
        template.timezone,
        encode(template.rule),
        instant_key(template.recurrence_start),
        instant_key(template.recurrence_end) if template.recurrence_end is not None else None,
        template.fields.model_dump_json(),
        template.parent_series_id,
        instant_key(template.created_at),
    )


def _row_to_template(row: Any) -> SeriesTemplate:
    rule = decode(row["rule"], row["timezone"])
    if rule is None:
        raise InvalidRule(f"Stored series {row['id']} has an empty rule")
    return SeriesTemplate(
        id=row["id"],
        company_id=row["company_id"],
        anchor_start=parse_instant_key(row["anchor_start"]),
        timezone=row["timezone"],
        rule=rule,
        recurrence_start=parse_instant_key(row["recurrence_start"]),
        recurrence_end=(
            parse_instant_key(row["recurrence_end"]) if row["recurrence_end"] is not None else None
        ),
        fields=TemplatePayload.model_validate_json(row["fields"]),
        parent_series_id=row["parent_series_id"],
        created_at=parse_instant_key(row["created_at"]),
    )
