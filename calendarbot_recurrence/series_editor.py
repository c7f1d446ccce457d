"""Edits and cancellations of recurring series.

Three scopes are supported:

* single: one occurrence, stored as an override or exception keyed by the
  occurrence's original instant
* future: the occurrence and everything after it, done by splitting the series
  at that instant into a truncated original and a new series
* series: the template itself, leaving per-occurrence overrides in place

Every mutation returns an EditResult that lists the cache keys it invalidated.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Mapping, Sequence
from datetime import datetime
from typing import Any, Optional, Protocol, TypeVar, Union

from .exceptions import (
    InvalidRule,
    OccurrenceNotFound,
    RecurrenceEngineError,
    SplitIncomplete,
    StorageUnavailable,
)
from .models import (
    CountTermination,
    EditResult,
    EditScope,
    InvalidationKey,
    OccurrenceCompletion,
    OccurrenceOverride,
    OccurrencePatch,
    RecurrenceRule,
    SeriesSplit,
    SeriesTemplate,
    TemplatePayload,
    TimeWindow,
    UntilTermination,
)
from .override_store import OverrideStoreAdapter
from .rrule_codec import decode, rule_from_mapping
from .rrule_expander import ExpanderConfig, count_occurrences_before, first_occurrence, is_scheduled
from .store.base import OccurrenceStore
from .timezone_utils import DEFAULT_TIMEZONE, TICK, now_utc, to_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

RuleInput = Union[RecurrenceRule, str, Mapping[str, Any]]
PatchInput = Union[OccurrencePatch, Mapping[str, Any]]


class CacheInvalidator(Protocol):
    """Receives the cache keys a mutation invalidated.

    invalidate() may be a plain method or a coroutine function.
    """

    def invalidate(self, keys: Sequence[InvalidationKey]) -> Any: ...


class SeriesEditor:
    """Applies single / future / series edits through an OccurrenceStore."""

    def __init__(
        self,
        store: OccurrenceStore,
        *,
        config: Optional[ExpanderConfig] = None,
        invalidator: Optional[CacheInvalidator] = None,
    ):
        self.store = store
        self.config = config or ExpanderConfig()
        self.invalidator = invalidator
        self._reader = OverrideStoreAdapter(store)

    # Creation

    async def create_series(
        self,
        company_id: str,
        anchor_start: datetime,
        rule: RuleInput,
        fields: Union[TemplatePayload, Mapping[str, Any]],
        *,
        timezone: str = DEFAULT_TIMEZONE,
        recurrence_start: Optional[datetime] = None,
        series_id: Optional[str] = None,
    ) -> EditResult:
        """Validate and store a new series template.

        Raises:
            InvalidRule: If the rule is missing or invalid
        """
        parsed_rule = _coerce_rule(rule, timezone)
        payload = fields if isinstance(fields, TemplatePayload) else TemplatePayload(**fields)

        template = SeriesTemplate(
            id=series_id or uuid.uuid4().hex,
            company_id=company_id,
            anchor_start=anchor_start,
            timezone=timezone,
            rule=parsed_rule,
            recurrence_start=recurrence_start,
            fields=payload,
        )
        await self._write(template.id, "save template", self.store.save_template(template))
        logger.info("Created series %s for company %s", template.id, company_id)

        return await self._finish(EditScope.SERIES, template.id, [InvalidationKey(series_id=template.id)])

    # Single occurrence

    async def edit_single(
        self, series_id: str, occurrence_instant: datetime, patch: PatchInput
    ) -> EditResult:
        """Override fields of one occurrence.

        A second edit of the same occurrence is merged onto the first, and an
        edit of a skipped occurrence brings it back.
        """
        patch = _coerce_patch(patch)
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, occurrence_instant)

        existing = (await self._reader.fetch_overrides(series_id, TimeWindow.around(key))).get(key)
        if existing is not None:
            override = existing.model_copy(update={"fields": existing.fields.merged_with(patch)})
        else:
            override = OccurrenceOverride(series_id=series_id, occurrence_instant=key, fields=patch)

        await self._write(series_id, "upsert override", self.store.upsert_override(override))
        logger.info("Overrode occurrence %s of series %s", key, series_id)
        return await self._finish(EditScope.SINGLE, series_id, [_span(series_id, key, key)])

    async def cancel_single(self, series_id: str, occurrence_instant: datetime) -> EditResult:
        """Skip one occurrence."""
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, occurrence_instant)

        await self._write(series_id, "upsert exception", self.store.upsert_exception(series_id, key))
        logger.info("Cancelled occurrence %s of series %s", key, series_id)
        return await self._finish(EditScope.SINGLE, series_id, [_span(series_id, key, key)])

    async def restore_single(self, series_id: str, occurrence_instant: datetime) -> EditResult:
        """Undo cancel_single() for one occurrence."""
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, occurrence_instant)

        await self._write(series_id, "delete exception", self.store.delete_exception(series_id, key))
        logger.info("Restored occurrence %s of series %s", key, series_id)
        return await self._finish(EditScope.SINGLE, series_id, [_span(series_id, key, key)])

    # Whole series

    async def edit_series(
        self,
        series_id: str,
        patch: Optional[PatchInput] = None,
        *,
        rule: Optional[RuleInput] = None,
    ) -> EditResult:
        """Change template fields and/or the rule in place. Overrides are kept."""
        template = await self._reader.load_template(series_id)
        updated = _apply_template_edit(template, patch, rule)

        await self._write(series_id, "save template", self.store.save_template(updated))
        logger.info("Edited series %s", series_id)
        return await self._finish(EditScope.SERIES, series_id, [InvalidationKey(series_id=series_id)])

    async def cancel_series(self, series_id: str) -> EditResult:
        """Delete a series with all its overrides, exceptions and completions."""
        await self._reader.load_template(series_id)

        await self._write(series_id, "delete template", self.store.delete_template(series_id))
        logger.info("Cancelled series %s", series_id)
        return await self._finish(EditScope.SERIES, series_id, [InvalidationKey(series_id=series_id)])

    # This and future

    async def edit_future(
        self,
        series_id: str,
        boundary: datetime,
        patch: Optional[PatchInput] = None,
        *,
        rule: Optional[RuleInput] = None,
    ) -> EditResult:
        """Apply an edit to the occurrence at boundary and every later one.

        Splits the series: the original keeps the occurrences before boundary,
        a new series starting at boundary carries the edit. Overrides,
        exceptions and completions at or after boundary move to the new series.

        Raises:
            OccurrenceNotFound: If boundary is not an occurrence of the series
            SplitIncomplete: If the storage split did not complete, or the series
                changed after it was loaded
        """
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, boundary)

        if _is_first(template, key):
            # Nothing before the boundary to keep on the original
            updated = _apply_template_edit(template, patch, rule)
            await self._write(series_id, "save template", self.store.save_template(updated))
            logger.info("Edited series %s from its first occurrence", series_id)
            return await self._finish(EditScope.FUTURE, series_id, [InvalidationKey(series_id=series_id)])

        kept = count_occurrences_before(template, key)
        truncated = self._truncate(template, key, kept)
        new_template = self._successor(template, key, kept, patch, rule)

        split = SeriesSplit(
            original_id=series_id,
            boundary_instant=key,
            truncated_original=truncated,
            new_template=new_template,
            reparent_from=key,
            expected_rule=template.rule,
            expected_fields=template.fields,
        )
        try:
            await self.store.split_series(split)
        except SplitIncomplete:
            logger.warning("Series %s changed while splitting at %s", series_id, key)
            raise
        except Exception as e:
            logger.exception("Split of series %s at %s failed", series_id, key)
            raise SplitIncomplete(
                f"Split of series {series_id} at {key.isoformat()} did not complete",
                original_id=series_id,
                boundary_instant=key,
            ) from e

        logger.info(
            "Split series %s at %s: kept %d occurrences, new series %s",
            series_id,
            key,
            kept,
            new_template.id,
        )
        return await self._finish(
            EditScope.FUTURE,
            series_id,
            [_span(series_id, key, None), InvalidationKey(series_id=new_template.id)],
            new_series_id=new_template.id,
        )

    async def cancel_future(self, series_id: str, boundary: datetime) -> EditResult:
        """End the series just before boundary, dropping later side-table rows."""
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, boundary)

        if _is_first(template, key):
            await self._write(series_id, "delete template", self.store.delete_template(series_id))
            logger.info("Cancelled series %s from its first occurrence", series_id)
            return await self._finish(EditScope.FUTURE, series_id, [InvalidationKey(series_id=series_id)])

        truncated = self._truncate(template, key, count_occurrences_before(template, key))
        try:
            await self.store.truncate_series(truncated, key, expected_rule=template.rule)
        except SplitIncomplete:
            logger.warning("Series %s changed while truncating at %s", series_id, key)
            raise
        except Exception as e:
            logger.exception("Truncation of series %s at %s failed", series_id, key)
            raise SplitIncomplete(
                f"Truncation of series {series_id} at {key.isoformat()} did not complete",
                original_id=series_id,
                boundary_instant=key,
            ) from e

        logger.info("Cancelled series %s from %s", series_id, key)
        return await self._finish(EditScope.FUTURE, series_id, [_span(series_id, key, None)])

    # Completion tracking

    async def complete_occurrence(
        self, series_id: str, occurrence_instant: datetime, completed_by: Optional[str] = None
    ) -> EditResult:
        """Mark one occurrence of a recurring task done. Repeating it is a no-op."""
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, occurrence_instant)

        existing = await self._reader.fetch_completions(series_id, TimeWindow.around(key))
        if key in existing:
            return EditResult(scope=EditScope.SINGLE, series_id=series_id)

        completion = OccurrenceCompletion(
            series_id=series_id,
            occurrence_instant=key,
            completed_at=now_utc(),
            completed_by=completed_by,
        )
        await self._write(series_id, "upsert completion", self.store.upsert_completion(completion))
        logger.info("Completed occurrence %s of series %s", key, series_id)
        return await self._finish(EditScope.SINGLE, series_id, [_span(series_id, key, key)])

    async def uncomplete_occurrence(self, series_id: str, occurrence_instant: datetime) -> EditResult:
        template = await self._reader.load_template(series_id)
        key = self._require_scheduled(template, occurrence_instant)

        await self._write(series_id, "delete completion", self.store.delete_completion(series_id, key))
        logger.info("Reopened occurrence %s of series %s", key, series_id)
        return await self._finish(EditScope.SINGLE, series_id, [_span(series_id, key, key)])

    # Scope dispatch

    async def edit(
        self,
        scope: Union[EditScope, str],
        series_id: str,
        occurrence_instant: Optional[datetime] = None,
        patch: Optional[PatchInput] = None,
        *,
        rule: Optional[RuleInput] = None,
    ) -> EditResult:
        """Edit with the scope given as data ("single", "future" or "series")."""
        scope = EditScope(scope)
        if scope == EditScope.SERIES:
            return await self.edit_series(series_id, patch, rule=rule)

        if occurrence_instant is None:
            raise ValueError(f"{scope.value} edits need an occurrence instant")
        if scope == EditScope.SINGLE:
            if rule is not None:
                raise ValueError("single-occurrence edits cannot change the rule")
            return await self.edit_single(series_id, occurrence_instant, patch or OccurrencePatch())
        return await self.edit_future(series_id, occurrence_instant, patch, rule=rule)

    async def cancel(
        self,
        scope: Union[EditScope, str],
        series_id: str,
        occurrence_instant: Optional[datetime] = None,
    ) -> EditResult:
        """Cancel with the scope given as data."""
        scope = EditScope(scope)
        if scope == EditScope.SERIES:
            return await self.cancel_series(series_id)

        if occurrence_instant is None:
            raise ValueError(f"{scope.value} cancellations need an occurrence instant")
        if scope == EditScope.SINGLE:
            return await self.cancel_single(series_id, occurrence_instant)
        return await self.cancel_future(series_id, occurrence_instant)

    # Internals

    def _require_scheduled(self, template: SeriesTemplate, instant: datetime) -> datetime:
        key = to_utc(instant)
        if not is_scheduled(template, key):
            raise OccurrenceNotFound(
                f"Series {template.id} has no occurrence at {key.isoformat()}",
                series_id=template.id,
                occurrence_instant=key,
            )
        return key

    def _truncate(self, template: SeriesTemplate, boundary: datetime, kept: int) -> SeriesTemplate:
        last_kept = boundary - TICK
        if template.rule.count is not None:
            rule = template.rule.with_termination(CountTermination(count=kept))
        else:
            rule = template.rule.with_termination(UntilTermination(until=last_kept))
        return _rebuild(template, rule=rule, recurrence_end=last_kept)

    def _successor(
        self,
        template: SeriesTemplate,
        boundary: datetime,
        kept: int,
        patch: Optional[PatchInput],
        rule: Optional[RuleInput],
    ) -> SeriesTemplate:
        if rule is not None:
            new_rule = _coerce_rule(rule, template.timezone)
            recurrence_end = None
        else:
            recurrence_end = template.recurrence_end
            if template.rule.count is not None:
                remaining = template.rule.count - kept
                new_rule = template.rule.with_termination(CountTermination(count=remaining))
            else:
                new_rule = template.rule

        fields = template.fields
        if patch is not None:
            fields = fields.overlay(_coerce_patch(patch))

        return SeriesTemplate(
            id=uuid.uuid4().hex,
            company_id=template.company_id,
            anchor_start=boundary,
            timezone=template.timezone,
            rule=new_rule,
            recurrence_start=boundary,
            recurrence_end=recurrence_end,
            fields=fields,
            parent_series_id=template.id,
        )

    async def _write(self, series_id: str, what: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except RecurrenceEngineError:
            raise
        except Exception as e:
            logger.warning("Failed to %s for series %s: %s", what, series_id, e)
            raise StorageUnavailable(f"Failed to {what} for series {series_id}", series_id=series_id) from e

    async def _finish(
        self,
        scope: EditScope,
        series_id: str,
        invalidations: list[InvalidationKey],
        new_series_id: Optional[str] = None,
    ) -> EditResult:
        result = EditResult(
            scope=scope,
            series_id=series_id,
            new_series_id=new_series_id,
            invalidations=invalidations,
        )
        if self.invalidator is not None and invalidations:
            try:
                outcome = self.invalidator.invalidate(invalidations)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                # The mutation is already committed; stale caches expire on their own
                logger.exception("Cache invalidation failed for series %s", series_id)
        return result


def _is_first(template: SeriesTemplate, key: datetime) -> bool:
    first = first_occurrence(template)
    return first is not None and to_utc(first) == key


def _span(series_id: str, start: Optional[datetime], end: Optional[datetime]) -> InvalidationKey:
    return InvalidationKey(series_id=series_id, start=start, end=end)


def _coerce_patch(patch: PatchInput) -> OccurrencePatch:
    if isinstance(patch, OccurrencePatch):
        return patch
    return OccurrencePatch(**patch)


def _coerce_rule(rule: RuleInput, timezone: str) -> RecurrenceRule:
    if isinstance(rule, RecurrenceRule):
        return rule
    if isinstance(rule, str):
        parsed = decode(rule, timezone)
        if parsed is None:
            raise InvalidRule("A recurring series needs a rule")
        return parsed
    return rule_from_mapping(rule, strict=True)


def _rebuild(template: SeriesTemplate, **updates: Any) -> SeriesTemplate:
    """Copy a template with updates, re-running its validators."""
    data = {name: getattr(template, name) for name in SeriesTemplate.model_fields}
    data.update(updates)
    return SeriesTemplate(**data)


def _apply_template_edit(
    template: SeriesTemplate, patch: Optional[PatchInput], rule: Optional[RuleInput]
) -> SeriesTemplate:
    updates: dict[str, Any] = {}
    if patch is not None:
        updates["fields"] = template.fields.overlay(_coerce_patch(patch))
    if rule is not None:
        new_rule = _coerce_rule(rule, template.timezone)
        updates["rule"] = new_rule
        updates["recurrence_end"] = new_rule.until
    return _rebuild(template, **updates)
