"""Occurrence expansion for recurring series.

Turns (anchor start, rule, bounds, window) into a chronological stream of
instants using dateutil's rrule. Expansion is pure and lazy: nothing is
materialized beyond what the caller consumes, and each call starts over.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule

from .exceptions import ExpansionLimitExceeded
from .models import Frequency, RecurrenceRule, SeriesTemplate, TimeWindow
from .timezone_utils import ensure_aware

logger = logging.getLogger(__name__)

_DATEUTIL_FREQ = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}
_DATEUTIL_DAYS = (MO, TU, WE, TH, FR, SA, SU)


@dataclass
class ExpanderConfig:
    """Configuration for occurrence expansion.

    max_occurrences_per_window, when set, is a hard guard on a single expand()
    call: a window holding more instants raises ExpansionLimitExceeded rather
    than returning a truncated list. None (the default) means no guard.
    """

    max_occurrences_per_window: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "ExpanderConfig":
        """Extract expander configuration from a settings object, with defaults."""
        return cls(
            max_occurrences_per_window=getattr(settings, "max_occurrences_per_window", None),
        )


def build_rrule(anchor_start: datetime, rule: RecurrenceRule) -> rrule:
    """Build an unbounded dateutil rrule stepping from anchor_start.

    Termination is applied by the caller so COUNT is counted from the
    recurrence start rather than from the anchor.
    """
    kwargs: dict[str, Any] = {
        "dtstart": anchor_start,
        "interval": rule.interval,
        "wkst": MO,
    }
    if rule.month_position is not None:
        (day,) = rule.by_weekday
        kwargs["byweekday"] = _DATEUTIL_DAYS[day.index](rule.month_position)
    elif rule.by_weekday:
        kwargs["byweekday"] = [_DATEUTIL_DAYS[day.index] for day in rule.sorted_weekdays]
    if rule.month_day is not None:
        kwargs["bymonthday"] = rule.month_day
    return rrule(_DATEUTIL_FREQ[rule.frequency], **kwargs)


def iter_series(
    anchor_start: datetime,
    rule: RecurrenceRule,
    recurrence_start: Optional[datetime] = None,
    recurrence_end: Optional[datetime] = None,
) -> Iterator[datetime]:
    """Yield every instant of a series, unbounded by any window."""
    anchor = ensure_aware(anchor_start).replace(microsecond=0)
    lower = anchor if recurrence_start is None else max(anchor, ensure_aware(recurrence_start))

    bounds = [ensure_aware(b) for b in (recurrence_end, rule.until) if b is not None]
    upper = min(bounds) if bounds else None
    count = rule.count

    produced = 0
    for instant in build_rrule(anchor, rule):
        if instant < lower:
            continue
        if upper is not None and instant > upper:
            return
        if count is not None and produced >= count:
            return
        produced += 1
        yield instant


def expand(
    anchor_start: datetime,
    rule: RecurrenceRule,
    recurrence_start: Optional[datetime],
    recurrence_end: Optional[datetime],
    window: TimeWindow,
    *,
    config: Optional[ExpanderConfig] = None,
) -> Iterator[datetime]:
    """Lazily yield the series' instants that fall inside window.

    Args:
        anchor_start: Start of the first occurrence, in the series timezone
        rule: Recurrence rule
        recurrence_start: Instants before this are not part of the series
        recurrence_end: Instants after this are not part of the series
        window: Inclusive query window
        config: Expansion guard

    Yields:
        Aware datetimes in ascending order, in the anchor's timezone

    Raises:
        ExpansionLimitExceeded: If the window holds more instants than the
            configured guard allows
    """
    config = config or ExpanderConfig()
    limit = config.max_occurrences_per_window

    yielded = 0
    for instant in iter_series(anchor_start, rule, recurrence_start, recurrence_end):
        # COUNT is consumed by iter_series before the window filter applies
        if instant > window.end:
            return
        if instant < window.start:
            continue
        if limit is not None and yielded >= limit:
            logger.warning(
                "Window %s..%s holds more than %d occurrences", window.start, window.end, limit
            )
            raise ExpansionLimitExceeded(
                f"Window {window.start.isoformat()}..{window.end.isoformat()} holds more than "
                f"{limit} occurrences",
                limit=limit,
            )
        yielded += 1
        yield instant


def expand_template(
    template: SeriesTemplate, window: TimeWindow, *, config: Optional[ExpanderConfig] = None
) -> Iterator[datetime]:
    """expand() with the bounds taken from a series template."""
    return expand(
        template.anchor_start,
        template.rule,
        template.recurrence_start,
        template.recurrence_end,
        window,
        config=config,
    )


def _iter_template(template: SeriesTemplate) -> Iterator[datetime]:
    return iter_series(
        template.anchor_start, template.rule, template.recurrence_start, template.recurrence_end
    )


def count_occurrences_before(template: SeriesTemplate, boundary: datetime) -> int:
    """Number of instants the series produces strictly before boundary."""
    boundary = ensure_aware(boundary)
    count = 0
    for instant in _iter_template(template):
        if instant >= boundary:
            break
        count += 1
    return count


def is_scheduled(template: SeriesTemplate, instant: datetime) -> bool:
    """True when the series produces exactly this instant."""
    instant = ensure_aware(instant)
    for candidate in _iter_template(template):
        if candidate == instant:
            return True
        if candidate > instant:
            return False
    return False


def first_occurrence(template: SeriesTemplate) -> Optional[datetime]:
    """First instant of the series, or None if it produces nothing."""
    return next(_iter_template(template), None)
