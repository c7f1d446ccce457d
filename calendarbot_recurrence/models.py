"""Data models for the recurring schedule engine."""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from .timezone_utils import normalize_timezone_name, now_utc, to_utc, to_zone


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(str, Enum):
    """Weekday codes as used in rule strings (Monday first)."""

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def index(self) -> int:
        """Python weekday number (Monday == 0)."""
        return list(Weekday).index(self)

    @classmethod
    def from_datetime(cls, dt: datetime) -> "Weekday":
        return list(cls)[dt.weekday()]


# Termination: Count(n) | Until(instant) | Unbounded


class CountTermination(BaseModel):
    """Series ends after a fixed number of occurrences."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["count"] = "count"
    count: int = Field(..., ge=1, description="Total occurrences since recurrence start")


class UntilTermination(BaseModel):
    """Series ends at an instant (inclusive)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["until"] = "until"
    until: datetime = Field(..., description="Last instant an occurrence may fall on")

    @field_validator("until")
    @classmethod
    def _normalize_until(cls, value: datetime) -> datetime:
        return to_utc(value)


class UnboundedTermination(BaseModel):
    """Series never ends on its own."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["never"] = "never"


Termination = Annotated[
    Union[CountTermination, UntilTermination, UnboundedTermination],
    Field(discriminator="kind"),
]

VALID_MONTH_POSITIONS = (-1, 1, 2, 3, 4, 5)


class RecurrenceRule(BaseModel):
    """Structured recurrence rule (value type).

    Weekly rules may carry a weekday set; an empty set means "the weekday of the
    anchor start". Monthly rules either repeat on the anchor's day of month, on an
    explicit month_day, or on the nth weekday of the month (month_position plus a
    single weekday).
    """

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1, description="Every N units of frequency")
    by_weekday: frozenset[Weekday] = Field(default_factory=frozenset)
    month_position: Optional[int] = Field(
        default=None, description="Monthly nth weekday position (1..5, or -1 for last)"
    )
    month_day: Optional[int] = Field(default=None, ge=1, le=31)
    termination: Termination = Field(default_factory=UnboundedTermination)

    @field_validator("month_position")
    @classmethod
    def _check_month_position(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value not in VALID_MONTH_POSITIONS:
            raise ValueError(f"month_position must be one of {VALID_MONTH_POSITIONS}")
        return value

    @model_validator(mode="after")
    def _check_combination(self) -> "RecurrenceRule":
        if self.by_weekday and self.frequency not in (Frequency.WEEKLY, Frequency.MONTHLY):
            raise ValueError("by_weekday is only valid for weekly and monthly rules")
        if self.frequency == Frequency.MONTHLY and self.by_weekday and self.month_position is None:
            raise ValueError("monthly weekday rules require a month_position")
        if self.month_position is not None:
            if self.frequency != Frequency.MONTHLY:
                raise ValueError("month_position is only valid for monthly rules")
            if len(self.by_weekday) != 1:
                raise ValueError("month_position requires exactly one weekday")
            if self.month_day is not None:
                raise ValueError("month_position and month_day are mutually exclusive")
        if self.month_day is not None and self.frequency != Frequency.MONTHLY:
            raise ValueError("month_day is only valid for monthly rules")
        return self

    @property
    def count(self) -> Optional[int]:
        if isinstance(self.termination, CountTermination):
            return self.termination.count
        return None

    @property
    def until(self) -> Optional[datetime]:
        if isinstance(self.termination, UntilTermination):
            return self.termination.until
        return None

    @property
    def sorted_weekdays(self) -> list[Weekday]:
        return sorted(self.by_weekday, key=lambda day: day.index)

    def with_termination(
        self, termination: Union[CountTermination, UntilTermination, UnboundedTermination]
    ) -> "RecurrenceRule":
        """Return a copy with the same shape and a different termination."""
        return self.model_copy(update={"termination": termination})


class TemplatePayload(BaseModel):
    """Base fields every occurrence of a series inherits."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1, description="Event/task title")
    description: Optional[str] = Field(default=None, description="Body text")
    priority: Optional[str] = Field(default=None, description="Task priority")
    status: Optional[str] = Field(default=None, description="Task/event status")
    location: Optional[str] = Field(default=None, description="Location display name")
    color: Optional[str] = Field(default=None, description="Calendar color")
    duration_minutes: Optional[int] = Field(default=None, ge=0, description="Occurrence length")

    def overlay(self, patch: "OccurrencePatch") -> "TemplatePayload":
        """Explicit field overlay: self with every field set on the patch replaced."""
        updates = patch.payload_updates()
        if not updates:
            return self
        return TemplatePayload.model_validate({**self.model_dump(), **updates})


class OccurrencePatch(BaseModel):
    """Partial payload. Only fields explicitly set are part of the patch."""

    model_config = ConfigDict(frozen=True)

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    location: Optional[str] = None
    color: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    rescheduled_to: Optional[datetime] = Field(
        default=None, description="Displayed start when an occurrence was moved"
    )

    @field_validator("rescheduled_to")
    @classmethod
    def _normalize_rescheduled(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _title_not_cleared(self) -> "OccurrencePatch":
        if "title" in self.model_fields_set and self.title is None:
            raise ValueError("title cannot be cleared by a patch")
        return self

    def payload_updates(self) -> dict[str, Any]:
        """The subset of TemplatePayload fields this patch sets."""
        return self.model_dump(include=self.model_fields_set - {"rescheduled_to"})

    def merged_with(self, other: "OccurrencePatch") -> "OccurrencePatch":
        """Return a patch with other's set fields applied on top of self's."""
        data = self.model_dump(include=self.model_fields_set)
        data.update(other.model_dump(include=other.model_fields_set))
        return OccurrencePatch(**data)

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class TimeWindow(BaseModel):
    """Query window; both ends inclusive."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError("window end must not precede window start")
        return self

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end

    @classmethod
    def around(cls, instant: datetime) -> "TimeWindow":
        """Degenerate window holding a single instant."""
        return cls(start=instant, end=instant)


class SeriesTemplate(BaseModel):
    """Canonical master record of a recurring event or task."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Series id")
    company_id: str = Field(..., description="Owning tenant")
    anchor_start: datetime = Field(..., description="Start of the first occurrence")
    timezone: str = Field(default="UTC", description="IANA timezone of the series")
    rule: RecurrenceRule
    recurrence_start: datetime = Field(
        ..., description="First instant the rule applies from (defaults to anchor)"
    )
    recurrence_end: Optional[datetime] = Field(
        default=None, description="Cached upper bound, mirrors an UNTIL termination"
    )
    fields: TemplatePayload
    parent_series_id: Optional[str] = Field(
        default=None, description="Series this one was split from"
    )
    created_at: datetime = Field(default_factory=now_utc)

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str) -> str:
        return normalize_timezone_name(value)

    @model_validator(mode="before")
    @classmethod
    def _default_recurrence_start(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("recurrence_start") is None:
            return {**data, "recurrence_start": data.get("anchor_start")}
        return data

    @model_validator(mode="after")
    def _normalize_instants(self) -> "SeriesTemplate":
        # Wall-clock stepping happens in the series timezone
        self.anchor_start = to_zone(self.anchor_start, self.timezone)
        self.recurrence_start = to_zone(self.recurrence_start, self.timezone)
        if self.recurrence_end is None and self.rule.until is not None:
            self.recurrence_end = self.rule.until
        if self.recurrence_end is not None:
            self.recurrence_end = to_utc(self.recurrence_end)
        self.created_at = to_utc(self.created_at)
        return self

    @property
    def effective_start(self) -> datetime:
        """Earliest instant an occurrence of this series may fall on."""
        return max(self.anchor_start, self.recurrence_start)


class OccurrenceOverride(BaseModel):
    """Per-occurrence field diff keyed by the occurrence's original instant."""

    series_id: str
    occurrence_instant: datetime = Field(..., description="Original instant (the key)")
    fields: OccurrencePatch
    created_at: datetime = Field(default_factory=now_utc)

    @field_validator("occurrence_instant", "created_at")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_utc(value)


class OccurrenceException(BaseModel):
    """Marker removing one instant from a series' expansion."""

    model_config = ConfigDict(frozen=True)

    series_id: str
    occurrence_instant: datetime

    @field_validator("occurrence_instant")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_utc(value)


class OccurrenceCompletion(BaseModel):
    """Completion record for one occurrence of a recurring task."""

    series_id: str
    occurrence_instant: datetime
    completed_at: datetime = Field(default_factory=now_utc)
    completed_by: Optional[str] = None

    @field_validator("occurrence_instant", "completed_at")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_utc(value)


# Occurrence = Base | Overridden(fields)


class _OccurrenceCommon(BaseModel):
    model_config = ConfigDict(frozen=True)

    series_id: str
    scheduled_instant: datetime
    effective_fields: TemplatePayload
    completion: Optional[OccurrenceCompletion] = None

    @property
    def is_override(self) -> bool:
        return False

    @property
    def is_completed(self) -> bool:
        return self.completion is not None

    @property
    def display_start(self) -> datetime:
        return self.scheduled_instant

    @property
    def display_end(self) -> Optional[datetime]:
        minutes = self.effective_fields.duration_minutes
        if minutes is None:
            return None
        return self.display_start + timedelta(minutes=minutes)

    @field_serializer("scheduled_instant")
    def serialize_instant(self, dt: datetime) -> str:
        return dt.isoformat()


class BaseOccurrence(_OccurrenceCommon):
    """Occurrence carrying the template's fields unchanged."""

    kind: Literal["base"] = "base"


class OverriddenOccurrence(_OccurrenceCommon):
    """Occurrence whose fields were edited individually."""

    kind: Literal["overridden"] = "overridden"
    override: OccurrencePatch

    @property
    def is_override(self) -> bool:
        return True

    @property
    def display_start(self) -> datetime:
        if self.override.rescheduled_to is not None:
            return self.override.rescheduled_to
        return self.scheduled_instant


Occurrence = Annotated[Union[BaseOccurrence, OverriddenOccurrence], Field(discriminator="kind")]


class EditScope(str, Enum):
    """Which occurrences an edit applies to."""

    SINGLE = "single"
    FUTURE = "future"
    SERIES = "series"


class InvalidationKey(BaseModel):
    """Cache-key declaration: the span of a series' views a mutation may change.

    A bound of None is open on that side.
    """

    model_config = ConfigDict(frozen=True)

    series_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def affects(self, series_id: str, window: TimeWindow) -> bool:
        """True when a cached (series_id, window) view overlaps this key."""
        if series_id != self.series_id:
            return False
        if self.start is not None and window.end < self.start:
            return False
        if self.end is not None and window.start > self.end:
            return False
        return True


class EditResult(BaseModel):
    """Outcome of a Series Editor mutation."""

    scope: EditScope
    series_id: str
    new_series_id: Optional[str] = None
    invalidations: list[InvalidationKey] = Field(default_factory=list)


class SeriesSplit(BaseModel):
    """Everything a storage collaborator needs to split a series atomically.

    Only the termination of truncated_original (its rule and recurrence_end)
    is written to the original. expected_rule and expected_fields are the
    original's rule and fields as read when the split was computed; a store
    refuses the split if the stored series no longer matches them.
    """

    original_id: str
    boundary_instant: datetime
    truncated_original: SeriesTemplate
    new_template: SeriesTemplate
    reparent_from: datetime
    expected_rule: Optional[RecurrenceRule] = None
    expected_fields: Optional[TemplatePayload] = None

    @field_validator("boundary_instant", "reparent_from")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_utc(value)
