"""RecurrenceRule codec: rule strings <-> structured rules.

The string form is the RFC 5545 RRULE subset the engine supports, e.g.
``FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10``. Older records written by earlier
clients are still accepted on decode (``RRULE:`` prefix, lowercase keys, date-only
UNTIL, positional BYDAY, BYMONTHDAY, WKST=MO).
"""

import logging
import re
from collections.abc import Mapping
from datetime import datetime, time
from typing import Any, Optional, Union

from pydantic import ValidationError

from .exceptions import InvalidRule
from .models import (
    CountTermination,
    Frequency,
    RecurrenceRule,
    UnboundedTermination,
    UntilTermination,
    Weekday,
)
from .timezone_utils import DEFAULT_TIMEZONE, get_zone, to_utc

logger = logging.getLogger(__name__)

UNTIL_FORMAT = "%Y%m%dT%H%M%SZ"

_RRULE_PREFIX = "RRULE:"
_KNOWN_KEYS = frozenset({"FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "COUNT", "UNTIL", "WKST"})
_BYDAY_TOKEN = re.compile(r"^([+-]?\d)?(MO|TU|WE|TH|FR|SA|SU)$")
_UNTIL_DATE = re.compile(r"^\d{8}$")
_UNTIL_FLOATING = re.compile(r"^\d{8}T\d{6}$")
_UNTIL_UTC = re.compile(r"^\d{8}T\d{6}Z$")

_WEEKDAY_NAMES = {
    Weekday.MO: ("Mon", "Monday"),
    Weekday.TU: ("Tue", "Tuesday"),
    Weekday.WE: ("Wed", "Wednesday"),
    Weekday.TH: ("Thu", "Thursday"),
    Weekday.FR: ("Fri", "Friday"),
    Weekday.SA: ("Sat", "Saturday"),
    Weekday.SU: ("Sun", "Sunday"),
}
_POSITION_NAMES = {1: "first", 2: "second", 3: "third", 4: "fourth", 5: "fifth", -1: "last"}
_UNIT_NAMES = {
    Frequency.DAILY: ("Daily", "days"),
    Frequency.WEEKLY: ("Weekly", "weeks"),
    Frequency.MONTHLY: ("Monthly", "months"),
    Frequency.YEARLY: ("Yearly", "years"),
}


RuleInput = Union[RecurrenceRule, Mapping[str, Any]]


def encode(rule: RuleInput, *, strict: bool = False) -> str:
    """Encode a rule (or a raw form mapping) as a rule string.

    Args:
        rule: A RecurrenceRule, or a mapping with keys ``frequency``, ``interval``,
            ``by_weekday``, ``month_position``, ``month_day``, ``count``, ``until``
        strict: Reject interval < 1 instead of clamping it to 1

    Returns:
        Canonical rule string with keys in a fixed order

    Raises:
        InvalidRule: If the mapping does not describe a valid rule
    """
    if not isinstance(rule, RecurrenceRule):
        rule = rule_from_mapping(rule, strict=strict)

    parts = [f"FREQ={rule.frequency.value.upper()}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")

    if rule.month_position is not None:
        (day,) = rule.by_weekday
        parts.append(f"BYDAY={rule.month_position}{day.value}")
    elif rule.by_weekday:
        parts.append("BYDAY=" + ",".join(day.value for day in rule.sorted_weekdays))

    if rule.month_day is not None:
        parts.append(f"BYMONTHDAY={rule.month_day}")

    termination = rule.termination
    if isinstance(termination, CountTermination):
        parts.append(f"COUNT={termination.count}")
    elif isinstance(termination, UntilTermination):
        parts.append(f"UNTIL={termination.until.strftime(UNTIL_FORMAT)}")

    return ";".join(parts)


def rule_from_mapping(data: Mapping[str, Any], *, strict: bool = False) -> RecurrenceRule:
    """Build a RecurrenceRule from a raw form mapping.

    Form inputs may carry an interval below 1 (an emptied number field); it is
    clamped to 1 unless strict is set.

    Raises:
        InvalidRule: On any invalid value or combination
    """
    try:
        interval = int(data.get("interval", 1) or 0)
    except (TypeError, ValueError) as e:
        raise InvalidRule(f"Invalid interval: {data.get('interval')!r}") from e

    if interval < 1:
        if strict:
            raise InvalidRule(f"Interval must be at least 1, got {interval}")
        logger.debug("Clamping recurrence interval %d to 1", interval)
        interval = 1

    count = data.get("count")
    until = data.get("until")
    if count is not None and until is not None:
        raise InvalidRule("COUNT and UNTIL are mutually exclusive")

    termination: Union[CountTermination, UntilTermination, UnboundedTermination]
    try:
        if count is not None:
            termination = CountTermination(count=count)
        elif until is not None:
            termination = UntilTermination(until=until)
        else:
            termination = UnboundedTermination()

        return RecurrenceRule(
            frequency=data.get("frequency"),
            interval=interval,
            by_weekday=frozenset(data.get("by_weekday") or ()),
            month_position=data.get("month_position"),
            month_day=data.get("month_day"),
            termination=termination,
        )
    except ValidationError as e:
        raise InvalidRule(f"Invalid recurrence rule: {e.errors()[0]['msg']}") from e


def decode(rule_string: Optional[str], timezone: str = DEFAULT_TIMEZONE) -> Optional[RecurrenceRule]:
    """Decode a rule string.

    Args:
        rule_string: Stored rule string; None or blank means "not recurring"
        timezone: Series timezone, used to interpret floating and date-only UNTIL

    Returns:
        The decoded rule, or None when there is no rule

    Raises:
        InvalidRule: If the string is malformed
    """
    if rule_string is None or not rule_string.strip():
        return None

    text = rule_string.strip()
    if text.upper().startswith(_RRULE_PREFIX):
        text = text[len(_RRULE_PREFIX):]

    params = _split_params(text, rule_string)

    freq_value = params.get("FREQ")
    if not freq_value:
        raise InvalidRule(f"Rule is missing FREQ: {rule_string!r}")
    try:
        frequency = Frequency(freq_value.lower())
    except ValueError as e:
        raise InvalidRule(f"Unsupported FREQ {freq_value!r}") from e

    wkst = params.get("WKST")
    if wkst is not None and wkst.upper() != "MO":
        raise InvalidRule(f"Unsupported WKST {wkst!r}; only MO is supported")

    if "COUNT" in params and "UNTIL" in params:
        raise InvalidRule(f"COUNT and UNTIL are mutually exclusive: {rule_string!r}")

    interval = _parse_int(params, "INTERVAL", default=1)
    if interval < 1:
        raise InvalidRule(f"INTERVAL must be at least 1, got {interval}")

    weekdays, position = _parse_byday(params.get("BYDAY"))
    month_day = _parse_int(params, "BYMONTHDAY", default=None)

    termination: Union[CountTermination, UntilTermination, UnboundedTermination]
    if "COUNT" in params:
        count = _parse_int(params, "COUNT", default=None)
        if count is None or count < 1:
            raise InvalidRule(f"COUNT must be positive, got {params['COUNT']!r}")
        termination = CountTermination(count=count)
    elif "UNTIL" in params:
        termination = UntilTermination(until=_parse_until(params["UNTIL"], timezone))
    else:
        termination = UnboundedTermination()

    try:
        return RecurrenceRule(
            frequency=frequency,
            interval=interval,
            by_weekday=weekdays,
            month_position=position,
            month_day=month_day,
            termination=termination,
        )
    except ValidationError as e:
        raise InvalidRule(f"Invalid recurrence rule {rule_string!r}: {e.errors()[0]['msg']}") from e


def _split_params(text: str, original: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for part in text.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise InvalidRule(f"Malformed rule part {part!r} in {original!r}")
        key, value = part.split("=", 1)
        key = key.strip().upper()
        value = value.strip()
        if key not in _KNOWN_KEYS:
            raise InvalidRule(f"Unsupported rule key {key!r} in {original!r}")
        if key in params:
            raise InvalidRule(f"Duplicate rule key {key!r} in {original!r}")
        params[key] = value
    return params


def _parse_int(params: dict[str, str], key: str, default: Optional[int]) -> Optional[int]:
    if key not in params:
        return default
    try:
        return int(params[key])
    except ValueError as e:
        raise InvalidRule(f"{key} must be an integer, got {params[key]!r}") from e


def _parse_byday(value: Optional[str]) -> tuple[frozenset[Weekday], Optional[int]]:
    if value is None:
        return frozenset(), None

    days: set[Weekday] = set()
    position: Optional[int] = None
    for token in value.split(","):
        token = token.strip().upper()
        match = _BYDAY_TOKEN.match(token)
        if not match:
            raise InvalidRule(f"Invalid BYDAY value {token!r}")
        if match.group(1) is not None:
            if position is not None:
                raise InvalidRule("Only one positional BYDAY value is supported")
            position = int(match.group(1))
        days.add(Weekday(match.group(2)))
    return frozenset(days), position


def _parse_until(value: str, timezone: str) -> datetime:
    value = value.strip().upper()
    zone = get_zone(timezone)
    try:
        if _UNTIL_UTC.match(value):
            return to_utc(datetime.strptime(value, UNTIL_FORMAT))
        if _UNTIL_FLOATING.match(value):
            local = datetime.strptime(value, "%Y%m%dT%H%M%S")
            return to_utc(local.replace(tzinfo=zone))
        if _UNTIL_DATE.match(value):
            day = datetime.strptime(value, "%Y%m%d").date()
            return to_utc(datetime.combine(day, time(23, 59, 59), tzinfo=zone))
    except ValueError as e:
        raise InvalidRule(f"Invalid UNTIL value {value!r}") from e
    raise InvalidRule(f"Invalid UNTIL value {value!r}")


def describe_rule(rule: Optional[RecurrenceRule], anchor_start: Optional[datetime] = None) -> str:
    """Human readable summary of a rule.

    Examples:
        "Daily", "Every 2 weeks on Mon, Wed, 5 times",
        "Monthly on the second Tuesday until Jan 31, 2025"
    """
    if rule is None:
        return "Does not repeat"

    single, plural = _UNIT_NAMES[rule.frequency]
    text = single if rule.interval == 1 else f"Every {rule.interval} {plural}"

    if rule.frequency == Frequency.WEEKLY:
        if rule.by_weekday:
            text += " on " + ", ".join(_WEEKDAY_NAMES[day][0] for day in rule.sorted_weekdays)
        elif anchor_start is not None:
            text += " on " + _WEEKDAY_NAMES[Weekday.from_datetime(anchor_start)][0]
    elif rule.frequency == Frequency.MONTHLY:
        if rule.month_position is not None:
            (day,) = rule.by_weekday
            text += f" on the {_POSITION_NAMES[rule.month_position]} {_WEEKDAY_NAMES[day][1]}"
        elif rule.month_day is not None:
            text += f" on day {rule.month_day}"
        elif anchor_start is not None:
            text += f" on day {anchor_start.day}"

    termination = rule.termination
    if isinstance(termination, UntilTermination):
        until = termination.until
        if anchor_start is not None and anchor_start.tzinfo is not None:
            until = until.astimezone(anchor_start.tzinfo)
        text += f" until {until.strftime('%b')} {until.day}, {until.year}"
    elif isinstance(termination, CountTermination):
        text += f", {termination.count} times"
    return text
