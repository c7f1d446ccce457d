"""Command-line entry for calendarbot_recurrence.

Previews the occurrences a rule string produces, without any storage.
"""

from __future__ import annotations

import argparse
import itertools
import sys
from datetime import UTC, date, datetime, time
from typing import NoReturn, Optional

from .config import load_settings
from .exceptions import ExpansionLimitExceeded, InvalidRule
from .logging_config import configure_logging
from .models import TimeWindow
from .rrule_codec import decode, describe_rule
from .rrule_expander import ExpanderConfig, expand
from .timezone_utils import get_zone, to_zone

EXIT_INVALID_RULE = 2
EXIT_EXPANSION_LIMIT = 3

_END_OF_TIME = datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calendarbot_recurrence CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calendarbot-recurrence",
        description="CalendarBot recurrence engine - preview recurring schedules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  calendarbot-recurrence describe "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=5"
  calendarbot-recurrence preview "FREQ=MONTHLY;BYDAY=2TU" --start 2024-01-09T09:00
  calendarbot-recurrence preview "FREQ=DAILY" --start 2024-03-01T08:00 \\
      --timezone America/New_York --from 2024-03-08 --to 2024-03-12
        """,
    )
    parser.add_argument("--config", metavar="FILE", help="YAML settings file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    describe = subparsers.add_parser("describe", help="Print a readable summary of a rule")
    describe.add_argument("rule", help="Rule string, e.g. FREQ=DAILY;COUNT=3")
    describe.add_argument("--timezone", metavar="TZ", help="Timezone for floating UNTIL values")

    preview = subparsers.add_parser("preview", help="List upcoming occurrences of a rule")
    preview.add_argument("rule", help="Rule string, e.g. FREQ=DAILY;COUNT=3")
    preview.add_argument("--start", required=True, metavar="ISO", help="Start of the first occurrence")
    preview.add_argument("--timezone", metavar="TZ", help="Series timezone (default from settings)")
    preview.add_argument("--from", dest="window_start", metavar="ISO", help="Window start (default: --start)")
    preview.add_argument(
        "--to",
        dest="window_end",
        metavar="ISO",
        help="Window end; a bare date means the end of that day (default: unbounded)",
    )
    preview.add_argument("--limit", type=int, metavar="N", help="Maximum occurrences to print")

    return parser


def _parse_instant(value: str, tz_name: str, end_of_day: bool = False) -> datetime:
    """Parse an ISO date/datetime; values without an offset are local to tz_name.

    A bare date is midnight, or 23:59:59 of that day when end_of_day is set.
    """
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid ISO datetime: {value!r}") from e
    if end_of_day and _is_date_only(value):
        parsed = datetime.combine(parsed.date(), time(23, 59, 59))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=get_zone(tz_name))
    return parsed


def _is_date_only(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def run(argv: Optional[list[str]] = None) -> int:
    """Run the CLI and return the process exit status."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    configure_logging(debug_mode=args.debug or settings.debug)

    tz_name = args.timezone or settings.default_timezone

    try:
        rule = decode(args.rule, tz_name)
    except InvalidRule as e:
        print(f"Invalid rule: {e}", file=sys.stderr)
        return EXIT_INVALID_RULE

    if args.command == "describe":
        print(describe_rule(rule))
        return 0

    try:
        start = to_zone(_parse_instant(args.start, tz_name), tz_name)
        window_start = _parse_instant(args.window_start, tz_name) if args.window_start else start
        if args.window_end:
            window_end = _parse_instant(args.window_end, tz_name, end_of_day=True)
        else:
            window_end = _END_OF_TIME
        window = TimeWindow(start=window_start, end=window_end)
    except (argparse.ArgumentTypeError, ValueError) as e:
        parser.error(str(e))

    print(describe_rule(rule, start))
    if rule is None:
        return 0

    limit = args.limit or settings.preview_limit
    instants = expand(
        start,
        rule,
        None,
        None,
        window,
        config=ExpanderConfig.from_settings(settings),
    )
    try:
        for instant in itertools.islice(instants, limit):
            print(f"  {instant.isoformat()}")
    except ExpansionLimitExceeded as e:
        print(f"Preview stopped: {e}", file=sys.stderr)
        return EXIT_EXPANSION_LIMIT
    return 0


def main(argv: Optional[list[str]] = None) -> NoReturn:
    """Console script entry point."""
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
