"""Parsing of user supplied search parameters."""
import re
from datetime import datetime, time, timedelta, tzinfo

from dateutil import parser as date_parser

from availability.models import ConfigurationError

DATE_FORMATS = [
    '%m/%d/%Y',      # US format
    '%Y-%m-%d',      # ISO 8601
    '%m-%d-%Y',      # US format with dashes
    '%b %d %Y',      # Abbreviated month name
]

TIME_FORMATS = [
    '%I:%M%p',       # 9:00am
    '%I:%M %p',      # 9:00 am
    '%I%p',          # 9am
    '%H:%M',         # 24-hour format
]

SPAN_PATTERN = re.compile(r'^\s*([0-9]+)\s*(w|d|h|m)\s*$')

SPAN_UNITS = {
    'w': 'weeks',
    'd': 'days',
    'h': 'hours',
    'm': 'minutes',
}


def _require_text(value, kind: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"Invalid {kind}: expected a string, got {value!r}")
    return value


def parse_date(value: str, tz: tzinfo) -> datetime:
    """
    Parse a calendar date or full timestamp.

    Bare dates resolve to midnight in `tz`; timestamps carrying an offset are
    converted into `tz`, naive ones are taken as wall-clock time in `tz`.

    Args:
        value: Date string such as "10/05/2022" or "2022-10-05T09:00:00-04:00"
        tz: Zone of the search

    Returns:
        Aware datetime

    Raises:
        ConfigurationError: If no format matches
    """
    text = _require_text(value, 'date').strip()
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            return parsed.replace(tzinfo=tz)
        except ValueError:
            continue

    try:
        parsed = date_parser.isoparse(text)
    except ValueError:
        raise ConfigurationError(f"Invalid date: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def parse_time_of_day(value: str) -> time:
    """
    Parse a time of day such as "9:00am" or "17:00".

    Raises:
        ConfigurationError: If no format matches
    """
    text = _require_text(value, 'time of day').strip().upper()
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ConfigurationError(f"Invalid time of day: {value!r}")


def parse_span(value: str) -> timedelta:
    """
    Parse a span written as <int>(w|d|h|m), e.g. "1w" or "30m".

    Raises:
        ConfigurationError: If the span is malformed or zero
    """
    match = SPAN_PATTERN.match(_require_text(value, 'duration'))
    if not match:
        raise ConfigurationError(
            f"Invalid duration {value!r}, expected <int>(w|d|h|m)"
        )
    amount = int(match.group(1))
    if amount == 0:
        raise ConfigurationError(f"Duration must be positive: {value!r}")
    return timedelta(**{SPAN_UNITS[match.group(2)]: amount})


def parse_flag(value, name: str) -> bool:
    """
    Parse a boolean request flag given as a JSON bool or "true"/"false".

    Raises:
        ConfigurationError: For any other value
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ConfigurationError(f"'{name}' must be true or false, got {value!r}")
