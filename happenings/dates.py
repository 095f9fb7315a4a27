"""Calendar date keys anchored to the configured civil timezone.

Every date the engine handles is a ``YYYY-MM-DD`` key. "Today" is evaluated in
``settings.timezone`` rather than the host process timezone, so a server running
in UTC still agrees with the community's calendar after 5 PM Mountain time.
Arithmetic works on calendar dates, not 24-hour periods, so daylight-saving
transitions never shift a key.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from .config import settings

DATE_KEY_FORMAT = "%Y-%m-%d"
WEEKDAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)

_date_key_pattern = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_weekday_lookup: dict[str, str] = {}
for _name in WEEKDAY_NAMES:
    _weekday_lookup[_name.lower()] = _name
    _weekday_lookup[_name[:3].lower()] = _name


class DateKeyError(ValueError):
    """Raised when a caller passes a malformed date key or an inverted window."""

    code = "INVALID_DATE_KEY"


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def is_valid_date_key(value: object) -> bool:
    """Return True for strict ``YYYY-MM-DD`` strings naming a real date."""

    return try_parse_date_key(value) is not None


def try_parse_date_key(value: object) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _date_key_pattern.match(value):
        return None
    try:
        return datetime.strptime(value, DATE_KEY_FORMAT).date()
    except ValueError:
        return None


def parse_date_key(value: object) -> date:
    """Parse a date key, raising :class:`DateKeyError` when it is malformed."""

    parsed = try_parse_date_key(value)
    if parsed is None:
        raise DateKeyError(f"Invalid date key {value!r}; expected YYYY-MM-DD")
    return parsed


def to_date_key(value: date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def today(tz: str | ZoneInfo | None = None) -> str:
    """Return today's date key in the configured civil timezone."""

    zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz or settings.timezone)
    return to_date_key(datetime.now(zone).date())


def shift_date(value: date, days: int) -> date | None:
    """Return ``value + days``, or None when that falls outside the calendar."""

    try:
        return value + timedelta(days=days)
    except OverflowError:
        return None


def add_days(date_key: str, days: int) -> str:
    """Shift a date key by ``days``, clamping at 0001-01-01 and 9999-12-31."""

    shifted = shift_date(parse_date_key(date_key), days)
    if shifted is None:
        shifted = date.max if days > 0 else date.min
    return to_date_key(shifted)


def days_between(start_key: str, end_key: str) -> int:
    return (parse_date_key(end_key) - parse_date_key(start_key)).days


def weekday_index(value: date) -> int:
    """Return 0 for Sunday through 6 for Saturday."""

    return (value.weekday() + 1) % 7


def weekday_of(date_key: str) -> str:
    return WEEKDAY_NAMES[weekday_index(parse_date_key(date_key))]


def normalize_weekday(value: str | None) -> str | None:
    """Map "monday", "Mon", " MONDAY " to "Monday"; None when unrecognized."""

    if not value or not isinstance(value, str):
        return None
    return _weekday_lookup.get(value.strip().lower())


def format_date_key_for_display(date_key: str) -> str:
    """Return e.g. "Saturday, January 24, 2026"."""

    parsed = parse_date_key(date_key)
    return f"{WEEKDAY_NAMES[weekday_index(parsed)]}, {parsed:%B} {parsed.day}, {parsed.year}"


def format_day_header(date_key: str) -> str:
    """Return the upper-case digest header, e.g. "SATURDAY, JANUARY 24"."""

    parsed = parse_date_key(date_key)
    return f"{WEEKDAY_NAMES[weekday_index(parsed)]}, {parsed:%B} {parsed.day}".upper()


def format_date_group_header(date_key: str, today_key: str) -> str:
    """Return "Today", "Tomorrow", or a short header like "Sat, Jan 24"."""

    if date_key == today_key:
        return "Today"
    if date_key == add_days(today_key, 1):
        return "Tomorrow"
    parsed = parse_date_key(date_key)
    return f"{WEEKDAY_NAMES[weekday_index(parsed)][:3]}, {parsed:%b} {parsed.day}"
