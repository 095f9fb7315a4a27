"""Recurrence contract interpreter.

``interpret_recurrence`` is the only place that decides what a stored
recurrence means. Labels, next-occurrence lookups, window expansion, digests and
the health audit all consume its output and never re-derive weekday or shape
on their own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Sequence

from dateutil.rrule import rrulestr

from .config import settings
from .dates import (
    WEEKDAY_NAMES,
    normalize_weekday,
    to_date_key,
    try_parse_date_key,
    weekday_of,
)

# Use uvicorn's error logger so fallback warnings show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

LAST = -1


class Shape(str, Enum):
    ONE_TIME = "one_time"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    ORDINAL_MONTHLY = "ordinal_monthly"
    MONTHLY = "monthly"
    CUSTOM = "custom"
    UNKNOWN = "unknown"


WEEKDAY_SHAPES = frozenset(
    {Shape.WEEKLY, Shape.BIWEEKLY, Shape.ORDINAL_MONTHLY, Shape.MONTHLY}
)

_ONE_TIME_RULES = {"", "none"}
_SHAPE_RULES: dict[str, Shape] = {
    "weekly": Shape.WEEKLY,
    "every week": Shape.WEEKLY,
    "biweekly": Shape.BIWEEKLY,
    "bi-weekly": Shape.BIWEEKLY,
    "every other week": Shape.BIWEEKLY,
    "monthly": Shape.MONTHLY,
    "custom": Shape.CUSTOM,
}
ORDINAL_WORDS: dict[str, int] = {
    "1st": 1,
    "2nd": 2,
    "3rd": 3,
    "4th": 4,
    "5th": 5,
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "fifth": 5,
    "last": LAST,
}
_ORDINAL_TAGS = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th", LAST: "last"}
_ordinal_separator = re.compile(r"\s*(?:/|&|,|\band\b)\s*")
_RRULE_KEYS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL", "WKST"}
_RRULE_DAYS = {name[:2].upper(): name for name in WEEKDAY_NAMES}
_byday_pattern = re.compile(r"^([+-]?\d)?(SU|MO|TU|WE|TH|FR|SA)$")


@dataclass(frozen=True)
class RecurrenceDescriptor:
    """Recurrence fields exactly as stored for one happening."""

    event_date: str | None = None
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    custom_dates: Sequence[str] | None = None
    recurrence_end_date: str | None = None
    max_occurrences: int | None = None
    timezone: str = field(default_factory=lambda: settings.timezone)


@dataclass(frozen=True)
class NormalizedRule:
    shape: Shape
    ordinals: tuple[int, ...] = ()
    # Set only for rules given as an RRULE.
    weekday: str | None = None
    count: int | None = None
    until: date | None = None

    @property
    def canonical(self) -> str | None:
        if self.shape is Shape.ONE_TIME:
            return None
        if self.shape is Shape.ORDINAL_MONTHLY:
            return build_rule_from_ordinals(self.ordinals)
        if self.shape is Shape.UNKNOWN:
            return None
        return self.shape.value


@dataclass(frozen=True)
class InterpretedRecurrence:
    shape: Shape
    is_recurring: bool
    is_confident: bool
    effective_day_of_week: str | None = None
    derived_from_fallback: bool = False
    ordinals: tuple[int, ...] = ()
    anchor_date: date | None = None
    anchor_conflict: bool = False
    custom_dates: tuple[date, ...] = ()
    end_date: date | None = None
    max_occurrences: int | None = None
    canonical_rule: str | None = None


def _sort_ordinals(ordinals: Sequence[int]) -> tuple[int, ...]:
    unique = set(ordinals)
    return tuple(sorted(unique, key=lambda value: (value == LAST, value)))


def build_rule_from_ordinals(ordinals: Sequence[int]) -> str:
    """Return the canonical rule for ordinals, e.g. ``(3, 1)`` -> ``"1st/3rd"``."""

    return "/".join(_ORDINAL_TAGS[value] for value in _sort_ordinals(ordinals))


def parse_ordinals(rule: str | None) -> tuple[int, ...] | None:
    """Parse "1st/3rd", "2nd & 4th", "1st and Last" into sorted ordinals.

    Returns None unless every part is a known ordinal word.
    """

    if not rule:
        return None
    parts = _ordinal_separator.split(rule.strip().lower())
    ordinals: list[int] = []
    for part in parts:
        if part not in ORDINAL_WORDS:
            return None
        ordinals.append(ORDINAL_WORDS[part])
    return _sort_ordinals(ordinals) if ordinals else None


def _rrule_unknown(rule: str, reason: str) -> NormalizedRule:
    logger.debug("RRULE %r falls outside the supported shapes: %s", rule, reason)
    return NormalizedRule(Shape.UNKNOWN)


def parse_rrule(rule: str) -> NormalizedRule:
    """Map an RFC 5545 RRULE onto the closed set of shapes.

    Only rules that say the same thing as a plain rule are accepted: weekly or
    every-other-week on one weekday, and monthly on ordinal weekdays. COUNT and
    UNTIL carry over as series bounds. Anything else is unknown.
    """

    text = rule.strip().upper()
    if text.startswith("RRULE:"):
        text = text[len("RRULE:"):]
    text = text.strip().rstrip(";")
    try:
        rrulestr(text, dtstart=datetime(2000, 1, 1), ignoretz=True)
    except (ValueError, TypeError) as exc:
        return _rrule_unknown(rule, str(exc))

    parts = dict(part.split("=", 1) for part in text.split(";"))
    unsupported = set(parts) - _RRULE_KEYS
    if unsupported:
        return _rrule_unknown(rule, f"unsupported parts {sorted(unsupported)}")

    weekday = None
    ordinals: list[int] = []
    for entry in filter(None, parts.get("BYDAY", "").split(",")):
        match = _byday_pattern.match(entry.strip())
        if not match:
            return _rrule_unknown(rule, f"BYDAY entry {entry!r}")
        day_name = _RRULE_DAYS[match.group(2)]
        if weekday not in (None, day_name):
            return _rrule_unknown(rule, "more than one weekday")
        weekday = day_name
        if match.group(1):
            ordinals.append(int(match.group(1)))

    count = int(parts["COUNT"]) if "COUNT" in parts else None
    if count is not None and count <= 0:
        return _rrule_unknown(rule, "COUNT must be positive")
    until = None
    if "UNTIL" in parts:
        try:
            until = datetime.strptime(parts["UNTIL"][:8], "%Y%m%d").date()
        except ValueError:
            return _rrule_unknown(rule, f"UNTIL {parts['UNTIL']!r}")

    interval = int(parts.get("INTERVAL", "1"))
    freq = parts["FREQ"]
    shape = Shape.UNKNOWN
    if freq == "WEEKLY" and not ordinals:
        shape = {1: Shape.WEEKLY, 2: Shape.BIWEEKLY}.get(interval, Shape.UNKNOWN)
    elif (
        freq == "MONTHLY"
        and interval == 1
        and ordinals
        and len(ordinals) == len(parts["BYDAY"].split(","))
        and all(value in _ORDINAL_TAGS for value in ordinals)
    ):
        shape = Shape.ORDINAL_MONTHLY
    if shape is Shape.UNKNOWN:
        return _rrule_unknown(
            rule, f"FREQ={freq} INTERVAL={interval} BYDAY={parts.get('BYDAY')}"
        )
    return NormalizedRule(
        shape,
        _sort_ordinals(ordinals) if shape is Shape.ORDINAL_MONTHLY else (),
        weekday=weekday,
        count=count,
        until=until,
    )


def normalize_rule(rule: str | None) -> NormalizedRule:
    """Map every accepted spelling of a recurrence rule onto one canonical shape."""

    if rule is None:
        return NormalizedRule(Shape.ONE_TIME)
    if not isinstance(rule, str):
        return NormalizedRule(Shape.UNKNOWN)
    cleaned = " ".join(rule.strip().lower().split())
    if cleaned in _ONE_TIME_RULES:
        return NormalizedRule(Shape.ONE_TIME)
    if cleaned in _SHAPE_RULES:
        return NormalizedRule(_SHAPE_RULES[cleaned])
    if "freq=" in cleaned:
        return parse_rrule(rule)
    ordinals = parse_ordinals(cleaned)
    if ordinals:
        return NormalizedRule(Shape.ORDINAL_MONTHLY, ordinals)
    return NormalizedRule(Shape.UNKNOWN)


def _parse_custom_dates(values: Sequence[str] | None) -> tuple[date, ...] | None:
    if not values or isinstance(values, str):
        return None
    parsed = [try_parse_date_key(value) for value in values]
    if any(value is None for value in parsed):
        return None
    return tuple(sorted(set(parsed)))


def monthly_slot(anchor: date | None) -> int:
    """Return the ordinal slot a plain "monthly" rule repeats on.

    The slot is the anchor's week of the month; a 5th-week anchor becomes
    "last" because most months have no 5th occurrence. Without an anchor the
    series falls on the 1st weekday of each month.
    """

    if anchor is None:
        return 1
    slot = (anchor.day - 1) // 7 + 1
    return LAST if slot == 5 else slot


def _series_bounds(
    descriptor: RecurrenceDescriptor, normalized: NormalizedRule
) -> dict:
    """Stored bounds win; RRULE COUNT and UNTIL fill the ones left empty."""

    max_occurrences = descriptor.max_occurrences
    if not isinstance(max_occurrences, int) or max_occurrences <= 0:
        max_occurrences = normalized.count
    end_date = try_parse_date_key(descriptor.recurrence_end_date) or normalized.until
    return {"end_date": end_date, "max_occurrences": max_occurrences}


def interpret_recurrence(descriptor: RecurrenceDescriptor) -> InterpretedRecurrence:
    """Classify a stored recurrence and decide whether it can be trusted."""

    anchor = try_parse_date_key(descriptor.event_date)
    normalized = normalize_rule(descriptor.recurrence_rule)

    if normalized.shape is Shape.ONE_TIME:
        return InterpretedRecurrence(
            shape=Shape.ONE_TIME,
            is_recurring=False,
            is_confident=anchor is not None,
            effective_day_of_week=weekday_of(to_date_key(anchor)) if anchor else None,
            anchor_date=anchor,
        )

    if normalized.shape is Shape.CUSTOM:
        custom_dates = _parse_custom_dates(descriptor.custom_dates)
        return InterpretedRecurrence(
            shape=Shape.CUSTOM,
            is_recurring=True,
            is_confident=custom_dates is not None,
            anchor_date=anchor,
            custom_dates=custom_dates or (),
            canonical_rule=normalized.canonical,
            **_series_bounds(descriptor, normalized),
        )

    if normalized.shape is Shape.UNKNOWN:
        logger.debug(
            "Unrecognized recurrence_rule %r; treating as not confident",
            descriptor.recurrence_rule,
        )
        return InterpretedRecurrence(
            shape=Shape.UNKNOWN, is_recurring=True, is_confident=False
        )

    ordinals = normalized.ordinals
    if normalized.shape is Shape.MONTHLY:
        ordinals = (monthly_slot(anchor),)
    common = {
        "shape": normalized.shape,
        "is_recurring": True,
        "ordinals": ordinals,
        "anchor_date": anchor,
        "canonical_rule": normalized.canonical,
        **_series_bounds(descriptor, normalized),
    }
    day_name = normalized.weekday or normalize_weekday(descriptor.day_of_week)
    stored_day = normalize_weekday(descriptor.day_of_week)
    if normalized.weekday and stored_day and stored_day != normalized.weekday:
        logger.warning(
            "RRULE BYDAY is %s but day_of_week is %s; BYDAY wins",
            normalized.weekday,
            stored_day,
        )
    if day_name:
        anchor_day = weekday_of(to_date_key(anchor)) if anchor else None
        conflict = anchor_day is not None and anchor_day != day_name
        if conflict:
            logger.warning(
                "event_date %s is a %s but day_of_week is %s; day_of_week wins for %s",
                descriptor.event_date,
                anchor_day,
                day_name,
                normalized.canonical,
            )
        return InterpretedRecurrence(
            is_confident=True,
            effective_day_of_week=day_name,
            anchor_conflict=conflict,
            **common,
        )

    if anchor is not None:
        derived = weekday_of(to_date_key(anchor))
        logger.warning(
            "Derived day_of_week=%s from event_date=%s for rule %r (day_of_week missing)",
            derived,
            descriptor.event_date,
            descriptor.recurrence_rule,
        )
        return InterpretedRecurrence(
            is_confident=True,
            effective_day_of_week=derived,
            derived_from_fallback=True,
            **common,
        )

    return InterpretedRecurrence(is_confident=False, **common)


def _ordinal_label(value: int) -> str:
    return "Last" if value == LAST else _ORDINAL_TAGS[value]


def label_from_recurrence(interpreted: InterpretedRecurrence) -> str:
    """Return the schedule label shown next to a happening."""

    if not interpreted.is_confident:
        return "Schedule TBD"
    day = interpreted.effective_day_of_week
    shape = interpreted.shape
    if shape is Shape.ONE_TIME:
        return "One-time"
    if shape is Shape.CUSTOM:
        return "Custom Schedule"
    if shape is Shape.WEEKLY:
        return f"Every {day}"
    if shape is Shape.BIWEEKLY:
        return f"Every Other {day}"
    if len(interpreted.ordinals) == 1:
        return f"{_ordinal_label(interpreted.ordinals[0])} {day} of the Month"
    joined = " & ".join(_ordinal_label(value) for value in interpreted.ordinals)
    return f"{joined} {day}s"


def canonicalize_descriptor(
    descriptor: RecurrenceDescriptor,
) -> tuple[RecurrenceDescriptor, bool]:
    """Normalize a descriptor before it is stored.

    Returns the canonical descriptor and whether ``day_of_week`` was derived
    from ``event_date``. Unrecognized rules are left untouched so the row stays
    visibly not confident instead of being guessed into a shape.
    """

    normalized = normalize_rule(descriptor.recurrence_rule)
    if normalized.shape is Shape.UNKNOWN:
        return descriptor, False

    day_name = normalized.weekday or normalize_weekday(descriptor.day_of_week)
    derived = False
    if normalized.shape in WEEKDAY_SHAPES and not day_name:
        anchor = try_parse_date_key(descriptor.event_date)
        if anchor is not None:
            day_name = weekday_of(to_date_key(anchor))
            derived = True
            logger.warning(
                "Canonicalized missing day_of_week to %s from event_date %s",
                day_name,
                descriptor.event_date,
            )

    custom_dates = descriptor.custom_dates
    if normalized.shape is Shape.CUSTOM and custom_dates:
        parsed = _parse_custom_dates(custom_dates)
        if parsed is not None:
            custom_dates = [to_date_key(value) for value in parsed]

    end_date = descriptor.recurrence_end_date
    if not end_date and normalized.until:
        end_date = to_date_key(normalized.until)
    max_occurrences = descriptor.max_occurrences
    if not max_occurrences and normalized.count:
        max_occurrences = normalized.count

    canonical = replace(
        descriptor,
        recurrence_rule=normalized.canonical,
        day_of_week=day_name if day_name else descriptor.day_of_week,
        custom_dates=custom_dates,
        recurrence_end_date=end_date,
        max_occurrences=max_occurrences,
    )
    return canonical, derived
