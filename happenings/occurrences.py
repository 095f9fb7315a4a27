"""Occurrence computation: next occurrence and bounded window expansion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import MAXYEAR, date
from typing import Any, Iterable, Iterator, Mapping

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from .config import settings
from .dates import (
    DateKeyError,
    WEEKDAY_NAMES,
    add_days,
    parse_date_key,
    shift_date,
    to_date_key,
    today,
    weekday_index,
)
from .recurrence import (
    LAST,
    InterpretedRecurrence,
    RecurrenceDescriptor,
    Shape,
    WEEKDAY_SHAPES,
    interpret_recurrence,
)

logger = logging.getLogger("uvicorn.error")

STATUS_CANCELLED = "cancelled"
STATUS_MODIFIED = "modified"
STATUS_NORMAL = "normal"
OVERRIDE_STATUSES = {STATUS_CANCELLED, STATUS_MODIFIED, STATUS_NORMAL}

# Biweekly phase for series without an event_date counts from this Monday.
BIWEEKLY_EPOCH = date(1970, 1, 5)

_relative_weekdays = (SU, MO, TU, WE, TH, FR, SA)


class OccurrenceCancelledError(Exception):
    """Raised when a caller targets an occurrence that has been cancelled."""

    code = "OCCURRENCE_CANCELLED"

    def __init__(self, date_key: str):
        super().__init__(f"This occurrence ({date_key}) has been cancelled.")
        self.date_key = date_key


@dataclass(frozen=True)
class OccurrenceOverride:
    date_key: str
    status: str = STATUS_CANCELLED
    override_start_time: str | None = None
    override_notes: str | None = None


class OverrideSet:
    """Per-date overrides for one happening, looked up by exact date key."""

    def __init__(self, overrides: Iterable[OccurrenceOverride] = ()):
        self._by_key: dict[str, OccurrenceOverride] = {}
        for override in overrides:
            self._by_key[override.date_key] = override

    @classmethod
    def from_rows(cls, rows: Iterable[Any]) -> "OverrideSet":
        """Build from ORM rows or mappings carrying ``date_key`` and ``status``."""

        overrides = []
        for row in rows:
            get = row.get if isinstance(row, Mapping) else lambda key, r=row: getattr(r, key, None)
            overrides.append(
                OccurrenceOverride(
                    date_key=get("date_key"),
                    status=(get("status") or STATUS_CANCELLED).lower(),
                    override_start_time=get("override_start_time"),
                    override_notes=get("override_notes"),
                )
            )
        return cls(overrides)

    def get(self, date_key: str) -> OccurrenceOverride | None:
        return self._by_key.get(date_key)

    def is_cancelled(self, date_key: str) -> bool:
        override = self._by_key.get(date_key)
        return override is not None and override.status == STATUS_CANCELLED

    def cancelled_keys(self) -> set[str]:
        return {
            key
            for key, override in self._by_key.items()
            if override.status == STATUS_CANCELLED
        }

    def __contains__(self, date_key: object) -> bool:
        return date_key in self._by_key

    def __iter__(self) -> Iterator[OccurrenceOverride]:
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)


@dataclass(frozen=True)
class Occurrence:
    date_key: str
    is_confident: bool
    status: str | None = None
    override: OccurrenceOverride | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED


@dataclass(frozen=True)
class NextOccurrence:
    """Result of a next-occurrence lookup.

    ``date_key`` is None when the happening has no occurrence left on or after
    the reference date (past one-time events, finished series).
    """

    date_key: str | None
    is_confident: bool
    is_today: bool = False
    is_tomorrow: bool = False
    derived_from_fallback: bool = False

    @property
    def has_future(self) -> bool:
        return self.date_key is not None


def nth_weekday_of_month(year: int, month: int, weekday: str, ordinal: int) -> date | None:
    """Return the ``ordinal``-th ``weekday`` of a month (``-1`` for the last one)."""

    first = date(year, month, 1)
    relative_day = _relative_weekdays[WEEKDAY_NAMES.index(weekday)]
    try:
        if ordinal == LAST:
            candidate = first + relativedelta(day=31, weekday=relative_day(-1))
        else:
            candidate = first + relativedelta(weekday=relative_day(+ordinal))
    except OverflowError:
        # A 5th weekday of December 9999 would land past date.max.
        return None
    return candidate if candidate.month == month else None


def _first_weekday_on_or_after(start: date, weekday: str) -> date | None:
    offset = (WEEKDAY_NAMES.index(weekday) - weekday_index(start)) % 7
    return shift_date(start, offset)


def _weekly_dates(weekday: str, first: date, last: date, step: int = 7) -> Iterator[date]:
    current = _first_weekday_on_or_after(first, weekday)
    while current is not None and current <= last:
        yield current
        current = shift_date(current, step)


def _biweekly_dates(
    interpreted: InterpretedRecurrence, first: date, last: date
) -> Iterator[date]:
    weekday = interpreted.effective_day_of_week
    phase = _first_weekday_on_or_after(
        interpreted.anchor_date or BIWEEKLY_EPOCH, weekday
    )
    if phase is not None and first > phase:
        periods = -(-(first - phase).days // 14)
        phase = shift_date(phase, 14 * periods)
    if phase is None:
        return
    yield from _weekly_dates(weekday, phase, last, step=14)


def _ordinal_dates(
    interpreted: InterpretedRecurrence, first: date, last: date
) -> Iterator[date]:
    weekday = interpreted.effective_day_of_week
    month_start = date(first.year, first.month, 1)
    while month_start <= last:
        candidates = (
            nth_weekday_of_month(month_start.year, month_start.month, weekday, ordinal)
            for ordinal in interpreted.ordinals
        )
        for candidate in sorted({c for c in candidates if c is not None}):
            if first <= candidate <= last:
                yield candidate
        if (month_start.year, month_start.month) == (MAXYEAR, 12):
            return
        month_start += relativedelta(months=1)


def _pattern_dates(
    interpreted: InterpretedRecurrence, first: date, last: date
) -> Iterator[date]:
    """Yield pattern dates within ``[first, last]`` in ascending order.

    Every branch is bounded by ``last`` so the generator always finishes.
    """

    shape = interpreted.shape
    if shape in WEEKDAY_SHAPES and interpreted.anchor_date:
        first = max(first, interpreted.anchor_date)
    if interpreted.end_date:
        last = min(last, interpreted.end_date)
    if first > last:
        return

    if shape is Shape.ONE_TIME:
        if interpreted.anchor_date and first <= interpreted.anchor_date <= last:
            yield interpreted.anchor_date
    elif shape is Shape.CUSTOM:
        for value in interpreted.custom_dates:
            if first <= value <= last:
                yield value
    elif shape is Shape.WEEKLY:
        yield from _weekly_dates(interpreted.effective_day_of_week, first, last)
    elif shape is Shape.BIWEEKLY:
        yield from _biweekly_dates(interpreted, first, last)
    elif shape in (Shape.ORDINAL_MONTHLY, Shape.MONTHLY):
        yield from _ordinal_dates(interpreted, first, last)


def _series_start(interpreted: InterpretedRecurrence) -> date | None:
    if interpreted.shape is Shape.CUSTOM:
        return interpreted.custom_dates[0] if interpreted.custom_dates else None
    if interpreted.shape in WEEKDAY_SHAPES:
        return interpreted.anchor_date
    return None


def iter_occurrences(
    descriptor: RecurrenceDescriptor,
    start_key: str,
    end_key: str,
    *,
    max_occurrences: int | None = None,
    overrides: OverrideSet | None = None,
    max_scan_days: int | None = None,
    include_cancelled: bool = False,
    interpreted: InterpretedRecurrence | None = None,
) -> Iterator[Occurrence]:
    """Lazily yield occurrences of ``descriptor`` within ``[start_key, end_key]``.

    Malformed window keys, an inverted window and a negative cap are caller
    bugs and raise. Incomplete recurrence data yields nothing.
    """

    window_start = parse_date_key(start_key)
    window_end = parse_date_key(end_key)
    if window_end < window_start:
        raise DateKeyError(f"end_key {end_key} is before start_key {start_key}")
    if max_occurrences is None:
        max_occurrences = settings.max_occurrences_per_event
    if max_occurrences < 0:
        raise ValueError("max_occurrences must not be negative")
    if max_scan_days is not None and max_scan_days < 0:
        raise ValueError("max_scan_days must not be negative")

    interpreted = interpreted or interpret_recurrence(descriptor)
    if not interpreted.is_confident or max_occurrences == 0:
        return
    overrides = overrides or OverrideSet()

    last = window_end
    if max_scan_days is not None:
        last = min(last, shift_date(window_start, max_scan_days) or date.max)

    # Counting a bounded series needs every slot since the series began.
    series_limit = interpreted.max_occurrences
    scan_from = window_start
    series_start = _series_start(interpreted)
    if series_limit and series_start is not None:
        scan_from = min(window_start, series_start)
    else:
        series_limit = None

    emitted = 0
    for index, current in enumerate(_pattern_dates(interpreted, scan_from, last)):
        if series_limit is not None and index >= series_limit:
            break
        if current < window_start:
            continue
        date_key = to_date_key(current)
        override = overrides.get(date_key)
        status = override.status if override and override.status != STATUS_NORMAL else None
        if status == STATUS_CANCELLED and not include_cancelled:
            continue
        yield Occurrence(
            date_key=date_key,
            is_confident=interpreted.is_confident,
            status=status,
            override=override,
        )
        emitted += 1
        if emitted >= max_occurrences:
            break


def expand_occurrences_for_event(
    descriptor: RecurrenceDescriptor,
    start_key: str,
    end_key: str,
    *,
    max_occurrences: int | None = None,
    overrides: OverrideSet | None = None,
    max_scan_days: int | None = None,
    include_cancelled: bool = False,
) -> list[Occurrence]:
    """Return every occurrence within the inclusive window, in ascending order."""

    return list(
        iter_occurrences(
            descriptor,
            start_key,
            end_key,
            max_occurrences=max_occurrences,
            overrides=overrides,
            max_scan_days=max_scan_days,
            include_cancelled=include_cancelled,
        )
    )


def compute_next_occurrence(
    descriptor: RecurrenceDescriptor,
    today_key: str | None = None,
    *,
    overrides: OverrideSet | None = None,
    max_scan_days: int | None = None,
) -> NextOccurrence:
    """Return the first occurrence on or after ``today_key``.

    Not-confident schedules return ``today_key`` flagged ``is_confident=False``
    so callers always have a value to branch on. Without ``today_key`` the
    reference date is today in the descriptor's timezone.
    """

    today_key = today_key or today(descriptor.timezone)
    parse_date_key(today_key)
    interpreted = interpret_recurrence(descriptor)
    if not interpreted.is_confident:
        return NextOccurrence(
            date_key=today_key,
            is_confident=False,
            is_today=True,
            derived_from_fallback=interpreted.derived_from_fallback,
        )

    scan_days = settings.max_scan_days if max_scan_days is None else max_scan_days
    horizon = add_days(today_key, scan_days)
    found = next(
        iter_occurrences(
            descriptor,
            today_key,
            horizon,
            max_occurrences=1,
            overrides=overrides,
            interpreted=interpreted,
        ),
        None,
    )
    if found is None:
        return NextOccurrence(
            date_key=None,
            is_confident=True,
            derived_from_fallback=interpreted.derived_from_fallback,
        )
    return NextOccurrence(
        date_key=found.date_key,
        is_confident=True,
        is_today=found.date_key == today_key,
        is_tomorrow=found.date_key != today_key
        and found.date_key == add_days(today_key, 1),
        derived_from_fallback=interpreted.derived_from_fallback,
    )


def resolve_effective_date_key(
    descriptor: RecurrenceDescriptor,
    provided_key: str | None,
    today_key: str | None = None,
    *,
    overrides: OverrideSet | None = None,
) -> str | None:
    """Return the occurrence a per-date operation applies to.

    A provided key is validated and must not be cancelled; otherwise the next
    non-cancelled occurrence is used. Returns None when nothing is upcoming.
    """

    overrides = overrides or OverrideSet()
    if provided_key is not None:
        parse_date_key(provided_key)
        if overrides.is_cancelled(provided_key):
            raise OccurrenceCancelledError(provided_key)
        return provided_key
    return compute_next_occurrence(descriptor, today_key, overrides=overrides).date_key


@dataclass(frozen=True)
class GroupedOccurrence:
    happening: Any
    occurrence: Occurrence

    @property
    def date_key(self) -> str:
        return self.occurrence.date_key

    @property
    def start_time(self) -> str | None:
        override = self.occurrence.override
        if override and override.override_start_time:
            return override.override_start_time
        return getattr(self.happening, "start_time", None)


@dataclass
class ExpansionResult:
    grouped: dict[str, list[GroupedOccurrence]] = field(default_factory=dict)
    cancelled: list[GroupedOccurrence] = field(default_factory=list)
    unknown: list[Any] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(entries) for entries in self.grouped.values())


def _start_time_sort_key(entry: GroupedOccurrence) -> str:
    return entry.start_time or "99:99"


def expand_and_group(
    happenings: Iterable[Any],
    start_key: str,
    end_key: str,
    *,
    overrides_by_id: Mapping[str, OverrideSet] | None = None,
    max_events: int | None = None,
    max_total_occurrences: int | None = None,
    max_occurrences: int | None = None,
) -> ExpansionResult:
    """Expand many happenings into a date-grouped listing.

    Each happening needs ``id``, ``descriptor`` and ``start_time`` attributes.
    Not-confident happenings land in ``unknown`` instead of the listing, and
    cancelled occurrences are kept apart in ``cancelled``.
    """

    overrides_by_id = overrides_by_id or {}
    max_events = settings.max_events if max_events is None else max_events
    max_total = (
        settings.max_total_occurrences
        if max_total_occurrences is None
        else max_total_occurrences
    )
    happenings = list(happenings)
    to_process = happenings[:max_events]
    result = ExpansionResult()
    metrics = {
        "happenings_processed": 0,
        "happenings_skipped": len(happenings) - len(to_process),
        "total_occurrences": 0,
        "cancelled_count": 0,
        "was_capped": len(happenings) > len(to_process),
    }

    for happening in to_process:
        if metrics["total_occurrences"] >= max_total:
            metrics["was_capped"] = True
            break
        metrics["happenings_processed"] += 1
        interpreted = interpret_recurrence(happening.descriptor)
        if not interpreted.is_confident:
            result.unknown.append(happening)
            continue
        occurrences = iter_occurrences(
            happening.descriptor,
            start_key,
            end_key,
            max_occurrences=max_occurrences,
            overrides=overrides_by_id.get(happening.id),
            include_cancelled=True,
            interpreted=interpreted,
        )
        for occurrence in occurrences:
            if metrics["total_occurrences"] >= max_total:
                metrics["was_capped"] = True
                break
            metrics["total_occurrences"] += 1
            entry = GroupedOccurrence(happening=happening, occurrence=occurrence)
            if occurrence.is_cancelled:
                metrics["cancelled_count"] += 1
                result.cancelled.append(entry)
            else:
                result.grouped.setdefault(occurrence.date_key, []).append(entry)

    result.grouped = {
        date_key: sorted(result.grouped[date_key], key=_start_time_sort_key)
        for date_key in sorted(result.grouped)
    }
    result.cancelled.sort(key=lambda entry: entry.date_key)
    result.metrics = metrics
    if metrics["was_capped"]:
        logger.warning(
            "Occurrence expansion capped: processed=%d skipped=%d occurrences=%d",
            metrics["happenings_processed"],
            metrics["happenings_skipped"],
            metrics["total_occurrences"],
        )
    return result
