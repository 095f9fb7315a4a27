"""Weekly happenings digest data.

Builds the data behind the weekly email: one section per day over the digest
window, each listing that day's occurrences by start time. Rendering and
delivery live elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .config import settings
from .dates import add_days, format_day_header, today
from .occurrences import GroupedOccurrence, OverrideSet, expand_and_group


@dataclass(frozen=True)
class DigestEntry:
    happening_id: str
    title: str
    date_key: str
    start_time: str | None
    time_display: str
    location: str | None
    notes: str | None = None


@dataclass
class DigestDay:
    date_key: str
    header: str
    entries: list[DigestEntry] = field(default_factory=list)


@dataclass
class WeeklyDigest:
    start: str
    end: str
    days: list[DigestDay] = field(default_factory=list)
    total_count: int = 0
    venue_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "date_range": {"start": self.start, "end": self.end},
            "total_count": self.total_count,
            "venue_count": self.venue_count,
            "days": [
                {
                    "date_key": day.date_key,
                    "header": day.header,
                    "entries": [entry.__dict__ for entry in day.entries],
                }
                for day in self.days
            ],
        }


def get_digest_date_range(today_key: str | None = None) -> tuple[str, str]:
    start = today_key or today()
    return start, add_days(start, settings.digest_window_days - 1)


def format_time_display(value: str | None) -> str:
    """Return "7:00 PM" for "19:00"; empty for missing times."""
    if not value:
        return ""
    hours, _, minutes = value.partition(":")
    hour = int(hours)
    suffix = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minutes or '00'} {suffix}"


def _entry(grouped: GroupedOccurrence) -> DigestEntry:
    happening = grouped.happening
    override = grouped.occurrence.override
    return DigestEntry(
        happening_id=happening.id,
        title=happening.title,
        date_key=grouped.date_key,
        start_time=grouped.start_time,
        time_display=format_time_display(grouped.start_time),
        location=getattr(happening, "location", None),
        notes=override.override_notes if override else None,
    )


def build_weekly_digest(
    happenings: Iterable[Any],
    overrides_by_id: Mapping[str, OverrideSet] | None = None,
    today_key: str | None = None,
) -> WeeklyDigest:
    """Collect the upcoming week's occurrences grouped by day.

    Cancelled occurrences and happenings whose schedule is not confident are
    left out.
    """
    start, end = get_digest_date_range(today_key)
    expansion = expand_and_group(
        happenings, start, end, overrides_by_id=overrides_by_id
    )
    digest = WeeklyDigest(start=start, end=end)
    venues: set[str] = set()
    for date_key, grouped in expansion.grouped.items():
        day = DigestDay(date_key=date_key, header=format_day_header(date_key))
        for item in grouped:
            entry = _entry(item)
            day.entries.append(entry)
            if entry.location:
                venues.add(entry.location.strip().lower())
        digest.days.append(day)
        digest.total_count += len(day.entries)
    digest.venue_count = len(venues)
    return digest
