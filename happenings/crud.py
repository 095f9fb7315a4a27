"""CRUD helpers for happenings and their per-date overrides."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .dates import parse_date_key, utcnow
from .models import Happening, OccurrenceOverride
from .occurrences import OVERRIDE_STATUSES, OverrideSet
from .recurrence import RecurrenceDescriptor, canonicalize_descriptor

logger = logging.getLogger("uvicorn.error")

_start_time_pattern = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _now() -> datetime:
    return utcnow()


def _validate_start_time(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not _start_time_pattern.match(value):
        raise ValueError("start_time must be HH:MM")
    return value


def _apply_descriptor(happening: Happening, descriptor: RecurrenceDescriptor) -> None:
    happening.event_date = descriptor.event_date
    happening.day_of_week = descriptor.day_of_week
    happening.recurrence_rule = descriptor.recurrence_rule
    happening.custom_dates = (
        list(descriptor.custom_dates) if descriptor.custom_dates else None
    )
    happening.recurrence_end_date = descriptor.recurrence_end_date
    happening.max_occurrences = descriptor.max_occurrences


def create_happening(
    session: Session,
    *,
    title: str,
    descriptor: RecurrenceDescriptor,
    start_time: str | None = None,
    description: str | None = None,
    location: str | None = None,
    is_published: bool = True,
) -> tuple[Happening, bool]:
    """Create a happening with its recurrence canonicalized.

    Returns the row and whether ``day_of_week`` was derived from ``event_date``.
    """
    canonical, derived = canonicalize_descriptor(descriptor)
    happening = Happening(
        title=title,
        description=description,
        location=location,
        start_time=_validate_start_time(start_time),
        is_published=is_published,
    )
    _apply_descriptor(happening, canonical)
    session.add(happening)
    session.flush()
    if derived:
        logger.warning(
            "Happening %s stored with day_of_week derived from event_date",
            happening.id,
        )
    return happening, derived


def update_happening_recurrence(
    session: Session, happening: Happening, descriptor: RecurrenceDescriptor
) -> bool:
    """Replace the recurrence fields, canonicalizing them first."""
    canonical, derived = canonicalize_descriptor(descriptor)
    _apply_descriptor(happening, canonical)
    happening.last_modified = _now()
    session.add(happening)
    session.flush()
    return derived


def get_happening(session: Session, happening_id: str) -> Happening | None:
    return session.get(Happening, happening_id)


def list_published_happenings(
    session: Session, limit: int | None = None
) -> Sequence[Happening]:
    stmt = (
        select(Happening)
        .where(Happening.is_published.is_(True))
        .order_by(Happening.created_at.asc(), Happening.id.asc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def list_all_happenings(session: Session) -> Sequence[Happening]:
    stmt = select(Happening).order_by(Happening.created_at.asc(), Happening.id.asc())
    return session.scalars(stmt).all()


def get_override(
    session: Session, happening_id: str, date_key: str
) -> OccurrenceOverride | None:
    stmt = select(OccurrenceOverride).where(
        OccurrenceOverride.happening_id == happening_id,
        OccurrenceOverride.date_key == date_key,
    )
    return session.scalars(stmt).first()


def set_override(
    session: Session,
    happening: Happening,
    date_key: str,
    *,
    status: str = "cancelled",
    override_start_time: str | None = None,
    override_notes: str | None = None,
) -> OccurrenceOverride:
    """Create or replace the override for one occurrence date."""
    parse_date_key(date_key)
    status = (status or "").strip().lower()
    if status not in OVERRIDE_STATUSES:
        raise ValueError("Invalid override status")
    override = get_override(session, happening.id, date_key)
    if override is None:
        override = OccurrenceOverride(happening_id=happening.id, date_key=date_key)
    override.status = status
    override.override_start_time = _validate_start_time(override_start_time)
    override.override_notes = override_notes
    session.add(override)
    session.flush()
    return override


def clear_override(session: Session, happening: Happening, date_key: str) -> bool:
    parse_date_key(date_key)
    override = get_override(session, happening.id, date_key)
    if override is None:
        return False
    session.delete(override)
    session.flush()
    return True


def load_override_set(session: Session, happening_id: str) -> OverrideSet:
    stmt = select(OccurrenceOverride).where(
        OccurrenceOverride.happening_id == happening_id
    )
    return OverrideSet.from_rows(session.scalars(stmt).all())


def load_overrides_by_happening(
    session: Session,
    happening_ids: Sequence[str],
    start_key: str | None = None,
    end_key: str | None = None,
) -> dict[str, OverrideSet]:
    """Load overrides for many happenings in one query, keyed by happening id."""
    if not happening_ids:
        return {}
    stmt = select(OccurrenceOverride).where(
        OccurrenceOverride.happening_id.in_(list(happening_ids))
    )
    if start_key:
        stmt = stmt.where(OccurrenceOverride.date_key >= start_key)
    if end_key:
        stmt = stmt.where(OccurrenceOverride.date_key <= end_key)
    rows_by_id: dict[str, list[OccurrenceOverride]] = defaultdict(list)
    for row in session.scalars(stmt).all():
        rows_by_id[row.happening_id].append(row)
    return {
        happening_id: OverrideSet.from_rows(rows)
        for happening_id, rows in rows_by_id.items()
    }
