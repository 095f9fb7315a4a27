"""FastAPI application for Happenings."""

from __future__ import annotations

import logging
import tomllib
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .crud import (
    clear_override,
    create_happening,
    get_happening,
    list_all_happenings,
    list_published_happenings,
    load_override_set,
    load_overrides_by_happening,
    set_override,
)
from .database import SessionLocal
from .dates import (
    DateKeyError,
    add_days,
    format_date_group_header,
    format_date_key_for_display,
    parse_date_key,
    today,
)
from .digest import build_weekly_digest
from .health import audit_happenings
from .models import Happening, OccurrenceOverride
from .occurrences import (
    NextOccurrence,
    Occurrence,
    OccurrenceCancelledError,
    compute_next_occurrence,
    expand_and_group,
    expand_occurrences_for_event,
    resolve_effective_date_key,
)
from .recurrence import (
    InterpretedRecurrence,
    RecurrenceDescriptor,
    interpret_recurrence,
    label_from_recurrence,
)
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("happenings")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Happenings", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(DateKeyError)
async def date_key_error_handler(request: Request, exc: DateKeyError):
    logger.error(
        "Invalid date key on %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse({"detail": str(exc), "code": exc.code}, status_code=400)


@app.exception_handler(OccurrenceCancelledError)
async def cancelled_error_handler(request: Request, exc: OccurrenceCancelledError):
    return JSONResponse(
        {"detail": str(exc), "code": exc.code, "date_key": exc.date_key},
        status_code=409,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class HappeningCreatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: str | None = Field(None, description="Local start time as HH:MM")
    event_date: str | None = Field(None, description="Anchor date as YYYY-MM-DD")
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    custom_dates: list[str] | None = None
    recurrence_end_date: str | None = None
    max_occurrences: int | None = Field(None, ge=1)
    is_published: bool = True

    def descriptor(self) -> RecurrenceDescriptor:
        return RecurrenceDescriptor(
            event_date=self.event_date,
            day_of_week=self.day_of_week,
            recurrence_rule=self.recurrence_rule,
            custom_dates=self.custom_dates,
            recurrence_end_date=self.recurrence_end_date,
            max_occurrences=self.max_occurrences,
        )


class OverridePayload(BaseModel):
    status: str = "cancelled"
    override_start_time: str | None = Field(None, description="HH:MM")
    override_notes: str | None = None


def _ensure_happening(db: Session, happening_id: str) -> Happening:
    happening = get_happening(db, happening_id)
    if not happening:
        raise HTTPException(status_code=404, detail="Happening not found")
    return happening


def _resolve_window(
    start: str | None, end: str | None, tz: str | None = None
) -> tuple[str, str]:
    start_key = start or today(tz)
    parse_date_key(start_key)
    end_key = end or add_days(start_key, settings.default_window_days)
    if parse_date_key(end_key) < parse_date_key(start_key):
        raise DateKeyError(f"end {end_key} is before start {start_key}")
    return start_key, end_key


def _serialize_interpretation(interpreted: InterpretedRecurrence) -> dict:
    return {
        "shape": interpreted.shape.value,
        "is_recurring": interpreted.is_recurring,
        "is_confident": interpreted.is_confident,
        "effective_day_of_week": interpreted.effective_day_of_week,
        "derived_from_fallback": interpreted.derived_from_fallback,
        "anchor_conflict": interpreted.anchor_conflict,
        "canonical_rule": interpreted.canonical_rule,
        "label": label_from_recurrence(interpreted),
    }


def _serialize_next(next_occurrence: NextOccurrence) -> dict:
    return {
        "date_key": next_occurrence.date_key,
        "is_confident": next_occurrence.is_confident,
        "is_today": next_occurrence.is_today,
        "is_tomorrow": next_occurrence.is_tomorrow,
        "derived_from_fallback": next_occurrence.derived_from_fallback,
    }


def _serialize_override(override: OccurrenceOverride) -> dict:
    return {
        "date_key": override.date_key,
        "status": override.status,
        "override_start_time": override.override_start_time,
        "override_notes": override.override_notes,
    }


def _serialize_occurrence(occurrence: Occurrence) -> dict:
    override = occurrence.override
    return {
        "date_key": occurrence.date_key,
        "is_confident": occurrence.is_confident,
        "status": occurrence.status,
        "override_start_time": override.override_start_time if override else None,
        "override_notes": override.override_notes if override else None,
    }


def _serialize_happening(happening: Happening) -> dict:
    return {
        "id": happening.id,
        "title": happening.title,
        "description": happening.description,
        "location": happening.location,
        "start_time": happening.start_time,
        "event_date": happening.event_date,
        "day_of_week": happening.day_of_week,
        "recurrence_rule": happening.recurrence_rule,
        "custom_dates": happening.custom_dates,
        "recurrence_end_date": happening.recurrence_end_date,
        "max_occurrences": happening.max_occurrences,
        "is_published": happening.is_published,
    }


# -------- JSON API (v1) --------


@app.get("/api/v1/happenings")
def api_list_happenings(
    start: str | None = Query(None, description="YYYY-MM-DD, default today"),
    end: str | None = Query(None, description="YYYY-MM-DD, inclusive"),
    db: Session = Depends(get_db),
):
    start_key, end_key = _resolve_window(start, end)
    happenings = list_published_happenings(db)
    overrides = load_overrides_by_happening(
        db, [happening.id for happening in happenings], start_key, end_key
    )
    result = expand_and_group(
        happenings, start_key, end_key, overrides_by_id=overrides
    )
    today_key = today()
    dates = []
    for date_key, entries in result.grouped.items():
        dates.append(
            {
                "date_key": date_key,
                "header": format_date_group_header(date_key, today_key),
                "happenings": [
                    {
                        "id": entry.happening.id,
                        "title": entry.happening.title,
                        "location": entry.happening.location,
                        "start_time": entry.start_time,
                        "status": entry.occurrence.status,
                    }
                    for entry in entries
                ],
            }
        )
    return {
        "range": {"start": start_key, "end": end_key},
        "dates": dates,
        "metrics": result.metrics,
    }


@app.post("/api/v1/happenings", status_code=201)
def api_create_happening(
    payload: HappeningCreatePayload, db: Session = Depends(get_db)
):
    try:
        happening, derived = create_happening(
            db,
            title=payload.title,
            descriptor=payload.descriptor(),
            start_time=payload.start_time,
            description=payload.description,
            location=payload.location,
            is_published=payload.is_published,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    interpreted = interpret_recurrence(happening.descriptor)
    return {
        "happening": _serialize_happening(happening),
        "interpretation": _serialize_interpretation(interpreted),
        "derived_day_of_week": derived,
    }


@app.get("/api/v1/happenings/{happening_id}")
def api_get_happening(
    happening_id: str,
    today_key: str | None = Query(None, alias="today"),
    db: Session = Depends(get_db),
):
    happening = _ensure_happening(db, happening_id)
    descriptor = happening.descriptor
    today_key = today_key or today(descriptor.timezone)
    next_occurrence = compute_next_occurrence(
        descriptor, today_key, overrides=load_override_set(db, happening.id)
    )
    return {
        "happening": _serialize_happening(happening),
        "interpretation": _serialize_interpretation(interpret_recurrence(descriptor)),
        "next_occurrence": _serialize_next(next_occurrence),
        "overrides": [_serialize_override(o) for o in happening.overrides],
    }


@app.get("/api/v1/happenings/{happening_id}/occurrences")
def api_list_occurrences(
    happening_id: str,
    start: str | None = Query(None),
    end: str | None = Query(None),
    max_occurrences: int | None = Query(None, alias="max", ge=0),
    include_cancelled: bool = Query(False),
    db: Session = Depends(get_db),
):
    happening = _ensure_happening(db, happening_id)
    descriptor = happening.descriptor
    start_key, end_key = _resolve_window(start, end, descriptor.timezone)
    cap = settings.max_occurrences_per_event if max_occurrences is None else max_occurrences
    # One extra occurrence tells a full page apart from a truncated one.
    occurrences = expand_occurrences_for_event(
        descriptor,
        start_key,
        end_key,
        max_occurrences=cap + 1,
        overrides=load_override_set(db, happening.id),
        include_cancelled=include_cancelled,
    )
    was_capped = len(occurrences) > cap
    occurrences = occurrences[:cap]
    return {
        "range": {"start": start_key, "end": end_key},
        "count": len(occurrences),
        "cap": cap,
        "was_capped": was_capped,
        "occurrences": [_serialize_occurrence(o) for o in occurrences],
    }


@app.get("/api/v1/happenings/{happening_id}/occurrence")
def api_resolve_occurrence(
    happening_id: str,
    date_key: str | None = Query(None),
    today_key: str | None = Query(None, alias="today"),
    db: Session = Depends(get_db),
):
    """Resolve which occurrence a per-date action (RSVP, comment) targets."""
    happening = _ensure_happening(db, happening_id)
    overrides = load_override_set(db, happening.id)
    resolved = resolve_effective_date_key(
        happening.descriptor,
        date_key,
        today_key,
        overrides=overrides,
    )
    if resolved is None:
        raise HTTPException(status_code=404, detail="No upcoming occurrence")
    override = overrides.get(resolved)
    return {
        "date_key": resolved,
        "display": format_date_key_for_display(resolved),
        "status": override.status if override else None,
    }


@app.put("/api/v1/happenings/{happening_id}/overrides/{date_key}")
def api_set_override(
    happening_id: str,
    date_key: str,
    payload: OverridePayload,
    db: Session = Depends(get_db),
):
    happening = _ensure_happening(db, happening_id)
    try:
        override = set_override(
            db,
            happening,
            date_key,
            status=payload.status,
            override_start_time=payload.override_start_time,
            override_notes=payload.override_notes,
        )
    except DateKeyError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"override": _serialize_override(override)}


@app.delete("/api/v1/happenings/{happening_id}/overrides/{date_key}", status_code=204)
def api_clear_override(
    happening_id: str, date_key: str, db: Session = Depends(get_db)
):
    happening = _ensure_happening(db, happening_id)
    if not clear_override(db, happening, date_key):
        raise HTTPException(status_code=404, detail="Override not found")
    return Response(status_code=204)


@app.get("/api/v1/admin/attention")
def api_admin_attention(
    today_key: str | None = Query(None, alias="today"),
    db: Session = Depends(get_db),
):
    """List happenings whose recurrence data needs an operator's attention."""
    if today_key:
        parse_date_key(today_key)
    report = audit_happenings(list_all_happenings(db), today_key)
    return {
        "summary": report.summary(),
        "has_critical_issues": report.has_critical_issues,
        "findings": [finding.__dict__ for finding in report.findings],
    }


@app.get("/api/v1/digest/weekly")
def api_weekly_digest(
    today_key: str | None = Query(None, alias="today"),
    db: Session = Depends(get_db),
):
    today_key = today_key or today()
    parse_date_key(today_key)
    happenings = list_published_happenings(db)
    overrides = load_overrides_by_happening(db, [h.id for h in happenings])
    digest = build_weekly_digest(happenings, overrides, today_key)
    return digest.as_dict()
