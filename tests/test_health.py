from __future__ import annotations

import logging
from types import SimpleNamespace

from happenings.crud import create_happening
from happenings.health import audit_happenings, run_health_audit
from happenings.models import Happening
from happenings.recurrence import RecurrenceDescriptor


def _happening(id, **descriptor):
    return SimpleNamespace(id=id, title=id, descriptor=RecurrenceDescriptor(**descriptor))


def test_audit_classifies_problem_happenings(caplog):
    happenings = [
        _happening("ok", day_of_week="Monday", recurrence_rule="weekly"),
        _happening("tbd", recurrence_rule="seasonal"),
        _happening("derived", event_date="2026-01-24", recurrence_rule="weekly"),
        _happening(
            "conflict",
            event_date="2026-01-06",
            day_of_week="Monday",
            recurrence_rule="weekly",
        ),
        _happening("past", event_date="2025-12-01"),
    ]

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        report = audit_happenings(happenings, "2026-01-06")

    assert report.total == 5
    assert [f.happening_id for f in report.not_confident] == ["tbd"]
    assert [f.happening_id for f in report.derived_from_fallback] == ["derived"]
    assert [f.happening_id for f in report.anchor_conflicts] == ["conflict"]
    assert [f.happening_id for f in report.no_upcoming] == ["past"]
    assert report.not_confident[0].label == "Schedule TBD"
    assert report.has_critical_issues is True
    assert "Health audit summary" in caplog.text


def test_audit_without_issues():
    report = audit_happenings(
        [_happening("ok", day_of_week="Monday", recurrence_rule="weekly")], "2026-01-06"
    )
    assert report.has_critical_issues is False
    assert report.findings == []


def test_run_health_audit_reads_stored_happenings(session):
    create_happening(
        session,
        title="Unknown cadence",
        descriptor=RecurrenceDescriptor(recurrence_rule="seasonal"),
    )
    session.commit()

    report = run_health_audit()

    assert report.total == session.query(Happening).count() == 1
    assert report.has_critical_issues is True
