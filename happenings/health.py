"""Recurrence data health audit."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .crud import list_all_happenings
from .database import get_session
from .dates import today
from .occurrences import compute_next_occurrence
from .recurrence import interpret_recurrence, label_from_recurrence

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class HealthFinding:
    happening_id: str
    title: str
    issue: str
    label: str
    detail: str = ""


@dataclass
class HealthReport:
    today_key: str
    total: int = 0
    not_confident: list[HealthFinding] = field(default_factory=list)
    derived_from_fallback: list[HealthFinding] = field(default_factory=list)
    anchor_conflicts: list[HealthFinding] = field(default_factory=list)
    no_upcoming: list[HealthFinding] = field(default_factory=list)

    @property
    def has_critical_issues(self) -> bool:
        return bool(self.not_confident)

    @property
    def findings(self) -> list[HealthFinding]:
        return [
            *self.not_confident,
            *self.derived_from_fallback,
            *self.anchor_conflicts,
            *self.no_upcoming,
        ]

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "not_confident": len(self.not_confident),
            "derived_from_fallback": len(self.derived_from_fallback),
            "anchor_conflicts": len(self.anchor_conflicts),
            "no_upcoming": len(self.no_upcoming),
        }


def audit_happenings(
    happenings: Iterable[Any], today_key: str | None = None
) -> HealthReport:
    """Classify every happening's recurrence and report the ones needing attention."""
    report = HealthReport(today_key=today_key or today())
    for happening in happenings:
        report.total += 1
        descriptor = happening.descriptor
        interpreted = interpret_recurrence(descriptor)
        label = label_from_recurrence(interpreted)

        def finding(issue: str, detail: str = "") -> HealthFinding:
            return HealthFinding(
                happening_id=happening.id,
                title=happening.title,
                issue=issue,
                label=label,
                detail=detail,
            )

        if not interpreted.is_confident:
            report.not_confident.append(
                finding(
                    "not_confident",
                    f"rule={descriptor.recurrence_rule!r} day_of_week={descriptor.day_of_week!r}",
                )
            )
            continue
        if interpreted.derived_from_fallback:
            report.derived_from_fallback.append(
                finding("derived_from_fallback", f"event_date={descriptor.event_date}")
            )
        if interpreted.anchor_conflict:
            report.anchor_conflicts.append(
                finding(
                    "anchor_conflict",
                    f"event_date={descriptor.event_date} day_of_week={descriptor.day_of_week}",
                )
            )
        if not compute_next_occurrence(descriptor, today_key).has_future:
            report.no_upcoming.append(finding("no_upcoming"))

    for item in report.findings:
        logger.warning(
            "Health: happening %s (%s) %s %s",
            item.happening_id,
            item.title,
            item.issue,
            item.detail,
        )
    logger.info("Health audit summary: %s", report.summary())
    return report


def run_health_audit() -> HealthReport:
    """Audit every stored happening; used by the scheduler and the CLI."""
    with get_session() as session:
        return audit_happenings(list_all_happenings(session))
