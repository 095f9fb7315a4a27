from __future__ import annotations

import logging
from datetime import date

import pytest

from happenings.recurrence import (
    LAST,
    RecurrenceDescriptor,
    Shape,
    build_rule_from_ordinals,
    canonicalize_descriptor,
    interpret_recurrence,
    label_from_recurrence,
    monthly_slot,
    normalize_rule,
    parse_rrule,
    parse_ordinals,
)


def _descriptor(**kwargs) -> RecurrenceDescriptor:
    return RecurrenceDescriptor(**kwargs)


@pytest.mark.parametrize(
    ("rule", "shape"),
    [
        (None, Shape.ONE_TIME),
        ("", Shape.ONE_TIME),
        ("None", Shape.ONE_TIME),
        ("weekly", Shape.WEEKLY),
        ("  Every Week ", Shape.WEEKLY),
        ("biweekly", Shape.BIWEEKLY),
        ("Bi-Weekly", Shape.BIWEEKLY),
        ("every other week", Shape.BIWEEKLY),
        ("MONTHLY", Shape.MONTHLY),
        ("custom", Shape.CUSTOM),
        ("2nd", Shape.ORDINAL_MONTHLY),
        ("first", Shape.ORDINAL_MONTHLY),
        ("Last", Shape.ORDINAL_MONTHLY),
        ("1st/3rd", Shape.ORDINAL_MONTHLY),
        ("2nd & 4th", Shape.ORDINAL_MONTHLY),
        ("1st and Last", Shape.ORDINAL_MONTHLY),
        ("1st, 3rd", Shape.ORDINAL_MONTHLY),
        ("seasonal", Shape.UNKNOWN),
        ("FREQ=WEEKLY;BYDAY=MO", Shape.WEEKLY),
        ("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=TU", Shape.BIWEEKLY),
        ("FREQ=MONTHLY;BYDAY=1TH,3TH", Shape.ORDINAL_MONTHLY),
        ("FREQ=DAILY", Shape.UNKNOWN),
        ("1st/6th", Shape.UNKNOWN),
        ("1st/", Shape.UNKNOWN),
        ("daily", Shape.UNKNOWN),
    ],
)
def test_normalize_rule_table(rule, shape):
    assert normalize_rule(rule).shape is shape


def test_ordinal_round_trip_is_canonical():
    assert parse_ordinals("3rd/1st") == (1, 3)
    assert parse_ordinals("last and first") == (1, LAST)
    assert build_rule_from_ordinals((LAST, 3, 1)) == "1st/3rd/last"
    assert normalize_rule("2nd & 4th").canonical == "2nd/4th"
    assert normalize_rule("every other week").canonical == "biweekly"
    assert parse_ordinals("1st/bogus") is None


def test_one_time_confident_only_with_event_date():
    interpreted = interpret_recurrence(_descriptor(event_date="2026-01-10"))
    assert interpreted.shape is Shape.ONE_TIME
    assert interpreted.is_recurring is False
    assert interpreted.is_confident is True

    missing = interpret_recurrence(_descriptor(event_date=None))
    assert missing.is_confident is False


def test_null_rule_with_day_of_week_is_one_time():
    interpreted = interpret_recurrence(
        _descriptor(event_date="2026-01-10", day_of_week="Monday")
    )
    assert interpreted.shape is Shape.ONE_TIME
    assert interpreted.is_recurring is False


def test_weekly_with_day_of_week_is_confident():
    interpreted = interpret_recurrence(
        _descriptor(day_of_week="monday", recurrence_rule="weekly")
    )
    assert interpreted.is_confident is True
    assert interpreted.effective_day_of_week == "Monday"
    assert interpreted.derived_from_fallback is False


def test_missing_day_of_week_falls_back_to_event_date(caplog):
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        interpreted = interpret_recurrence(
            _descriptor(event_date="2026-01-24", recurrence_rule="weekly")
        )

    assert interpreted.effective_day_of_week == "Saturday"
    assert interpreted.derived_from_fallback is True
    assert interpreted.is_confident is True
    assert "Derived day_of_week=Saturday" in caplog.text


def test_invalid_day_of_week_falls_back_to_event_date():
    interpreted = interpret_recurrence(
        _descriptor(
            event_date="2026-01-24", day_of_week="Funday", recurrence_rule="weekly"
        )
    )
    assert interpreted.effective_day_of_week == "Saturday"
    assert interpreted.derived_from_fallback is True


def test_recurring_without_weekday_or_event_date_is_not_confident():
    interpreted = interpret_recurrence(_descriptor(recurrence_rule="weekly"))
    assert interpreted.is_confident is False
    assert interpreted.effective_day_of_week is None


def test_day_of_week_wins_over_conflicting_event_date(caplog):
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        interpreted = interpret_recurrence(
            _descriptor(
                event_date="2026-01-06", day_of_week="Monday", recurrence_rule="weekly"
            )
        )

    assert interpreted.effective_day_of_week == "Monday"
    assert interpreted.anchor_conflict is True
    assert interpreted.anchor_date == date(2026, 1, 6)
    assert "day_of_week wins" in caplog.text


@pytest.mark.parametrize("rule", ["seasonal", "FREQ=DAILY", "whenever"])
def test_unknown_rules_fail_closed(rule):
    interpreted = interpret_recurrence(
        _descriptor(event_date="2026-01-06", day_of_week="Monday", recurrence_rule=rule)
    )
    assert interpreted.shape is Shape.UNKNOWN
    assert interpreted.is_confident is False


def test_custom_dates_must_all_parse():
    good = interpret_recurrence(
        _descriptor(
            recurrence_rule="custom",
            custom_dates=["2026-03-01", "2026-01-15", "2026-01-15"],
            day_of_week="Monday",
        )
    )
    assert good.is_confident is True
    assert good.custom_dates == (date(2026, 1, 15), date(2026, 3, 1))

    bad = interpret_recurrence(
        _descriptor(recurrence_rule="custom", custom_dates=["2026-01-15", "soon"])
    )
    assert bad.is_confident is False
    empty = interpret_recurrence(_descriptor(recurrence_rule="custom", custom_dates=[]))
    assert empty.is_confident is False


@pytest.mark.parametrize(
    ("anchor", "slot"),
    [
        (None, 1),
        (date(2026, 1, 1), 1),
        (date(2026, 1, 14), 2),
        (date(2026, 1, 24), 4),
        (date(2026, 1, 31), LAST),
    ],
)
def test_monthly_slot(anchor, slot):
    assert monthly_slot(anchor) == slot


@pytest.mark.parametrize(
    ("descriptor", "label"),
    [
        (_descriptor(event_date="2026-01-10"), "One-time"),
        (_descriptor(day_of_week="Monday", recurrence_rule="weekly"), "Every Monday"),
        (
            _descriptor(day_of_week="Monday", recurrence_rule="biweekly"),
            "Every Other Monday",
        ),
        (
            _descriptor(day_of_week="Thursday", recurrence_rule="2nd"),
            "2nd Thursday of the Month",
        ),
        (
            _descriptor(day_of_week="Thursday", recurrence_rule="last"),
            "Last Thursday of the Month",
        ),
        (
            _descriptor(day_of_week="Thursday", recurrence_rule="3rd & 1st"),
            "1st & 3rd Thursdays",
        ),
        (
            _descriptor(
                event_date="2026-01-24", day_of_week="Saturday", recurrence_rule="monthly"
            ),
            "4th Saturday of the Month",
        ),
        (
            _descriptor(recurrence_rule="custom", custom_dates=["2026-01-15"]),
            "Custom Schedule",
        ),
        (_descriptor(recurrence_rule="seasonal"), "Schedule TBD"),
        (_descriptor(recurrence_rule="weekly"), "Schedule TBD"),
    ],
)
def test_labels_follow_interpretation(descriptor, label):
    assert label_from_recurrence(interpret_recurrence(descriptor)) == label


def test_label_uses_effective_day_when_event_date_conflicts():
    interpreted = interpret_recurrence(
        _descriptor(event_date="2026-01-06", day_of_week="Monday", recurrence_rule="weekly")
    )
    assert label_from_recurrence(interpreted) == "Every Monday"


def test_canonicalize_derives_missing_weekday():
    canonical, derived = canonicalize_descriptor(
        _descriptor(event_date="2026-01-24", recurrence_rule="Every Week")
    )
    assert derived is True
    assert canonical.day_of_week == "Saturday"
    assert canonical.recurrence_rule == "weekly"


def test_canonicalize_normalizes_spelling():
    canonical, derived = canonicalize_descriptor(
        _descriptor(day_of_week="thu", recurrence_rule="3rd and 1st")
    )
    assert derived is False
    assert canonical.day_of_week == "Thursday"
    assert canonical.recurrence_rule == "1st/3rd"


def test_canonicalize_leaves_unknown_rules_alone():
    original = _descriptor(day_of_week="mon", recurrence_rule="seasonal")
    canonical, derived = canonicalize_descriptor(original)
    assert canonical == original
    assert derived is False


def test_canonicalize_sorts_custom_dates():
    canonical, _ = canonicalize_descriptor(
        _descriptor(recurrence_rule="Custom", custom_dates=["2026-03-01", "2026-01-15"])
    )
    assert canonical.recurrence_rule == "custom"
    assert list(canonical.custom_dates) == ["2026-01-15", "2026-03-01"]


def test_canonicalize_is_idempotent():
    once, _ = canonicalize_descriptor(
        _descriptor(event_date="2026-01-24", recurrence_rule="bi-weekly")
    )
    twice, derived = canonicalize_descriptor(once)
    assert twice == once
    assert derived is False


@pytest.mark.parametrize(
    ("rule", "shape", "weekday", "ordinals"),
    [
        ("FREQ=WEEKLY", Shape.WEEKLY, None, ()),
        ("freq=weekly;byday=sa", Shape.WEEKLY, "Saturday", ()),
        ("FREQ=WEEKLY;INTERVAL=1;BYDAY=MO;WKST=SU", Shape.WEEKLY, "Monday", ()),
        ("FREQ=WEEKLY;INTERVAL=2;BYDAY=FR", Shape.BIWEEKLY, "Friday", ()),
        ("FREQ=MONTHLY;BYDAY=2TU", Shape.ORDINAL_MONTHLY, "Tuesday", (2,)),
        ("FREQ=MONTHLY;BYDAY=-1FR", Shape.ORDINAL_MONTHLY, "Friday", (LAST,)),
        ("FREQ=MONTHLY;BYDAY=3TH,+1TH", Shape.ORDINAL_MONTHLY, "Thursday", (1, 3)),
    ],
)
def test_rrule_maps_onto_shapes(rule, shape, weekday, ordinals):
    normalized = parse_rrule(rule)
    assert normalized.shape is shape
    assert normalized.weekday == weekday
    assert normalized.ordinals == ordinals


@pytest.mark.parametrize(
    "rule",
    [
        "FREQ=DAILY",
        "FREQ=YEARLY;BYDAY=1MO",
        "FREQ=WEEKLY;INTERVAL=3;BYDAY=MO",
        "FREQ=WEEKLY;BYDAY=MO,WE",
        "FREQ=WEEKLY;BYDAY=2MO",
        "FREQ=MONTHLY",
        "FREQ=MONTHLY;BYDAY=MO",
        "FREQ=MONTHLY;BYDAY=1MO,TU",
        "FREQ=MONTHLY;BYDAY=-2SU",
        "FREQ=MONTHLY;INTERVAL=2;BYDAY=1SA",
        "FREQ=MONTHLY;BYMONTHDAY=15",
        "FREQ=WEEKLY;BYDAY=XX",
        "FREQ=SOMETIMES",
        "FREQ=WEEKLY;COUNT=0",
    ],
)
def test_unsupported_rrules_fail_closed(rule):
    interpreted = interpret_recurrence(
        _descriptor(event_date="2026-01-05", day_of_week="Monday", recurrence_rule=rule)
    )
    assert interpreted.shape is Shape.UNKNOWN
    assert interpreted.is_confident is False
    assert label_from_recurrence(interpreted) == "Schedule TBD"


def test_rrule_byday_decides_the_weekday(caplog):
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        interpreted = interpret_recurrence(
            _descriptor(day_of_week="Monday", recurrence_rule="FREQ=MONTHLY;BYDAY=1TH,3TH")
        )
    assert interpreted.is_confident is True
    assert interpreted.effective_day_of_week == "Thursday"
    assert interpreted.canonical_rule == "1st/3rd"
    assert label_from_recurrence(interpreted) == "1st & 3rd Thursdays"
    assert "BYDAY wins" in caplog.text


def test_rrule_without_byday_uses_day_of_week():
    interpreted = interpret_recurrence(
        _descriptor(day_of_week="Wednesday", recurrence_rule="RRULE:FREQ=WEEKLY")
    )
    assert interpreted.shape is Shape.WEEKLY
    assert interpreted.effective_day_of_week == "Wednesday"
    assert interpreted.derived_from_fallback is False


def test_rrule_count_and_until_become_series_bounds():
    counted = interpret_recurrence(
        _descriptor(event_date="2026-01-05", recurrence_rule="FREQ=WEEKLY;BYDAY=MO;COUNT=3")
    )
    until = interpret_recurrence(
        _descriptor(
            event_date="2026-01-05",
            recurrence_rule="FREQ=WEEKLY;BYDAY=MO;UNTIL=20260201T235959Z",
        )
    )
    stored_wins = interpret_recurrence(
        _descriptor(
            event_date="2026-01-05",
            recurrence_rule="FREQ=WEEKLY;BYDAY=MO;COUNT=3",
            max_occurrences=5,
        )
    )
    assert counted.max_occurrences == 3
    assert until.end_date == date(2026, 2, 1)
    assert stored_wins.max_occurrences == 5


def test_canonicalize_rewrites_rrule_into_plain_fields():
    canonical, derived = canonicalize_descriptor(
        _descriptor(
            event_date="2026-01-01",
            recurrence_rule="RRULE:FREQ=MONTHLY;BYDAY=1TH,3TH;UNTIL=20261231;COUNT=10",
        )
    )
    assert derived is False
    assert canonical.recurrence_rule == "1st/3rd"
    assert canonical.day_of_week == "Thursday"
    assert canonical.recurrence_end_date == "2026-12-31"
    assert canonical.max_occurrences == 10
    assert canonicalize_descriptor(canonical) == (canonical, False)
