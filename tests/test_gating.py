"""Start gating: schedule, attempt limits and per-student access."""

from datetime import datetime

import pytest

from exam_portal.schemas import Exam, ExamConfig
from exam_portal.services.gating import (
    NOT_SCHEDULED,
    build_datetime,
    end_at,
    evaluate_gate,
    has_ended,
    is_allowed_by_exam,
    schedule_text,
)

NOW = datetime(2024, 6, 1, 12, 0)


def _exam(**fields):
    fields.setdefault("id", "e1")
    return Exam(**fields)


def test_specific_access_only_admits_listed_students():
    exam = _exam(access_type="specific", allowed_students=["A"])

    assert is_allowed_by_exam(exam, "A")
    assert not is_allowed_by_exam(exam, "B")
    assert not is_allowed_by_exam(exam, None)


def test_open_access_admits_everyone():
    assert is_allowed_by_exam(_exam(), "anyone")


def test_schedule_text_falls_back_to_not_scheduled():
    assert schedule_text(_exam()) == NOT_SCHEDULED
    assert schedule_text(_exam(start_date="2024-06-01", start_time="09:30")) == "2024-06-01 09:30"


def test_build_datetime_variants():
    assert build_datetime("2024-06-01", "09:30") == datetime(2024, 6, 1, 9, 30)
    assert build_datetime("2024-06-01", None) == datetime(2024, 6, 1)
    assert build_datetime(None, None, "2024-06-01T08:00:00") == datetime(2024, 6, 1, 8, 0)
    assert build_datetime("not-a-date", "xx") is None
    assert build_datetime(None, None) is None


def test_end_defaults_to_start_plus_duration():
    exam = _exam(start_date="2024-06-01", start_time="11:00", duration=30)

    assert end_at(exam) == datetime(2024, 6, 1, 11, 30)
    assert has_ended(exam, NOW)


def test_explicit_end_wins():
    exam = _exam(start_date="2024-06-01", start_time="11:00", duration=30, end_date="2024-06-01", end_time="13:00")

    assert not has_ended(exam, NOW)


def test_unscheduled_exam_never_ends():
    assert not has_ended(_exam(duration=30), NOW)


def test_completed_single_attempt_exam_is_blocked():
    gate = evaluate_gate(_exam(end_date="2099-01-01"), "u1", ["e1"], now=NOW)

    assert gate.completed
    assert not gate.can_attempt
    assert not gate.can_start(agreed=True)
    assert "already taken" in gate.blocked_reason


def test_multiple_attempts_reopen_completed_exam():
    exam = _exam(end_date="2099-01-01", config=ExamConfig(allow_multiple_attempts=True))

    assert evaluate_gate(exam, "u1", ["e1"], now=NOW).can_start(agreed=True)


def test_ended_exam_can_be_attempted_again():
    exam = _exam(end_date="2024-01-01")

    assert evaluate_gate(exam, "u1", ["e1"], now=NOW).can_attempt


@pytest.mark.parametrize(
    "agreed, upcoming, user, expected",
    [
        (True, False, "A", True),
        (False, False, "A", False),
        (True, True, "A", False),
        (True, False, "B", False),
    ],
)
def test_can_start_requires_every_condition(agreed, upcoming, user, expected):
    exam = _exam(access_type="specific", allowed_students=["A"])

    gate = evaluate_gate(exam, user, [], upcoming=upcoming, now=NOW)

    assert gate.can_start(agreed) is expected
    if expected:
        assert gate.blocked_reason is None
