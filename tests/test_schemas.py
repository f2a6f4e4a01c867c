"""Normalization of loosely shaped backend payloads."""

import pytest

from conftest import make_exam
from exam_portal.schemas import (
    ExamResult,
    normalize_bool,
    parse_config,
    parse_exam,
    parse_question,
    parse_result,
    parse_user,
)


@pytest.mark.parametrize(
    "value, fallback, expected",
    [(True, False, True), ("true", False, True), ("FALSE", True, False), (None, True, True), ("yes", False, False), (1, False, False)],
)
def test_normalize_bool(value, fallback, expected):
    assert normalize_bool(value, fallback) is expected


def test_config_defaults():
    config = parse_config({})

    assert config.marks_per_question == 1
    assert config.allow_answer_change is True
    assert config.auto_submit is True
    assert config.allow_multiple_attempts is False
    assert config.question_presentation == "all-at-once"


def test_config_accepts_string_flags():
    config = parse_config({"negativeMarking": "true", "negativeMarkValue": "0.5", "autoSubmit": "false"})

    assert config.negative_marking is True
    assert config.negative_mark_value == 0.5
    assert config.auto_submit is False


def test_parse_exam_with_populated_questions():
    exam = parse_exam(make_exam("e1", count=3))

    assert exam.id == "e1"
    assert exam.question_ids == ["e1-q1", "e1-q2", "e1-q3"]
    assert exam.total_marks == 3
    assert exam.subject_id == "s1"
    assert exam.subject_name == "Physics"
    assert exam.questions[0].correct_answer == "A"


def test_parse_exam_with_bare_question_refs():
    exam = parse_exam({"id": "e2", "questions": ["q1", "q2"], "marksPerQuestion": 2, "totalMarks": 0})

    assert exam.question_ids == ["q1", "q2"]
    assert exam.questions == []
    assert exam.total_marks == 4


def test_parse_question_string_options_and_correct_answer():
    question = parse_question({"_id": "q1", "questionText": "2 + 2?", "options": ["3", "4"], "correctAnswer": "4"})

    assert [o.text for o in question.options] == ["3", "4"]
    assert question.correct_answer == "4"


def test_parse_question_sanitizes_text():
    question = parse_question({"_id": "q1", "questionText": "H<sub>2</sub>O <script>alert(1)</script>"})

    assert "<sub>2</sub>" in question.text
    assert "<script>" not in question.text


def test_parse_result_reads_populated_refs():
    result = parse_result(
        {
            "examId": {"_id": "e1", "subjectId": {"_id": "s1", "name": "Physics"}},
            "studentId": {"_id": "u1"},
            "score": 5.25,
            "totalMarks": 10,
            "answers": {"q1": "A", "q2": None},
            "createdAt": "2024-01-01T00:00:00Z",
        }
    )

    assert result.exam_id == "e1"
    assert result.student_id == "u1"
    assert result.subject_id == "s1"
    assert result.subject_name == "Physics"
    assert result.percentage == 53
    assert result.answers == {"q1": "A"}
    assert result.completed_at == "2024-01-01T00:00:00Z"


def test_result_store_shape_round_trips():
    result = ExamResult(exam_id="e1", student_id="u1", score=7, total_marks=10, percentage=70, time_taken=90)

    assert parse_result(result.to_store()) == result


def test_parse_user():
    user = parse_user({"_id": "u1", "name": "Alice", "email": "a@example.com"}, token="tok")

    assert (user.id, user.role, user.token) == ("u1", "student", "tok")
