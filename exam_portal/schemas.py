"""Typed views of backend payloads.

The REST backend returns loosely shaped JSON: ids under ``_id`` or ``id``,
references either populated (a dict) or bare (a string), options as plain
strings or ``{text, isCorrect}`` objects and booleans encoded as strings.
``parse_exam``, ``parse_question`` and ``parse_result`` are the only
functions that look at raw payloads; everything else works on the models
defined here.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from exam_portal.utils import round_half_up, sanitize_question_text

PRESENTATION_ALL = "all-at-once"
PRESENTATION_ONE = "one-by-one"


def normalize_bool(value: Any, fallback: bool) -> bool:
    """Accept real booleans and "true"/"false" strings; anything else is the fallback."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return fallback


def ref_id(value: Any) -> Optional[str]:
    """Return the id of a populated reference or the bare reference itself."""
    if value is None:
        return None
    if isinstance(value, dict):
        inner = value.get("_id", value.get("id"))
        return str(inner) if inner is not None else None
    return str(value)


def _number(value: Any, fallback: float) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


class Option(BaseModel):
    text: str
    is_correct: bool = False


class Question(BaseModel):
    id: str
    text: str = ""
    options: List[Option] = Field(default_factory=list)
    sub_questions: List[str] = Field(default_factory=list)
    correct_answer: str = ""
    explanation: str = ""
    marks: float = 1
    difficulty: Optional[str] = None
    subject_id: Optional[str] = None
    chapter_id: Optional[str] = None
    topic_id: Optional[str] = None
    exam_type_id: Optional[str] = None


class ExamConfig(BaseModel):
    """Behavioural switches of an exam, already defaulted."""

    marks_per_question: float = 1
    negative_marking: bool = False
    negative_mark_value: float = 0
    question_numbering: str = "sequential"
    question_presentation: str = PRESENTATION_ALL
    shuffle_questions: bool = False
    shuffle_options: bool = False
    allow_multiple_attempts: bool = False
    allow_answer_change: bool = True
    result_visibility: str = "immediate"
    answer_visibility: str = "after-exam-end"
    auto_submit: bool = True


class Exam(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    instructions: Optional[str] = None
    warnings: Optional[str] = None
    duration: int = 0  # minutes
    total_marks: float = 0
    question_ids: List[str] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    published_at: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    access_type: str = "all"
    allowed_students: List[str] = Field(default_factory=list)
    config: ExamConfig = Field(default_factory=ExamConfig)


class ExamResult(BaseModel):
    exam_id: str
    student_id: Optional[str] = None
    score: float = 0
    total_marks: float = 0
    percentage: int = 0
    answers: Dict[str, str] = Field(default_factory=dict)
    time_taken: int = 0  # seconds
    completed_at: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None

    def to_store(self) -> dict:
        """JSON shape kept in the session and local stores (backend field names)."""
        return {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "score": self.score,
            "totalMarks": self.total_marks,
            "percentage": self.percentage,
            "answers": dict(self.answers),
            "timeTaken": self.time_taken,
            "completedAt": self.completed_at,
            "subjectId": self.subject_id,
            "subjectName": self.subject_name,
        }


def _parse_options(raw_options: Any) -> List[Option]:
    options: List[Option] = []
    for raw in raw_options or []:
        if isinstance(raw, str):
            options.append(Option(text=raw))
        elif isinstance(raw, dict):
            options.append(
                Option(
                    text=str(raw.get("text", "")),
                    is_correct=normalize_bool(raw.get("isCorrect"), False),
                )
            )
    return options


def parse_question(dto: Any, marks: float = 1) -> Question:
    """Build a Question from a backend or practice-exam payload."""
    if not isinstance(dto, dict):
        # Unpopulated reference: only the id is known
        return Question(id=str(dto), marks=marks)

    options = _parse_options(dto.get("options"))
    correct = next((opt.text for opt in options if opt.is_correct), "")
    if not correct:
        correct = str(dto.get("correctAnswer") or "")

    text = dto.get("questionTextBn") or dto.get("questionTextEn") or dto.get("questionText") or ""
    sub_questions = [
        str(sq.get("text", "") if isinstance(sq, dict) else sq)
        for sq in dto.get("subQuestions") or []
    ]

    return Question(
        id=ref_id(dto) or "",
        text=sanitize_question_text(str(text)),
        options=options,
        sub_questions=sub_questions,
        correct_answer=correct,
        explanation=sanitize_question_text(str(dto.get("explanation") or "")),
        marks=marks,
        difficulty=dto.get("difficulty"),
        subject_id=ref_id(dto.get("subjectId")),
        chapter_id=ref_id(dto.get("chapterId")),
        topic_id=ref_id(dto.get("topicId")),
        exam_type_id=ref_id(dto.get("examTypeId")),
    )


def parse_config(dto: dict) -> ExamConfig:
    defaults = ExamConfig()
    marks = dto.get("marksPerQuestion")
    return ExamConfig(
        marks_per_question=_number(marks, defaults.marks_per_question),
        negative_marking=normalize_bool(dto.get("negativeMarking"), defaults.negative_marking),
        negative_mark_value=_number(dto.get("negativeMarkValue"), defaults.negative_mark_value),
        question_numbering=dto.get("questionNumbering") or defaults.question_numbering,
        question_presentation=dto.get("questionPresentation") or defaults.question_presentation,
        shuffle_questions=normalize_bool(dto.get("shuffleQuestions"), defaults.shuffle_questions),
        shuffle_options=normalize_bool(dto.get("shuffleOptions"), defaults.shuffle_options),
        allow_multiple_attempts=normalize_bool(
            dto.get("allowMultipleAttempts"), defaults.allow_multiple_attempts
        ),
        allow_answer_change=normalize_bool(dto.get("allowAnswerChange"), defaults.allow_answer_change),
        result_visibility=dto.get("resultVisibility") or defaults.result_visibility,
        answer_visibility=dto.get("answerVisibility") or defaults.answer_visibility,
        auto_submit=normalize_bool(dto.get("autoSubmit"), defaults.auto_submit),
    )


def parse_exam(dto: dict) -> Exam:
    """Build an Exam (with its questions) from a backend exam payload."""
    config = parse_config(dto)
    raw_questions = dto.get("questionIds") or dto.get("questions") or []
    questions = [
        parse_question(q, config.marks_per_question) for q in raw_questions if isinstance(q, dict)
    ]
    question_ids = [ref_id(q) for q in raw_questions]

    total_marks = _number(dto.get("totalMarks"), 0)
    if not total_marks:
        total_marks = len(question_ids) * config.marks_per_question

    subject = dto.get("subjectId")
    subject_name = subject.get("name") if isinstance(subject, dict) else None

    allowed = [ref_id(s) for s in dto.get("allowedStudents") or []]

    return Exam(
        id=ref_id(dto) or "",
        title=str(dto.get("title") or ""),
        description=dto.get("description"),
        instructions=dto.get("instructions"),
        warnings=dto.get("warnings"),
        duration=int(_number(dto.get("duration"), 0)),
        total_marks=total_marks,
        question_ids=[qid for qid in question_ids if qid],
        questions=questions,
        start_date=dto.get("startDate") or None,
        start_time=dto.get("startTime") or None,
        end_date=dto.get("endDate") or None,
        end_time=dto.get("endTime") or None,
        published_at=dto.get("publishedAt") or None,
        subject_id=ref_id(subject),
        subject_name=subject_name or dto.get("subject"),
        access_type=dto.get("accessType") or "all",
        allowed_students=[sid for sid in allowed if sid],
        config=config,
    )


def parse_result(dto: dict) -> ExamResult:
    """Build an ExamResult from a backend or locally cached result payload."""
    exam_ref = dto.get("examId", dto.get("exam"))
    student_ref = dto.get("studentId", dto.get("student"))

    subject_id = ref_id(dto.get("subjectId"))
    subject_name = dto.get("subjectName")
    if isinstance(exam_ref, dict):
        subject = exam_ref.get("subjectId")
        subject_id = subject_id or ref_id(subject)
        if isinstance(subject, dict):
            subject_name = subject_name or subject.get("name")
        subject_name = subject_name or exam_ref.get("subject")

    score = _number(dto.get("score"), 0)
    total = _number(dto.get("totalMarks"), 0)
    percentage = dto.get("percentage")
    if percentage is None:
        percentage = round_half_up(score / (total or 1) * 100) if score else 0

    answers = dto.get("answers") or {}
    return ExamResult(
        exam_id=ref_id(exam_ref) or "",
        student_id=ref_id(student_ref),
        score=score,
        total_marks=total,
        percentage=round_half_up(_number(percentage, 0)),
        answers={str(k): str(v) for k, v in answers.items() if v is not None},
        time_taken=int(_number(dto.get("timeTaken"), 0)),
        completed_at=dto.get("completedAt") or dto.get("createdAt"),
        subject_id=subject_id,
        subject_name=subject_name,
    )


class User(BaseModel):
    """The logged-in user as kept in the session after backend login."""

    id: str
    name: str = ""
    email: str = ""
    role: str = "student"
    token: Optional[str] = None


def parse_user(dto: dict, token: Optional[str] = None) -> User:
    return User(
        id=ref_id(dto) or "anon",
        name=str(dto.get("name") or ""),
        email=str(dto.get("email") or ""),
        role=str(dto.get("role") or "student"),
        token=token,
    )
