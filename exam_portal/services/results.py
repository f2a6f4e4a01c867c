"""Locating a submitted result and turning it into a scored review."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from exam_portal.api_client import ApiClient, unwrap
from exam_portal.errors import ApiError
from exam_portal.schemas import Exam, ExamResult, Question, parse_exam, parse_result
from exam_portal.stores import UserScopedStore, cached_results, last_result
from exam_portal.utils import round_half_up

logger = logging.getLogger(__name__)

CORRECT = "correct"
WRONG = "wrong"
SKIPPED = "skipped"

HISTORY_SIZE = 5


def _owned_by(result: ExamResult, user_id: Optional[str]) -> bool:
    # Results without an owner are taken to belong to the requesting user
    if not user_id or not result.student_id:
        return True
    return str(result.student_id) == str(user_id)


async def my_results(api: ApiClient, user_id: Optional[str]) -> List[ExamResult]:
    """The backend's "my results" list, re-filtered to the current user."""
    payload = unwrap(await api.exam_results.get_mine())
    results = [parse_result(item) for item in payload or [] if isinstance(item, dict)]
    return [r for r in results if _owned_by(r, user_id)]


async def resolve_result(
    exam_id: str,
    user_session: UserScopedStore,
    user_local: UserScopedStore,
    api: ApiClient,
) -> Optional[ExamResult]:
    """Find the user's result for ``exam_id``.

    Looks in the session's last result, then the local results map, then
    the backend. Returns None when nothing is found; backend errors are
    logged, not raised.
    """
    exam_id = str(exam_id)

    stored = last_result(user_session)
    if stored and str(stored.get("examId")) == exam_id:
        return parse_result(stored)

    stored = cached_results(user_local).get(exam_id)
    if stored:
        return parse_result(stored)

    try:
        for result in await my_results(api, user_local.user_id):
            if result.exam_id == exam_id:
                return result
    except ApiError as exc:
        logger.warning("Could not fetch results for exam %s: %s", exam_id, exc)
    return None


@dataclass
class ReviewItem:
    number: int
    question: Question
    answer: Optional[str]
    status: str

    @property
    def is_correct(self) -> bool:
        return self.status == CORRECT


def question_status(question: Question, answers: Dict[str, str]) -> str:
    answer = answers.get(question.id)
    if not answer:
        return SKIPPED
    return CORRECT if answer == question.correct_answer else WRONG


def review_questions(questions: Sequence[Question], answers: Dict[str, str]) -> List[ReviewItem]:
    return [
        ReviewItem(number=i, question=q, answer=answers.get(q.id), status=question_status(q, answers))
        for i, q in enumerate(questions, start=1)
    ]


def tally(review: Sequence[ReviewItem]) -> Dict[str, int]:
    counts = {CORRECT: 0, WRONG: 0, SKIPPED: 0}
    for item in review:
        counts[item.status] += 1
    return counts


def letter_grade(percentage: float) -> str:
    """Convert percentage to letter grade (A+/A/B/C/D/F)."""
    if percentage >= 90:
        return "A+"
    elif percentage >= 80:
        return "A"
    elif percentage >= 70:
        return "B"
    elif percentage >= 60:
        return "C"
    elif percentage >= 50:
        return "D"
    else:
        return "F"


@dataclass
class SubjectHistory:
    recent: List[ExamResult]
    average: int
    count: int


EMPTY_HISTORY = SubjectHistory(recent=[], average=0, count=0)


def _summarize(related: List[ExamResult], average_over_recent: bool) -> SubjectHistory:
    recent = sorted(related, key=lambda r: r.completed_at or "", reverse=True)[:HISTORY_SIZE]
    pool = recent if average_over_recent else related
    average = round_half_up(sum(r.percentage for r in pool) / len(pool)) if pool else 0
    return SubjectHistory(recent=recent, average=average, count=len(related))


async def subject_history(
    exam: Exam, user_local: UserScopedStore, api: ApiClient
) -> SubjectHistory:
    """Recent results for exams sharing ``exam``'s subject.

    Uses the backend list first. When that fails, walks the local results
    map and looks each exam up individually, skipping the ones that fail.
    Never raises.
    """
    if not exam.subject_id:
        return EMPTY_HISTORY

    try:
        results = await my_results(api, user_local.user_id)
        matching = [r for r in results if r.subject_id and r.subject_id == exam.subject_id]
        return _summarize(matching, average_over_recent=True)
    except ApiError as exc:
        logger.warning("Falling back to local history for subject %s: %s", exam.subject_id, exc)

    related: List[ExamResult] = []
    for other_id, stored in cached_results(user_local).items():
        try:
            payload = unwrap(await api.exams.get(other_id))
        except ApiError:
            continue
        if not isinstance(payload, dict):
            continue
        other = parse_exam(payload)
        if other.subject_id and other.subject_id == exam.subject_id:
            related.append(parse_result(stored))
    return _summarize(related, average_over_recent=False)


# ===================== MY RESULTS =====================


@dataclass
class ResultStats:
    total: int
    average: int
    best: int
    worst: int
    fastest: Optional[int]  # seconds
    slowest: Optional[int]
    subject_averages: Dict[str, int]


def summarize_results(results: Sequence[ExamResult], exams: Sequence[Exam] = ()) -> ResultStats:
    """Headline numbers for the "my results" page.

    Subjects come from the result itself, then from the matching exam,
    else "Unknown".
    """
    if not results:
        return ResultStats(0, 0, 0, 0, None, None, {})

    by_id = {exam.id: exam for exam in exams}
    buckets: Dict[str, List[int]] = {}
    for result in results:
        exam = by_id.get(result.exam_id)
        subject = result.subject_name or (exam.subject_name if exam else None) or "Unknown"
        buckets.setdefault(subject, []).append(result.percentage)

    percentages = [r.percentage for r in results]
    times = [r.time_taken for r in results]
    return ResultStats(
        total=len(results),
        average=round_half_up(sum(percentages) / len(percentages)),
        best=max(percentages),
        worst=min(percentages),
        fastest=min(times),
        slowest=max(times),
        subject_averages={
            name: round_half_up(sum(values) / len(values)) for name, values in buckets.items()
        },
    )


async def results_for_existing_exams(api: ApiClient, user_id: Optional[str]):
    """The user's results whose exam still exists, plus the exam list.

    ApiError propagates to the caller.
    """
    results = await my_results(api, user_id)
    payload = unwrap(await api.exams.get_all())
    exams = [parse_exam(item) for item in payload or [] if isinstance(item, dict)]
    valid_ids = {exam.id for exam in exams}
    return [r for r in results if r.exam_id in valid_ids], exams
