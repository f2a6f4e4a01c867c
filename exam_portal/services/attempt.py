"""The timed exam attempt: load, answer, count down, submit once."""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple, TypeVar, Union

from exam_portal.api_client import ApiClient, unwrap
from exam_portal.config import settings
from exam_portal.errors import ApiError, AttemptClosed, ExamNotFound
from exam_portal.schemas import (
    PRESENTATION_ONE,
    Exam,
    ExamConfig,
    ExamResult,
    Question,
    parse_exam,
    parse_result,
)
from exam_portal.stores import (
    KeyValueStore,
    UserScopedStore,
    cache_result,
    clear_in_progress,
    mark_completed,
    mark_in_progress,
    practice_exam,
    set_last_result,
)
from exam_portal.utils import round_half_up

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ===================== ATTEMPT STATES =====================


@dataclass(frozen=True)
class Loading:
    name = "loading"


@dataclass(frozen=True)
class Running:
    elapsed: int = 0
    name = "running"


@dataclass(frozen=True)
class Submitting:
    name = "submitting"


@dataclass(frozen=True)
class Submitted:
    result: ExamResult
    name = "submitted"


AttemptState = Union[Loading, Running, Submitting, Submitted]


# ===================== SCORING =====================


def shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """Fisher-Yates shuffle of a copy of ``items``."""
    rng = rng or random.Random()
    copy = list(items)
    for i in range(len(copy) - 1, 0, -1):
        j = rng.randint(0, i)
        copy[i], copy[j] = copy[j], copy[i]
    return copy


def score_answers(questions: Sequence[Question], answers: Dict[str, str], config: ExamConfig) -> float:
    """Raw score: marks for correct answers minus the penalty for wrong ones.

    Skipped questions count zero. The result may be negative.
    """
    score = 0.0
    for question in questions:
        answer = answers.get(question.id)
        if answer and answer == question.correct_answer:
            score += question.marks
        elif answer and config.negative_marking:
            score -= config.negative_mark_value
    return score


def percentage(score: float, total_marks: float) -> int:
    """Rounded (half up) percentage of the non-negative score."""
    if total_marks <= 0:
        return 0
    return round_half_up(max(0.0, score) / total_marks * 100)


def format_time(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


async def find_exam(
    exam_id: str, session: KeyValueStore, api: ApiClient
) -> Tuple[Exam, List[Question], bool]:
    """Return ``(exam, questions, is_practice)``.

    A practice exam saved in the session wins over the backend. Raises
    ExamNotFound when the backend has no such exam; ApiError propagates.
    """
    blob = practice_exam(session, exam_id)
    if blob:
        exam = Exam.model_validate(blob["exam"])
        return exam, [Question.model_validate(q) for q in blob.get("questions") or []], True

    payload = unwrap(await api.exams.get(exam_id))
    if not payload or not isinstance(payload, dict):
        raise ExamNotFound(exam_id)
    exam = parse_exam(payload)
    return exam, exam.questions, False


# ===================== ATTEMPT =====================


class ExamAttempt:
    """One student's run through one exam.

    The lifecycle is a single ``state`` value moving forward only:
    Loading -> Running -> Submitting -> Submitted. Answering operations
    require Running; ``submit`` runs its side effects at most once no matter
    how many callers (manual submit, timer expiry) reach it.
    """

    def __init__(
        self,
        exam_id: str,
        user_id: Optional[str],
        api: ApiClient,
        session_store: KeyValueStore,
        local_store: KeyValueStore,
        rng: Optional[random.Random] = None,
    ):
        self.exam_id = str(exam_id)
        self.user_id = str(user_id) if user_id else None
        self.api = api
        self.session = session_store
        self.user_session = UserScopedStore(session_store, self.user_id)
        self.local = UserScopedStore(local_store, self.user_id)
        self.rng = rng or random.Random()

        self.state: AttemptState = Loading()
        self.exam: Optional[Exam] = None
        self.questions: List[Question] = []
        self.answers: Dict[str, str] = {}
        self.flagged: Set[str] = set()
        self.remaining = 0
        self.current_index = 0
        self.is_practice = False

        self._submission: Optional["asyncio.Future[ExamResult]"] = None
        self._timer: Optional["asyncio.Task[None]"] = None
        self.finished_at: Optional[float] = None

    # --- loading ---

    async def load(self) -> None:
        """Resolve the exam and its questions and start the Running state.

        Raises ExamNotFound when no source has the exam and ApiError when
        the backend call fails.
        """
        if not isinstance(self.state, Loading):
            return
        mark_in_progress(self.session, self.exam_id)

        exam, questions, self.is_practice = await find_exam(self.exam_id, self.session, self.api)

        if exam.config.shuffle_options:
            questions = [q.model_copy(update={"options": shuffle(q.options, self.rng)}) for q in questions]
        if exam.config.shuffle_questions:
            questions = shuffle(questions, self.rng)

        self.exam = exam
        self.questions = questions
        self.remaining = exam.duration * 60
        self.current_index = 0
        self.state = Running(elapsed=0)

    # --- answering ---

    def _require_running(self) -> Exam:
        if not isinstance(self.state, Running) or self.exam is None:
            raise AttemptClosed(f"attempt for exam {self.exam_id} is {self.state.name}")
        return self.exam

    def _question(self, question_id: str) -> Question:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise KeyError(question_id)

    def is_locked(self, question_id: str) -> bool:
        """True when the answer may no longer change."""
        if self.exam is None or self.exam.config.allow_answer_change:
            return False
        return bool(self.answers.get(question_id))

    def select_answer(self, question_id: str, option_text: str) -> bool:
        """Record the chosen option. Returns False when the answer is locked."""
        self._require_running()
        question = self._question(question_id)
        if option_text not in {opt.text for opt in question.options}:
            raise ValueError(f"{option_text!r} is not an option of question {question_id}")
        if self.is_locked(question_id) and self.answers[question_id] != option_text:
            return False
        self.answers[question_id] = option_text
        return True

    def toggle_flag(self, question_id: str) -> bool:
        self._require_running()
        self._question(question_id)
        if question_id in self.flagged:
            self.flagged.discard(question_id)
            return False
        self.flagged.add(question_id)
        return True

    @property
    def one_by_one(self) -> bool:
        return self.exam is not None and self.exam.config.question_presentation == PRESENTATION_ONE

    def advance(self) -> int:
        self._require_running()
        if self.one_by_one and self.questions:
            self.current_index = min(len(self.questions) - 1, self.current_index + 1)
        return self.current_index

    def retreat(self) -> int:
        self._require_running()
        if self.one_by_one:
            self.current_index = max(0, self.current_index - 1)
        return self.current_index

    def visible_questions(self) -> List[Tuple[int, Question]]:
        """(number, question) pairs to render, numbered from 1."""
        if self.one_by_one:
            if not self.questions:
                return []
            return [(self.current_index + 1, self.questions[self.current_index])]
        return list(enumerate(self.questions, start=1))

    def summary(self) -> str:
        answered = len(self.answers)
        total = len(self.questions)
        text = f"You answered {answered} of {total} questions."
        if answered < total:
            text += " Unanswered questions will be marked as skipped."
        return text

    # --- timer ---

    async def tick(self) -> None:
        """One second of exam time. At zero, auto-submits unless disabled."""
        if not isinstance(self.state, Running) or self.exam is None:
            return
        self.remaining = max(0, self.remaining - 1)
        self.state = Running(elapsed=self.state.elapsed + 1)
        if self.remaining == 0 and self.exam.config.auto_submit:
            logger.info("Time is up for exam %s (user %s), submitting", self.exam_id, self.user_id)
            await self.submit()

    def start_timer(self, interval: Optional[float] = None) -> None:
        if self._timer is not None:
            return
        interval = settings.timer_tick_seconds if interval is None else interval
        self._timer = asyncio.ensure_future(self._run_timer(interval))

    async def _run_timer(self, interval: float) -> None:
        while isinstance(self.state, Running) and self.remaining > 0:
            await asyncio.sleep(interval)
            await self.tick()

    def stop_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()

    @property
    def is_running(self) -> bool:
        return isinstance(self.state, Running)

    @property
    def time_up(self) -> bool:
        return isinstance(self.state, Running) and self.remaining == 0

    # --- submission ---

    @property
    def result(self) -> Optional[ExamResult]:
        return self.state.result if isinstance(self.state, Submitted) else None

    async def submit(self) -> ExamResult:
        """Score and persist the attempt; later calls get the same result."""
        if self._submission is None:
            self._require_running()
            self.state = Submitting()
            self._submission = asyncio.ensure_future(self._submit_once())
            self.stop_timer()
        return await asyncio.shield(self._submission)

    def build_result(self) -> ExamResult:
        exam = self.exam
        assert exam is not None
        raw = score_answers(self.questions, self.answers, exam.config)
        return ExamResult(
            exam_id=self.exam_id,
            student_id=self.user_id,
            score=max(0.0, raw),
            total_marks=exam.total_marks,
            percentage=percentage(raw, exam.total_marks),
            answers=dict(self.answers),
            time_taken=max(0, exam.duration * 60 - self.remaining),
            completed_at=datetime.now(timezone.utc).isoformat(),
            subject_id=exam.subject_id,
            subject_name=exam.subject_name,
        )

    def _local_step(self, description: str, step, *args) -> None:
        """Run one local bookkeeping write; a failure is logged, never raised."""
        try:
            step(*args)
        except Exception:
            logger.exception("Could not %s for exam %s (user %s)", description, self.exam_id, self.user_id)

    async def _submit_once(self) -> ExamResult:
        local_result = self.build_result()
        self._local_step("mark the exam completed", mark_completed, self.local, self.exam_id)

        result = local_result
        try:
            response = await self.api.exam_results.submit(
                {
                    "examId": local_result.exam_id,
                    "answers": local_result.answers,
                    "score": local_result.score,
                    "totalMarks": local_result.total_marks,
                    "percentage": local_result.percentage,
                    "timeTaken": local_result.time_taken,
                }
            )
            saved = unwrap(response)
            if isinstance(saved, dict) and saved:
                result = parse_result({**local_result.to_store(), **saved})
        except ApiError as exc:
            logger.warning("Result submission for exam %s failed, keeping local copy: %s", self.exam_id, exc)

        if self.is_practice:
            self._local_step("save the last result", set_last_result, self.user_session, result.to_store())
            self._local_step("cache the result", cache_result, self.local, self.exam_id, result.to_store())
        self._local_step("clear the in-progress marker", clear_in_progress, self.session, self.exam_id)

        self.state = Submitted(result)
        self.finished_at = time.monotonic()
        await self.api.aclose()
        return result


# ===================== REGISTRY =====================


AttemptKey = Tuple[Optional[str], str]


def _key(user_id: Optional[str], exam_id: str) -> AttemptKey:
    return (str(user_id) if user_id else None, str(exam_id))


class AttemptRegistry:
    """Live attempts per (user, exam) so a page reload finds the running one.

    ``lock`` serialises the look-up-or-start of one (user, exam) pair so
    overlapping visits share a single attempt. Finished attempts are kept
    only until their result has been shown or ``prune`` finds them stale.
    """

    def __init__(self):
        self._attempts: Dict[AttemptKey, ExamAttempt] = {}
        self._locks: Dict[AttemptKey, Tuple[asyncio.Lock, int]] = {}

    def get(self, user_id: Optional[str], exam_id: str) -> Optional[ExamAttempt]:
        return self._attempts.get(_key(user_id, exam_id))

    @asynccontextmanager
    async def lock(self, user_id: Optional[str], exam_id: str) -> AsyncIterator[None]:
        key = _key(user_id, exam_id)
        lock, holders = self._locks.get(key, (asyncio.Lock(), 0))
        self._locks[key] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            lock, holders = self._locks[key]
            if holders == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, holders - 1)

    def __len__(self) -> int:
        return len(self._attempts)

    async def add(self, attempt: ExamAttempt) -> ExamAttempt:
        key = (attempt.user_id, attempt.exam_id)
        replaced = self._attempts.get(key)
        if replaced is not None and replaced is not attempt:
            await self.discard(*key)
        self._attempts[key] = attempt
        return attempt

    async def discard(self, user_id: Optional[str], exam_id: str) -> None:
        key = _key(user_id, exam_id)
        attempt = self._attempts.pop(key, None)
        if attempt is not None:
            attempt.stop_timer()
            await attempt.api.aclose()

    async def discard_finished(self, user_id: Optional[str], exam_id: str) -> None:
        attempt = self.get(user_id, exam_id)
        if attempt is not None and isinstance(attempt.state, Submitted):
            await self.discard(user_id, exam_id)

    async def prune(self, max_age: Optional[float] = None, now: Optional[float] = None) -> int:
        """Drop attempts finished more than ``max_age`` seconds ago."""
        max_age = settings.finished_attempt_ttl_seconds if max_age is None else max_age
        now = time.monotonic() if now is None else now
        stale = [
            key
            for key, attempt in self._attempts.items()
            if attempt.finished_at is not None and now - attempt.finished_at > max_age
        ]
        for key in stale:
            await self.discard(*key)
        return len(stale)

    async def clear(self) -> None:
        for key in list(self._attempts):
            await self.discard(*key)


registry = AttemptRegistry()
