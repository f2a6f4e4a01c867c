"""Rules deciding whether a student may start an exam."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from exam_portal.schemas import Exam

NOT_SCHEDULED = "Not scheduled"


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        # compare everything as naive local time
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def build_datetime(
    date_str: Optional[str], time_str: Optional[str], fallback: Optional[str] = None
) -> Optional[datetime]:
    """Combine a ``YYYY-MM-DD`` date and ``HH:MM`` time; unparseable input gives None."""
    if date_str and time_str:
        return _parse_iso(f"{date_str}T{time_str}")
    if date_str:
        return _parse_iso(date_str)
    if fallback:
        return _parse_iso(fallback)
    return None


def start_at(exam: Exam) -> Optional[datetime]:
    return build_datetime(exam.start_date, exam.start_time, exam.published_at)


def end_at(exam: Exam) -> Optional[datetime]:
    """Explicit end, or start plus the exam duration."""
    explicit = build_datetime(exam.end_date, exam.end_time)
    if explicit:
        return explicit
    start = start_at(exam)
    if start:
        return start + timedelta(minutes=exam.duration)
    return None


def has_ended(exam: Exam, now: Optional[datetime] = None) -> bool:
    end = end_at(exam)
    if end is None:
        return False
    return (now or datetime.now()) > end


def schedule_text(exam: Exam) -> str:
    if not exam.start_date and not exam.start_time and not exam.published_at:
        return NOT_SCHEDULED
    published = _parse_iso(exam.published_at) if exam.published_at else None
    date = exam.start_date or (published.strftime("%Y-%m-%d") if published else "")
    time = exam.start_time or (published.strftime("%I:%M %p") if published else "")
    return f"{date} {time}".strip()


def can_attempt(exam: Exam, completed: bool, ended: bool) -> bool:
    # An exam whose window has closed stays open for a late attempt even when
    # already completed once.
    return exam.config.allow_multiple_attempts or not completed or ended


def is_allowed_by_exam(exam: Exam, user_id: Optional[str]) -> bool:
    if exam.access_type != "specific":
        return True
    if not user_id:
        return False
    return str(user_id) in {str(sid) for sid in exam.allowed_students}


@dataclass
class Gate:
    schedule_text: str
    has_ended: bool
    completed: bool
    in_progress: bool
    can_attempt: bool
    is_allowed: bool
    upcoming: bool

    def can_start(self, agreed: bool) -> bool:
        """The start button is live only for an agreed, permitted, non-upcoming exam."""
        return agreed and self.can_attempt and self.is_allowed and not self.upcoming

    @property
    def blocked_reason(self) -> Optional[str]:
        if self.upcoming:
            return "This exam is not live yet and cannot be started."
        if not self.can_attempt:
            return "This exam allows a single attempt and you have already taken it."
        if not self.is_allowed:
            return "You are not allowed to take this exam."
        return None


def evaluate_gate(
    exam: Exam,
    user_id: Optional[str],
    completed_ids: Iterable[str],
    in_progress: bool = False,
    upcoming: bool = False,
    now: Optional[datetime] = None,
) -> Gate:
    completed = exam.id in set(completed_ids)
    ended = has_ended(exam, now)
    return Gate(
        schedule_text=schedule_text(exam),
        has_ended=ended,
        completed=completed,
        in_progress=in_progress,
        can_attempt=can_attempt(exam, completed, ended),
        is_allowed=is_allowed_by_exam(exam, user_id),
        upcoming=upcoming,
    )
