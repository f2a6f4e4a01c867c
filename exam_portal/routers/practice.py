"""Self-made practice exams built from the question bank.

The exam never reaches the backend: it is saved in the session store and
the runner and result view load it from there.
"""

import asyncio
import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse

from exam_portal.api_client import ApiClient, unwrap
from exam_portal.deps import flash, get_api, get_session_store, require_login, templates
from exam_portal.errors import ApiError
from exam_portal.schemas import Exam, ExamConfig, User, parse_question
from exam_portal.stores import KeyValueStore, save_practice_exam

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_DURATION = 30
MAX_DURATION = 300


@router.get("")
async def practice_form(
    request: Request,
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
):
    questions = []
    try:
        payload = unwrap(await api.questions.get_all())
        questions = [parse_question(item) for item in payload or [] if isinstance(item, dict)]
    except ApiError as exc:
        logger.error("Failed to load question bank: %s", exc)
        flash(request, "Failed to load questions", exc.message, variant="destructive")

    context = {"current_user": current_user, "questions": questions, "error": None}
    return templates.TemplateResponse(request, "exams/practice.html", context)


@router.post("")
async def create_practice_exam(
    request: Request,
    question_ids: List[str] = Form(default=[]),
    title: str = Form("Practice exam"),
    duration: int = Form(DEFAULT_DURATION),
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
    session_store: KeyValueStore = Depends(get_session_store),
):
    """Fetch the chosen questions and store them as a runnable exam."""
    if not question_ids:
        flash(request, "Select at least one question", variant="destructive")
        return RedirectResponse(url="/practice", status_code=status.HTTP_303_SEE_OTHER)

    try:
        payloads = await asyncio.gather(*(api.questions.get(qid) for qid in question_ids))
    except ApiError as exc:
        logger.error("Failed to build practice exam: %s", exc)
        flash(request, "Failed to load questions", exc.message, variant="destructive")
        return RedirectResponse(url="/practice", status_code=status.HTTP_303_SEE_OTHER)

    config = ExamConfig()
    questions = [
        parse_question(dto, config.marks_per_question)
        for dto in map(unwrap, payloads)
        if isinstance(dto, dict)
    ]
    if not questions:
        flash(request, "Select at least one question", variant="destructive")
        return RedirectResponse(url="/practice", status_code=status.HTTP_303_SEE_OTHER)

    exam = Exam(
        id=f"self-{uuid.uuid4().hex[:12]}",
        title=title.strip() or "Practice exam",
        duration=min(max(1, duration), MAX_DURATION),
        total_marks=len(questions) * config.marks_per_question,
        question_ids=[q.id for q in questions],
        config=config,
    )
    save_practice_exam(
        session_store,
        exam.id,
        {
            "exam": exam.model_dump(mode="json"),
            "questions": [q.model_dump(mode="json") for q in questions],
        },
    )
    logger.info("User %s created practice exam %s (%d questions)", current_user.id, exam.id, len(questions))
    return RedirectResponse(url=f"/exam/{exam.id}", status_code=status.HTTP_303_SEE_OTHER)
