"""Exam list, instructions (start gating) and the start action."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from exam_portal.api_client import ApiClient, unwrap
from exam_portal.deps import (
    flash,
    get_api,
    get_local_store,
    get_session_store,
    require_login,
    templates,
)
from exam_portal.errors import ApiError, ExamNotFound
from exam_portal.schemas import Exam, User, parse_exam
from exam_portal.services.attempt import find_exam
from exam_portal.services.gating import Gate, evaluate_gate, has_ended, start_at
from exam_portal.stores import (
    KeyValueStore,
    UserScopedStore,
    completed_exams,
    is_in_progress,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def not_found_response(request: Request, current_user: Optional[User], exam_id: str):
    context = {"current_user": current_user, "exam_id": exam_id}
    return templates.TemplateResponse(
        request, "exams/not_found.html", context, status_code=status.HTTP_404_NOT_FOUND
    )


async def load_exam_or_flash(
    request: Request, exam_id: str, session_store: KeyValueStore, api: ApiClient
) -> Optional[Exam]:
    """Exam for a page view; failures become a flash message and None."""
    try:
        exam, _, _ = await find_exam(exam_id, session_store, api)
        return exam
    except ExamNotFound:
        flash(request, "Exam not found", variant="destructive")
    except ApiError as exc:
        logger.error("Failed to load exam %s: %s", exam_id, exc)
        flash(request, "Failed to load exam", exc.message, variant="destructive")
    return None


def gate_for(
    exam: Exam,
    current_user: User,
    session_store: KeyValueStore,
    local_store: KeyValueStore,
    upcoming: bool = False,
) -> Gate:
    return evaluate_gate(
        exam,
        current_user.id,
        completed_exams(UserScopedStore(local_store, current_user.id)),
        in_progress=is_in_progress(session_store, exam.id),
        upcoming=upcoming,
    )


@router.get("")
async def list_exams(
    request: Request,
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    """Exams visible to the student with their completed / in-progress markers."""
    exams = []
    try:
        payload = unwrap(await api.exams.get_mine())
        exams = [parse_exam(item) for item in payload or [] if isinstance(item, dict)]
    except ApiError as exc:
        logger.error("Failed to load exams: %s", exc)
        flash(request, "Failed to load exams", exc.message, variant="destructive")

    completed = set(completed_exams(UserScopedStore(local_store, current_user.id)))
    now = datetime.now()
    rows = []
    for exam in exams:
        start = start_at(exam)
        rows.append(
            {
                "exam": exam,
                "completed": exam.id in completed,
                "in_progress": is_in_progress(session_store, exam.id),
                "upcoming": bool(start and start > now),
                "ended": has_ended(exam, now),
            }
        )

    context = {"current_user": current_user, "rows": rows}
    return templates.TemplateResponse(request, "exams/list.html", context)


@router.get("/{exam_id}/instructions")
async def exam_instructions(
    exam_id: str,
    request: Request,
    upcoming: bool = Query(False),
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    """Show the exam's rules and decide whether it may be started."""
    exam = await load_exam_or_flash(request, exam_id, session_store, api)
    if exam is None:
        return not_found_response(request, current_user, exam_id)

    gate = gate_for(exam, current_user, session_store, local_store, upcoming)
    context = {"current_user": current_user, "exam": exam, "gate": gate}
    return templates.TemplateResponse(request, "exams/instructions.html", context)


@router.post("/{exam_id}/start")
async def start_exam(
    exam_id: str,
    request: Request,
    agreed: bool = Form(False),
    upcoming: bool = Form(False),
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    """Start the exam: requires the agreement box and a permitted, live exam."""
    exam = await load_exam_or_flash(request, exam_id, session_store, api)
    if exam is None:
        return not_found_response(request, current_user, exam_id)

    gate = gate_for(exam, current_user, session_store, local_store, upcoming)
    if not gate.can_start(agreed):
        reason = gate.blocked_reason or "Please agree to the instructions before starting."
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=reason)

    return RedirectResponse(url=f"/exam/{exam_id}", status_code=status.HTTP_303_SEE_OTHER)
