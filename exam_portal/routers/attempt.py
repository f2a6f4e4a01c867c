"""The exam runner: answering, navigation, countdown status and submission.

A running attempt lives in ``services.attempt.registry`` between requests so
its timer keeps counting and can submit on its own when time runs out.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from exam_portal.deps import (
    ApiFactory,
    flash,
    get_api_factory,
    get_current_user,
    get_local_store,
    get_session_store,
    require_login,
    templates,
)
from exam_portal.errors import ApiError, AttemptClosed, ExamNotFound
from exam_portal.routers.exams import gate_for, not_found_response
from exam_portal.schemas import User
from exam_portal.services.attempt import ExamAttempt, Submitted, format_time, registry
from exam_portal.stores import KeyValueStore, clear_in_progress

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_runner(exam_id: str, anchor: Optional[str] = None) -> RedirectResponse:
    url = f"/exam/{exam_id}" + (f"#q-{anchor}" if anchor else "")
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


def _to_result(exam_id: str) -> RedirectResponse:
    return RedirectResponse(url=f"/exam-result/{exam_id}", status_code=status.HTTP_303_SEE_OTHER)


def _running_attempt(exam_id: str, current_user: User) -> Optional[ExamAttempt]:
    attempt = registry.get(current_user.id, exam_id)
    if attempt is None or isinstance(attempt.state, Submitted):
        return None
    return attempt


@router.get("/{exam_id}")
async def take_exam(
    exam_id: str,
    request: Request,
    current_user: User = Depends(require_login),
    api_factory: ApiFactory = Depends(get_api_factory),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    """Render the running attempt, creating it on first visit."""
    await registry.prune()
    async with registry.lock(current_user.id, exam_id):
        attempt = registry.get(current_user.id, exam_id)
        if attempt is not None and isinstance(attempt.state, Submitted):
            # A finished attempt is not resumed; a new visit starts over
            await registry.discard(current_user.id, exam_id)
            attempt = None

        if attempt is None:
            attempt = ExamAttempt(
                exam_id, current_user.id, api_factory(current_user.token), session_store, local_store
            )
            try:
                await attempt.load()
            except (ExamNotFound, ApiError) as exc:
                logger.error("Could not load exam %s for user %s: %r", exam_id, current_user.id, exc)
                clear_in_progress(session_store, exam_id)
                await attempt.api.aclose()
                message = exc.message if isinstance(exc, ApiError) else None
                flash(request, "Exam not found", message, variant="destructive")
                return not_found_response(request, current_user, exam_id)

            if not attempt.is_practice:
                gate = gate_for(attempt.exam, current_user, session_store, local_store)
                if not (gate.can_attempt and gate.is_allowed):
                    clear_in_progress(session_store, exam_id)
                    await attempt.api.aclose()
                    flash(request, "Cannot start exam", gate.blocked_reason, variant="destructive")
                    return RedirectResponse(
                        url=f"/exams/{exam_id}/instructions", status_code=status.HTTP_303_SEE_OTHER
                    )

            await registry.add(attempt)
            attempt.start_timer()
            logger.info("User %s started exam %s", current_user.id, exam_id)

    context = {
        "current_user": current_user,
        "attempt": attempt,
        "exam": attempt.exam,
        "visible": attempt.visible_questions(),
        "remaining_text": format_time(attempt.remaining),
    }
    return templates.TemplateResponse(request, "exams/take.html", context)


@router.post("/{exam_id}/answer")
async def answer_question(
    exam_id: str,
    request: Request,
    question_id: str = Form(...),
    option: str = Form(...),
    current_user: User = Depends(require_login),
):
    attempt = _running_attempt(exam_id, current_user)
    if attempt is None:
        return _to_result(exam_id) if registry.get(current_user.id, exam_id) else _to_runner(exam_id)

    try:
        if not attempt.select_answer(question_id, option):
            flash(request, "Answer locked", "This exam does not allow changing answers.")
    except AttemptClosed:
        return _to_result(exam_id)
    except (KeyError, ValueError):
        flash(request, "Invalid answer", variant="destructive")
    return _to_runner(exam_id, question_id)


@router.post("/{exam_id}/flag")
async def flag_question(
    exam_id: str,
    request: Request,
    question_id: str = Form(...),
    current_user: User = Depends(require_login),
):
    attempt = _running_attempt(exam_id, current_user)
    if attempt is None:
        return _to_runner(exam_id)
    try:
        attempt.toggle_flag(question_id)
    except AttemptClosed:
        return _to_result(exam_id)
    except KeyError:
        flash(request, "Unknown question", variant="destructive")
        return _to_runner(exam_id)
    return _to_runner(exam_id, question_id)


@router.post("/{exam_id}/next")
async def next_question(exam_id: str, current_user: User = Depends(require_login)):
    attempt = _running_attempt(exam_id, current_user)
    if attempt is not None and attempt.is_running:
        attempt.advance()
    return _to_runner(exam_id)


@router.post("/{exam_id}/prev")
async def previous_question(exam_id: str, current_user: User = Depends(require_login)):
    attempt = _running_attempt(exam_id, current_user)
    if attempt is not None and attempt.is_running:
        attempt.retreat()
    return _to_runner(exam_id)


@router.get("/{exam_id}/status")
async def attempt_status(exam_id: str, current_user: Optional[User] = Depends(get_current_user)):
    """Polled by the runner page to drive its countdown and follow auto-submit."""
    attempt = registry.get(current_user.id, exam_id) if current_user else None
    if attempt is None:
        return JSONResponse({"state": "none", "remaining": 0, "answered": 0, "total": 0})
    return JSONResponse(
        {
            "state": attempt.state.name,
            "remaining": attempt.remaining,
            "answered": len(attempt.answers),
            "total": len(attempt.questions),
        }
    )


@router.post("/{exam_id}/submit")
async def submit_exam(
    exam_id: str,
    request: Request,
    current_user: User = Depends(require_login),
):
    """Submit the attempt (or join a submission already under way)."""
    attempt = registry.get(current_user.id, exam_id)
    if attempt is None:
        # Nothing running here; the result view finds whatever was saved
        return _to_result(exam_id)

    try:
        await attempt.submit()
    except AttemptClosed:
        return _to_runner(exam_id)

    flash(request, "Exam submitted", "Your answers have been saved.")
    logger.info("User %s submitted exam %s", current_user.id, exam_id)
    return _to_result(exam_id)
