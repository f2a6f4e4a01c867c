"""Result review for one exam and the student's results overview."""

import logging

from fastapi import APIRouter, Depends, Request

from exam_portal.api_client import ApiClient
from exam_portal.deps import (
    flash,
    get_api,
    get_local_store,
    get_session_store,
    require_login,
    templates,
)
from exam_portal.errors import ApiError, ExamNotFound
from exam_portal.schemas import User
from exam_portal.services.attempt import find_exam, format_time, registry
from exam_portal.services.results import (
    EMPTY_HISTORY,
    letter_grade,
    resolve_result,
    results_for_existing_exams,
    review_questions,
    subject_history,
    summarize_results,
    tally,
)
from exam_portal.stores import KeyValueStore, UserScopedStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/exam-result/{exam_id}")
async def exam_result(
    exam_id: str,
    request: Request,
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    """Scored review of the user's attempt; a placeholder when there is none."""
    # A finished attempt ends with its result page
    await registry.discard_finished(current_user.id, exam_id)
    user_session = UserScopedStore(session_store, current_user.id)
    user_local = UserScopedStore(local_store, current_user.id)

    context = {
        "current_user": current_user,
        "exam_id": exam_id,
        "result": None,
        "exam": None,
        "review": [],
        "counts": None,
        "grade": None,
        "history": EMPTY_HISTORY,
        "format_time": format_time,
    }

    result = await resolve_result(exam_id, user_session, user_local, api)
    if result is None:
        return templates.TemplateResponse(request, "results/review.html", context)
    context["result"] = result
    context["grade"] = letter_grade(result.percentage)

    try:
        exam, questions, _ = await find_exam(exam_id, session_store, api)
    except (ExamNotFound, ApiError) as exc:
        # The score is still shown; only the per-question review is missing
        logger.warning("Questions for exam %s unavailable: %r", exam_id, exc)
        flash(request, "Failed to load questions", variant="destructive")
        return templates.TemplateResponse(request, "results/review.html", context)

    review = review_questions(questions, result.answers)
    context.update(
        exam=exam,
        review=review,
        counts=tally(review),
        history=await subject_history(exam, user_local, api),
    )
    return templates.TemplateResponse(request, "results/review.html", context)


@router.get("/results")
async def my_results_page(
    request: Request,
    current_user: User = Depends(require_login),
    api: ApiClient = Depends(get_api),
):
    results, exams = [], []
    try:
        results, exams = await results_for_existing_exams(api, current_user.id)
    except ApiError as exc:
        logger.error("Failed to load results for user %s: %s", current_user.id, exc)
        flash(request, "Failed to load results", exc.message, variant="destructive")

    titles = {exam.id: exam.title for exam in exams}
    context = {
        "current_user": current_user,
        "results": sorted(results, key=lambda r: r.completed_at or "", reverse=True),
        "titles": titles,
        "stats": summarize_results(results, exams),
        "format_time": format_time,
    }
    return templates.TemplateResponse(request, "results/mine.html", context)
