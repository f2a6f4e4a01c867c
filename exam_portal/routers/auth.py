"""Login and logout against the backend's auth endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse

from exam_portal.api_client import unwrap
from exam_portal.deps import (
    ApiFactory,
    flash,
    get_api_factory,
    get_current_user,
    get_local_store,
    get_session_store,
    templates,
)
from exam_portal.errors import ApiError
from exam_portal.schemas import User, parse_user
from exam_portal.stores import KeyValueStore, SessionStore, migrate_legacy_keys

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/login")
def login_form(request: Request, current_user: Optional[User] = Depends(get_current_user)):
    if current_user:
        # Already logged in
        return RedirectResponse(url="/exams", status_code=status.HTTP_303_SEE_OTHER)

    context = {"form": None, "error": None, "current_user": None}
    return templates.TemplateResponse(request, "auth/login.html", context)


@router.post("/login")
async def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    api_factory: ApiFactory = Depends(get_api_factory),
    session_store: KeyValueStore = Depends(get_session_store),
    local_store: KeyValueStore = Depends(get_local_store),
):
    email_clean = email.strip().lower()
    error = None
    payload = None

    async with api_factory(None) as api:
        try:
            payload = unwrap(await api.auth.login(email_clean, password))
        except ApiError as exc:
            error = exc.message

    token = payload.get("token") if isinstance(payload, dict) else None
    user_dto = payload.get("user") if isinstance(payload, dict) else None
    if error is None and (not token or not isinstance(user_dto, dict)):
        error = "Invalid email or password."

    if error:
        context = {"form": {"email": email}, "error": error, "current_user": None}
        return templates.TemplateResponse(
            request, "auth/login.html", context, status_code=status.HTTP_400_BAD_REQUEST
        )

    user = parse_user(user_dto, token)
    request.session["user"] = user.model_dump()
    migrate_legacy_keys(user.id, local_store, session_store)
    logger.info("User %s logged in", user.id)

    flash(request, "Welcome back", user.name or None)
    return RedirectResponse(url="/exams", status_code=status.HTTP_303_SEE_OTHER)


@router.post("/logout")
def logout(request: Request):
    # Session values belong to the user signing out
    SessionStore(request.session).clear()
    request.session.pop("sid", None)
    request.session.pop("user", None)
    flash(request, "Signed out")
    return RedirectResponse(url="/auth/login", status_code=status.HTTP_303_SEE_OTHER)
