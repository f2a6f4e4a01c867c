"""Shared FastAPI dependencies: current user, stores, API client, templates."""

from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.templating import Jinja2Templates

from exam_portal.api_client import ApiClient
from exam_portal.config import settings
from exam_portal.database import engine
from exam_portal.schemas import User
from exam_portal.stores import KeyValueStore, PersistentStore, SessionStore, expire_idle_sessions
from exam_portal.utils import ROMAN_LABELS, split_sub_points

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

ApiFactory = Callable[[Optional[str]], ApiClient]


# --- flash messages (the UI's toast notifications) ---


def flash(request: Request, title: str, description: Optional[str] = None, variant: str = "default") -> None:
    """Queue a short-lived notification shown once on the next rendered page."""
    messages = request.session.setdefault("flashes", [])
    messages.append({"title": title, "description": description, "variant": variant})
    request.session["flashes"] = messages


def pop_flashes(request: Request) -> List[dict]:
    return request.session.pop("flashes", []) if "session" in request.scope else []


templates.env.globals["pop_flashes"] = pop_flashes
templates.env.globals["split_sub_points"] = split_sub_points
templates.env.globals["roman_labels"] = ROMAN_LABELS


# --- user ---


def get_current_user(request: Request) -> Optional[User]:
    """Return the currently logged-in user based on the session cookie, if any."""
    data = request.session.get("user")
    if not data:
        return None
    try:
        return User.model_validate(data)
    except ValueError:
        # Clear any stale session
        request.session.pop("user", None)
        return None


def require_login(current_user: Optional[User] = Depends(get_current_user)) -> User:
    """Ensure that a user is logged in; otherwise redirect to login."""
    if current_user is None:
        # Use 303 redirect to the login page
        raise HTTPException(status_code=303, headers={"Location": "/auth/login"})
    return current_user


# --- stores ---


def get_session_store(request: Request) -> KeyValueStore:
    expire_idle_sessions(settings.session_idle_seconds)
    return SessionStore(request.session)


def get_local_store() -> KeyValueStore:
    return PersistentStore(engine)


# --- backend ---


def make_api_client(token: Optional[str]) -> ApiClient:
    return ApiClient(token=token)


def get_api_factory() -> ApiFactory:
    """Factory used where a client must outlive the request (running attempts)."""
    return make_api_client


async def get_api(
    current_user: Optional[User] = Depends(get_current_user),
    factory: ApiFactory = Depends(get_api_factory),
) -> AsyncIterator[ApiClient]:
    """Request-scoped API client carrying the user's bearer token."""
    client = factory(current_user.token if current_user else None)
    try:
        yield client
    finally:
        await client.aclose()
