"""FastAPI entrypoint for the exam portal."""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from exam_portal.config import settings
from exam_portal.database import create_db_and_tables
from exam_portal.deps import flash, get_current_user
from exam_portal.logging_config import configure_logging
from exam_portal.routers import attempt as attempt_router_module
from exam_portal.routers import auth as auth_router_module
from exam_portal.routers import exams as exams_router_module
from exam_portal.routers import practice as practice_router_module
from exam_portal.routers import results as results_router_module
from exam_portal.schemas import User
from exam_portal.services.attempt import registry

logger = logging.getLogger(__name__)

app = FastAPI(title="Exam Portal")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions, especially 403 Forbidden for HTML requests."""
    # A blocked start from the browser goes back with the reason as a notification
    if exc.status_code == 403 and "text/html" in request.headers.get("accept", ""):
        flash(request, "Cannot start exam", str(exc.detail), variant="destructive")
        return RedirectResponse(
            url=request.headers.get("referer") or "/exams", status_code=status.HTTP_303_SEE_OTHER
        )
    # For 303 redirects (like login redirects), let them pass through
    if exc.status_code == 303 and exc.headers and exc.headers.get("Location"):
        return RedirectResponse(url=exc.headers["Location"], status_code=status.HTTP_303_SEE_OTHER)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Session middleware: the cookie holds the user, its token and the session-store id
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key)

# Routers
app.include_router(auth_router_module.router, prefix="/auth", tags=["auth"])
app.include_router(exams_router_module.router, prefix="/exams", tags=["exams"])
app.include_router(attempt_router_module.router, prefix="/exam", tags=["attempt"])
app.include_router(results_router_module.router, tags=["results"])
app.include_router(practice_router_module.router, prefix="/practice", tags=["practice"])


@app.get("/")
def home(current_user: Optional[User] = Depends(get_current_user)):
    target = "/exams" if current_user else "/auth/login"
    return RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)


@app.on_event("startup")
def on_startup():
    """Configure logging and create the local store's table."""
    configure_logging(settings.log_level)
    create_db_and_tables()
    logger.info("Exam portal started; backend at %s", settings.api_url)


@app.on_event("shutdown")
async def on_shutdown():
    # Stop running timers and close their backend clients
    await registry.clear()
