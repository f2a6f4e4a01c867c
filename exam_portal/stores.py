"""Key/value stores standing in for browser session and local storage.

Two scopes exist:

* the *session* store is tied to the browser session cookie and holds
  short-lived markers (attempt in progress, last result, practice exams);
* the *persistent* store lives in the local SQLite database and holds
  per-user maps (completed exams, cached results).

Values are JSON documents. Keys that belong to a user are suffixed with the
user id through ``UserScopedStore`` so one user never reads another user's
cached data on a shared machine.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, MutableMapping, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from exam_portal.models import StoredValue

logger = logging.getLogger(__name__)

IN_PROGRESS_KEY = "examInProgress"
COMPLETED_KEY = "completedExams"
RESULTS_KEY = "examResults"
LAST_RESULT_KEY = "lastExamResult"
PRACTICE_EXAM_KEY = "selfExam"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store used by tests and by background timers."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = data if data is not None else {}

    def get(self, key: str) -> Any:
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


_SESSION_DATA: Dict[str, Dict[str, Any]] = {}
_SESSION_SEEN: Dict[str, float] = {}


class SessionStore(MemoryStore):
    """Per browser session store.

    The signed cookie (``request.session``) only carries a random session
    id; the values stay in process memory because practice exams and
    results do not fit in a cookie. Everything is lost with the process,
    like browser session storage is lost with the tab. Sessions left idle
    are dropped by ``expire_idle_sessions``.
    """

    def __init__(self, cookie_session: MutableMapping[str, Any], now: Optional[float] = None):
        sid = cookie_session.get("sid")
        if not sid:
            sid = uuid.uuid4().hex
            cookie_session["sid"] = sid
        self.sid = sid
        _SESSION_SEEN[sid] = time.monotonic() if now is None else now
        super().__init__(_SESSION_DATA.setdefault(sid, {}))

    def clear(self) -> None:
        self.data.clear()
        _SESSION_DATA.pop(self.sid, None)
        _SESSION_SEEN.pop(self.sid, None)


def expire_idle_sessions(max_idle: float, now: Optional[float] = None) -> int:
    """Forget sessions not used for ``max_idle`` seconds. Returns how many went."""
    now = time.monotonic() if now is None else now
    expired = [sid for sid, seen in _SESSION_SEEN.items() if now - seen > max_idle]
    for sid in expired:
        _SESSION_SEEN.pop(sid, None)
        _SESSION_DATA.pop(sid, None)
    if expired:
        logger.info("Expired %d idle session(s)", len(expired))
    return len(expired)


class PersistentStore:
    """Store backed by the ``storedvalue`` table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, key: str) -> Any:
        with Session(self.engine) as session:
            row = session.get(StoredValue, key)
            return json.loads(row.value) if row else None

    def set(self, key: str, value: Any) -> None:
        with Session(self.engine) as session:
            row = session.get(StoredValue, key)
            if row is None:
                row = StoredValue(key=key, value=json.dumps(value))
            else:
                row.value = json.dumps(value)
                row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    def remove(self, key: str) -> None:
        with Session(self.engine) as session:
            row = session.get(StoredValue, key)
            if row:
                session.delete(row)
                session.commit()


def user_key(name: str, user_id: Optional[str]) -> str:
    return f"{name}_{user_id or 'anon'}"


class UserScopedStore:
    """Prefixes every key with the owning user's id."""

    def __init__(self, inner: KeyValueStore, user_id: Optional[str]):
        self.inner = inner
        self.user_id = str(user_id) if user_id else "anon"

    def get(self, name: str) -> Any:
        return self.inner.get(user_key(name, self.user_id))

    def get_with_legacy(self, name: str) -> Any:
        """Scoped value, or the unscoped one written before namespacing existed."""
        value = self.get(name)
        if value is None:
            value = self.inner.get(name)
        return value

    def set(self, name: str, value: Any) -> None:
        self.inner.set(user_key(name, self.user_id), value)

    def remove(self, name: str) -> None:
        self.inner.remove(user_key(name, self.user_id))


def _move(store: KeyValueStore, legacy_key: str, target_key: str) -> bool:
    legacy = store.get(legacy_key)
    if legacy is None or store.get(target_key) is not None:
        return False
    store.set(target_key, legacy)
    store.remove(legacy_key)
    return True


def migrate_legacy_keys(
    user_id: Optional[str], persistent: KeyValueStore, session: KeyValueStore
) -> List[str]:
    """Move unscoped keys written by older versions under the user's namespace.

    Returns the names that were moved. Errors are logged and swallowed so a
    broken cache never blocks login.
    """
    moved: List[str] = []
    try:
        for name in (RESULTS_KEY, COMPLETED_KEY):
            if _move(persistent, name, user_key(name, user_id)):
                moved.append(name)
        if _move(session, LAST_RESULT_KEY, user_key(LAST_RESULT_KEY, user_id)):
            moved.append(LAST_RESULT_KEY)
    except Exception:
        logger.exception("Failed to migrate legacy storage keys for user %s", user_id)
    if moved:
        logger.info("Migrated legacy keys %s for user %s", moved, user_id)
    return moved


# --- session markers (per browser session) ---


def mark_in_progress(session: KeyValueStore, exam_id: str) -> None:
    started = datetime.now(timezone.utc).isoformat()
    session.set(f"{IN_PROGRESS_KEY}_{exam_id}", {"startedAt": started})


def is_in_progress(session: KeyValueStore, exam_id: str) -> bool:
    return session.get(f"{IN_PROGRESS_KEY}_{exam_id}") is not None


def clear_in_progress(session: KeyValueStore, exam_id: str) -> None:
    session.remove(f"{IN_PROGRESS_KEY}_{exam_id}")


def practice_exam(session: KeyValueStore, exam_id: str) -> Optional[dict]:
    stored = session.get(f"{PRACTICE_EXAM_KEY}_{exam_id}")
    return stored if isinstance(stored, dict) else None


def save_practice_exam(session: KeyValueStore, exam_id: str, blob: dict) -> None:
    session.set(f"{PRACTICE_EXAM_KEY}_{exam_id}", blob)


# --- per-user maps ---


def completed_exams(local: UserScopedStore) -> List[str]:
    stored = local.get_with_legacy(COMPLETED_KEY)
    if not isinstance(stored, list):
        return []
    return [str(exam_id) for exam_id in stored]


def mark_completed(local: UserScopedStore, exam_id: str) -> None:
    completed = completed_exams(local)
    if exam_id not in completed:
        completed.append(exam_id)
        local.set(COMPLETED_KEY, completed)


def cached_results(local: UserScopedStore) -> Dict[str, dict]:
    stored = local.get_with_legacy(RESULTS_KEY)
    return stored if isinstance(stored, dict) else {}


def cache_result(local: UserScopedStore, exam_id: str, result: dict) -> None:
    results = cached_results(local)
    results[exam_id] = result
    local.set(RESULTS_KEY, results)


def last_result(session: UserScopedStore) -> Optional[dict]:
    stored = session.get_with_legacy(LAST_RESULT_KEY)
    return stored if isinstance(stored, dict) else None


def set_last_result(session: UserScopedStore, result: dict) -> None:
    session.set(LAST_RESULT_KEY, result)
