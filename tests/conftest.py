import asyncio
import json
import re
from typing import Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

from exam_portal import api_client
from exam_portal.api_client import ApiClient
from exam_portal.config import settings
from exam_portal.models import StoredValue  # noqa: F401  (registers the table)
from exam_portal.stores import _SESSION_DATA, _SESSION_SEEN, MemoryStore, PersistentStore

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# StaticPool so every connection shares the same in-memory database
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_between_tests():
    """Reset the database, the response cache and the session data after each test."""
    api_client.clear_cache()
    yield
    api_client.clear_cache()
    _SESSION_DATA.clear()
    _SESSION_SEEN.clear()
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM storedvalue"))
        session.commit()


# ============================================================================
# FAKE BACKEND
# ============================================================================

API_BASE = "http://backend.test/api"

STUDENT = {"_id": "u1", "name": "Alice Student", "email": "alice@example.com", "role": "student"}
OTHER_STUDENT = {"_id": "u2", "name": "Bob Student", "email": "bob@example.com", "role": "student"}
PASSWORD = "secret123"


def make_question(qid: str, correct: str = "A", subject_id: str = "s1") -> dict:
    return {
        "_id": qid,
        "questionTextEn": f"Question {qid}?",
        "options": [{"text": label, "isCorrect": label == correct} for label in "ABCD"],
        "explanation": f"Because {correct}.",
        "subjectId": subject_id,
        "difficulty": "easy",
    }


def make_exam(exam_id: str = "e1", count: int = 10, subject_id: str = "s1", **overrides) -> dict:
    """Exam payload shaped like the backend's, with populated questions."""
    exam = {
        "_id": exam_id,
        "title": f"Exam {exam_id}",
        "duration": 30,
        "questionIds": [make_question(f"{exam_id}-q{i}", subject_id=subject_id) for i in range(1, count + 1)],
        "subjectId": {"_id": subject_id, "name": "Physics"},
        "marksPerQuestion": 1,
        "startDate": "2020-01-01",
        "startTime": "09:00",
        "endDate": "2099-01-01",
        "endTime": "09:00",
        "accessType": "all",
    }
    exam.update(overrides)
    return exam


class FakeBackend:
    """In-memory stand-in for the REST backend, served through httpx.MockTransport."""

    def __init__(self):
        self.users = {STUDENT["email"]: STUDENT, OTHER_STUDENT["email"]: OTHER_STUDENT}
        self.exams = {"e1": make_exam("e1")}
        self.results = []
        self.calls = []
        self.fail = set()  # "METHOD /path" entries answered with a 500

    def add_exam(self, dto: dict) -> dict:
        self.exams[dto["_id"]] = dto
        return dto

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    @property
    def questions(self):
        found = {}
        for exam in self.exams.values():
            for q in exam.get("questionIds", []):
                found[q["_id"]] = q
        return found

    def _user(self, request: httpx.Request) -> Optional[dict]:
        auth = request.headers.get("authorization", "")
        match = re.match(r"Bearer tok-(\w+)", auth)
        if not match:
            return None
        return next((u for u in self.users.values() if u["_id"] == match.group(1)), None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/api"):]
        method = request.method
        self.calls.append((method, path))
        if f"{method} {path}" in self.fail:
            return httpx.Response(500, json={"error": "Internal Server Error"})

        body = json.loads(request.content) if request.content else None
        user = self._user(request)

        if method == "POST" and path == "/auth/login":
            found = self.users.get(body.get("email"))
            if found is None or body.get("password") != PASSWORD:
                return httpx.Response(401, json={"error": "Invalid credentials"})
            return httpx.Response(200, json={"success": True, "data": {"token": f"tok-{found['_id']}", "user": found}})

        if user is None:
            return httpx.Response(401, json={"error": "Not authorized"})

        if method == "GET" and path in ("/exams", "/exams/mine"):
            return httpx.Response(200, json={"success": True, "data": list(self.exams.values())})
        if method == "GET" and path.startswith("/exams/"):
            exam = self.exams.get(path.split("/")[2])
            if exam is None:
                return httpx.Response(404, json={"error": "Exam not found"})
            return httpx.Response(200, json={"success": True, "data": exam})
        if method == "GET" and path == "/questions":
            return httpx.Response(200, json={"success": True, "data": list(self.questions.values())})
        if method == "GET" and path.startswith("/questions/"):
            question = self.questions.get(path.split("/")[2])
            if question is None:
                return httpx.Response(404, json={"error": "Question not found"})
            return httpx.Response(200, json={"success": True, "data": question})
        if method == "POST" and path == "/exam-results":
            exam = self.exams.get(body["examId"], {})
            saved = dict(body)
            saved.update(
                {
                    "_id": f"r{len(self.results) + 1}",
                    "studentId": user["_id"],
                    "examId": {"_id": body["examId"], "subjectId": exam.get("subjectId")},
                    "createdAt": f"2024-01-01T00:00:{len(self.results):02d}Z",
                }
            )
            self.results.append(saved)
            return httpx.Response(201, json={"success": True, "data": saved})
        if method == "GET" and path == "/exam-results/mine":
            # deliberately unfiltered; the portal must filter by owner itself
            return httpx.Response(200, json={"success": True, "data": list(self.results)})

        return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def api_factory(backend):
    def factory(token=None):
        return ApiClient(base_url=API_BASE, token=token, transport=httpx.MockTransport(backend.handler))

    return factory


@pytest.fixture
def local_store():
    return PersistentStore(test_engine)


@pytest.fixture
def session_store():
    return MemoryStore()


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================

from exam_portal.deps import get_api_factory, get_local_store  # noqa: E402
from exam_portal.main import app  # noqa: E402
from exam_portal.services.attempt import registry  # noqa: E402


class SyncClientWrapper:
    """Runs httpx.AsyncClient calls on one event loop so attempts and timers share it."""

    def __init__(self, async_client, loop):
        self.async_client = async_client
        self.loop = loop

    def run(self, coro):
        return self.loop.run_until_complete(coro)

    def get(self, *args, **kwargs):
        return self.run(self.async_client.get(*args, **kwargs))

    def post(self, *args, **kwargs):
        return self.run(self.async_client.post(*args, **kwargs))


@pytest.fixture
def client(api_factory, monkeypatch):
    """Create test client using httpx AsyncClient with sync wrapper."""
    # Page tests read the countdown; keep the attempt timer from ticking
    monkeypatch.setattr(settings, "timer_tick_seconds", 3600)
    app.dependency_overrides[get_api_factory] = lambda: api_factory
    app.dependency_overrides[get_local_store] = lambda: PersistentStore(test_engine)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    transport = httpx.ASGITransport(app=app)
    async_client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
    sync_client = SyncClientWrapper(async_client, loop)

    yield sync_client

    # Cleanup
    loop.run_until_complete(registry.clear())
    loop.run_until_complete(asyncio.sleep(0))
    loop.run_until_complete(async_client.aclose())
    loop.close()
    asyncio.set_event_loop(None)
    app.dependency_overrides.clear()


@pytest.fixture
def student_client(client):
    response = client.post("/auth/login", data={"email": STUDENT["email"], "password": PASSWORD})
    assert response.status_code == 303
    return client
