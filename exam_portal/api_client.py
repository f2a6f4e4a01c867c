"""Async client for the REST backend plus the per-resource API wrappers."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from exam_portal.config import settings
from exam_portal.errors import ApiError

logger = logging.getLogger(__name__)

CACHEABLE_PREFIXES = ("/questions", "/exams")
NON_CACHEABLE_PREFIXES = ("/auth", "/exam-results")

TIMEOUT_MESSAGE = "Request timed out. Please try again."

# Shared by every client in the process: a write made while serving one
# request must invalidate reads cached for any other request.
_response_cache: Dict[str, Tuple[Any, float]] = {}
_in_flight: Dict[str, "asyncio.Future[Any]"] = {}


def should_cache_request(endpoint: str, method: str) -> bool:
    if method != "GET":
        return False
    if endpoint.startswith(NON_CACHEABLE_PREFIXES):
        return False
    return endpoint.startswith(CACHEABLE_PREFIXES)


def build_cache_key(base_url: str, endpoint: str, token: Optional[str]) -> str:
    return f"{base_url}{endpoint}::{token or 'anon'}"


def clear_cache() -> None:
    _response_cache.clear()
    _in_flight.clear()


def unwrap(payload: Any) -> Any:
    """Strip the backend's ``{"success": ..., "data": ...}`` envelope."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _parse_json_safely(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class ApiClient:
    """Typed fetch wrapper around ``httpx.AsyncClient``.

    GET requests for read-mostly resources are cached for ``cache_ttl``
    seconds keyed by (base url, endpoint, token); concurrent identical GETs
    share a single request; any successful non-GET call drops the cache.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.get_cache_ttl_seconds
        self._clock = clock
        self._http = httpx.AsyncClient(transport=transport, timeout=self.timeout)

        self.exams = ExamsAPI(self)
        self.exam_results = ExamResultsAPI(self)
        self.questions = QuestionsAPI(self)
        self.auth = AuthAPI(self)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        method = method.upper()
        cache_key = build_cache_key(self.base_url, endpoint, self.token)
        cacheable = should_cache_request(endpoint, method)

        if not cacheable:
            data = await self._request(endpoint, method, body)
            if method != "GET":
                clear_cache()
            return data

        entry = _response_cache.get(cache_key)
        if entry is not None and entry[1] > self._clock():
            logger.debug("cache hit %s", endpoint)
            return entry[0]

        pending = _in_flight.get(cache_key)
        if pending is not None and not pending.done():
            return await pending

        task = asyncio.ensure_future(self._request(endpoint, method, body))
        _in_flight[cache_key] = task
        try:
            data = await task
        finally:
            if _in_flight.get(cache_key) is task:
                del _in_flight[cache_key]

        _response_cache[cache_key] = (data, self._clock() + self.cache_ttl)
        return data

    async def _request(self, endpoint: str, method: str, body: Any) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self._http.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=headers,
                json=body,
            )
        except httpx.TimeoutException as exc:
            raise ApiError(TIMEOUT_MESSAGE) from exc
        except httpx.HTTPError as exc:
            raise ApiError(str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            error = _parse_json_safely(response)
            message = None
            if isinstance(error, dict):
                message = error.get("error") or error.get("message")
            raise ApiError(message or f"API Error: {response.status_code}", response.status_code)

        return _parse_json_safely(response)


class _Resource:
    """Read endpoints of one backend collection."""

    def __init__(self, client: ApiClient, path: str):
        self.client = client
        self.path = path

    def get_all(self):
        return self.client.fetch(self.path)

    def get(self, item_id: str):
        return self.client.fetch(f"{self.path}/{item_id}")


class ExamsAPI(_Resource):
    def __init__(self, client: ApiClient):
        super().__init__(client, "/exams")

    def get_mine(self):
        return self.client.fetch("/exams/mine")


class ExamResultsAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    def submit(self, data: dict):
        return self.client.fetch("/exam-results", method="POST", body=data)

    def get_mine(self):
        return self.client.fetch("/exam-results/mine")


class QuestionsAPI(_Resource):
    def __init__(self, client: ApiClient):
        super().__init__(client, "/questions")


class AuthAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    def login(self, email: str, password: str):
        return self.client.fetch("/auth/login", method="POST", body={"email": email, "password": password})
