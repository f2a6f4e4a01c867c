"""Exceptions raised by the API client and the attempt lifecycle."""

from typing import Optional


class ApiError(Exception):
    """A failed call to the REST backend.

    ``status_code`` is None when the request never produced a response
    (timeout, connection refused).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ExamNotFound(LookupError):
    """Neither a practice exam nor the backend could provide the exam."""


class AttemptClosed(RuntimeError):
    """An answering operation was invoked after submission started."""
