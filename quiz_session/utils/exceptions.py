"""Custom exceptions for the quiz session client."""

from typing import Optional


class QuizSessionError(Exception):
    """Base exception for quiz session errors."""

    pass


class TransientError(QuizSessionError):
    """Network error, timeout, 429 or 5xx. Safe to retry."""

    pass


class RejectedError(QuizSessionError):
    """The backend refused the request (4xx). Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SessionGoneError(RejectedError):
    """The session no longer exists on the backend (404/410)."""

    pass


class SubmissionError(QuizSessionError):
    """Final submission failed after all retries."""

    pass


class LocalOperationError(QuizSessionError):
    """Operation rejected locally before any network call."""

    pass


class InvalidStateError(LocalOperationError):
    """Operation not valid in the current session state."""

    pass


class NavigationError(LocalOperationError):
    """Question position out of range."""

    pass


class PauseNotAllowedError(LocalOperationError):
    """Mode policy forbids pausing (no pauses left)."""

    pass
