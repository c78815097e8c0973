"""
REST client for the backend session API, with error classification and retries.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from quiz_session.config import Settings, settings as default_settings
from quiz_session.logger import setup_logger
from quiz_session.models import (
    QuestionsStatusResponse,
    QuizMode,
    QuizSession,
    StartResponse,
    SubmitResult,
    TimeStatus,
)
from quiz_session.utils.exceptions import (
    RejectedError,
    SessionGoneError,
    SubmissionError,
    TransientError,
)
from quiz_session.utils.helpers import backoff_delay

logger = setup_logger(__name__)

SESSION_BASE = "/sessions"
SESSION_TOKEN_HEADER = "X-Session-Token"

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class SessionApiClient:
    """
    Thin async wrapper around the session endpoints.

    Every failure is translated into one of:
    - TransientError: timeouts, transport errors, 429 and 5xx
    - SessionGoneError: 404 / 410, the session no longer exists
    - RejectedError: any other 4xx
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or default_settings
        self.base_url = (base_url or config.api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config.request_timeout

        # Basic HTTP client; reused for every call
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"User-Agent": "Quiz-Session-Client/1.0"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def start(self, quiz_id: str, mode: QuizMode) -> StartResponse:
        data = await self._request(
            "POST",
            f"{SESSION_BASE}/start",
            json={"quiz_id": quiz_id, "quiz_mode": mode.value},
        )
        return _parse(StartResponse, data)

    async def active_session(self) -> Optional[StartResponse]:
        """Return the caller's unfinished session, or None."""
        try:
            data = await self._request("GET", f"{SESSION_BASE}/active")
        except SessionGoneError:
            return None
        if not data:
            return None
        return _parse(StartResponse, data)

    async def pause(self, session: QuizSession) -> TimeStatus:
        data = await self._request(
            "POST", f"{SESSION_BASE}/pause", session=session
        )
        return _parse(TimeStatus, data or {"status": "paused"})

    async def resume(self, session: QuizSession) -> TimeStatus:
        data = await self._request(
            "POST", f"{SESSION_BASE}/resume", session=session
        )
        return _parse(TimeStatus, data or {})

    async def heartbeat(self, session: QuizSession) -> TimeStatus:
        data = await self._request(
            "POST",
            f"{SESSION_BASE}/heartbeat",
            session=session,
            json={"session_id": session.session_id},
        )
        return _parse(TimeStatus, data or {})

    async def time_remaining(self, session: QuizSession) -> TimeStatus:
        data = await self._request(
            "GET",
            f"{SESSION_BASE}/{session.session_id}/time-remaining",
            session=session,
        )
        return _parse(TimeStatus, data or {})

    async def submit(
        self, session: QuizSession, answers: Dict[str, Any]
    ) -> SubmitResult:
        """
        Submit the attempt. The backend treats a repeat submit as a no-op
        returning the first result.

        Args:
            session: Session being submitted
            answers: Final {question_id: answer} map

        Returns:
            SubmitResult
        """
        payload = {
            "session_id": session.session_id,
            "answers": [
                {"quiz_question_id": qid, "answer": answer}
                for qid, answer in answers.items()
            ],
        }
        data = await self._request(
            "POST", f"{SESSION_BASE}/submit", session=session, json=payload
        )
        if not isinstance(data, dict):
            data = {}
        data.setdefault("session_id", session.session_id)
        return _parse(SubmitResult, data)

    async def abandon(self, session: QuizSession) -> Dict[str, Any]:
        return await self._request(
            "POST", f"{SESSION_BASE}/abandon", session=session
        )

    # ------------------------------------------------------------------
    # Answers, flags, navigation
    # ------------------------------------------------------------------
    async def save_answer(
        self,
        session: QuizSession,
        question_id: str,
        answer: Any,
        sequence: int,
        question_type: Optional[str] = None,
        time_spent_seconds: int = 0,
    ) -> Dict[str, Any]:
        payload = {
            "session_id": session.session_id,
            "quiz_question_id": question_id,
            "answer": answer,
            "sequence": sequence,
            "time_spent_seconds": time_spent_seconds,
        }
        if question_type:
            payload["question_type"] = question_type
        return await self._request(
            "POST", f"{SESSION_BASE}/save-answer", session=session, json=payload
        )

    async def flag_question(
        self, session: QuizSession, question_id: str
    ) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"{SESSION_BASE}/{session.session_id}/questions/{question_id}/flag",
            session=session,
        )

    async def unflag_question(
        self, session: QuizSession, question_id: str
    ) -> Dict[str, Any]:
        return await self._request(
            "DELETE",
            f"{SESSION_BASE}/{session.session_id}/questions/{question_id}/flag",
            session=session,
        )

    async def flagged_questions(self, session: QuizSession) -> List[str]:
        data = await self._request(
            "GET",
            f"{SESSION_BASE}/{session.session_id}/flagged-questions",
            session=session,
        )
        if isinstance(data, dict):
            data = data.get("flagged_questions", data.get("questions", []))
        flagged = []
        for item in data or []:
            if isinstance(item, dict):
                item = item.get("question_id") or item.get("quiz_question_id")
            if item is not None:
                flagged.append(str(item))
        return flagged

    async def next_question(self, session: QuizSession) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"{SESSION_BASE}/{session.session_id}/next-question",
            session=session,
        )

    async def go_to_question(
        self, session: QuizSession, position: int
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"{SESSION_BASE}/{session.session_id}/go-to-question/{position}",
            session=session,
        )

    async def questions_status(self, session: QuizSession) -> QuestionsStatusResponse:
        data = await self._request(
            "GET",
            f"{SESSION_BASE}/{session.session_id}/questions-status",
            session=session,
        )
        if isinstance(data, list):
            data = {"questions": data}
        return _parse(QuestionsStatusResponse, data or {})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        session: Optional[QuizSession] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {}
        if session is not None and session.session_token:
            headers[SESSION_TOKEN_HEADER] = session.session_token

        try:
            response = await self._client.request(
                method, path, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self._classify_status(e) from e
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            # Proxies and captive portals answer 200 with HTML
            raise TransientError(
                f"{method} {path} returned a non-JSON body "
                f"({response.headers.get('content-type', 'unknown type')})"
            ) from e

    @staticmethod
    def _classify_status(e: httpx.HTTPStatusError) -> Exception:
        status = e.response.status_code
        request = e.request
        detail = _error_detail(e.response)
        message = f"HTTP {status} on {request.method} {request.url.path}"
        if detail:
            message = f"{message}: {detail}"

        if status == 429 or 500 <= status < 600:
            return TransientError(message)
        if status in (404, 410):
            return SessionGoneError(message, status_code=status, detail=detail)
        return RejectedError(message, status_code=status, detail=detail)


def _parse(model: Type[M], data: Any) -> M:
    """Validate a response body, treating a malformed one like a failed call."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TransientError(
            f"Unexpected {model.__name__} body ({e.error_count()} validation error(s))"
        ) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail", ""))
    return ""


async def call_with_retries(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 4,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    **kwargs: Any,
) -> T:
    """
    Generic retry wrapper for idempotent calls.

    Retries TransientError with exponential backoff; RejectedError is raised
    immediately.

    Raises:
        SubmissionError: if every attempt failed with a transient error
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except TransientError as e:
            last_error = e
            logger.warning(f"⚠️ Transient error (attempt {attempt}/{max_attempts}): {e}")
            if attempt == max_attempts:
                break
            await asyncio.sleep(backoff_delay(attempt, backoff_base, backoff_max))

    raise SubmissionError(f"Call failed after {max_attempts} attempts: {last_error}")
