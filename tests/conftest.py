"""
Quiz Session Client - Test Configuration and Fixtures
"""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from quiz_session.config import Settings
from quiz_session.controller import SessionController
from quiz_session.models import (
    QuestionsStatusResponse,
    QuestionState,
    QuizMode,
    QuizSession,
    ServerStatus,
    StartResponse,
    SubmitResult,
    TimeStatus,
)


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSessionApi:
    """
    In-memory stand-in for SessionApiClient.

    Records every call; failures are scripted by pushing exceptions onto
    the per-endpoint `failures` lists.
    """

    def __init__(
        self,
        question_count: int = 10,
        time_limit: Optional[int] = 1800,
        max_pauses: Optional[int] = 2,
    ):
        self.question_ids = [f"q{i}" for i in range(1, question_count + 1)]
        self.time_limit = time_limit
        self.max_pauses = max_pauses
        self.pauses_remaining = max_pauses
        self.remaining_seconds = time_limit
        self.status = ServerStatus.ACTIVE
        self.resume_status = ServerStatus.ACTIVE

        self.saved: Dict[str, Any] = {}
        self.save_calls: List[tuple] = []
        self.flagged: set = set()
        self.flag_calls: List[tuple] = []
        self.navigation_calls: List[tuple] = []
        self.submit_calls: List[Dict[str, Any]] = []
        self.submit_attempts = 0
        self.pause_calls = 0
        self.resume_calls = 0
        self.heartbeat_calls = 0
        self.abandon_calls = 0
        self.start_calls = 0
        self.active: Optional[StartResponse] = None
        self.server_answers: Dict[str, Any] = {}

        self.failures: Dict[str, List[Exception]] = {}
        self.save_gate: Optional[asyncio.Event] = None

    def fail(self, endpoint: str, *errors: Exception) -> None:
        self.failures.setdefault(endpoint, []).extend(errors)

    def _maybe_fail(self, endpoint: str) -> None:
        queue = self.failures.get(endpoint)
        if queue:
            raise queue.pop(0)

    def _start_response(self, quiz_id: str, mode: QuizMode) -> StartResponse:
        return StartResponse.model_validate(
            {
                "session_id": "sess-1",
                "session_token": "tok-1",
                "quiz_id": quiz_id,
                "quiz_mode": mode.value,
                "time_limit_seconds": self.time_limit,
                "time_remaining_seconds": self.remaining_seconds,
                "questions": [
                    {"quiz_question_id": qid, "question_type": "multiple_choice"}
                    for qid in self.question_ids
                ],
                "pause_info": {
                    "max_pauses": self.max_pauses,
                    "pauses_remaining": self.pauses_remaining,
                },
            }
        )

    def _time_status(self, status: Optional[ServerStatus] = None) -> TimeStatus:
        return TimeStatus(
            status=status or self.status,
            time_remaining_seconds=self.remaining_seconds,
            pauses_remaining=self.pauses_remaining,
        )

    async def start(self, quiz_id: str, mode: QuizMode) -> StartResponse:
        self.start_calls += 1
        self._maybe_fail("start")
        return self._start_response(quiz_id, mode)

    async def active_session(self) -> Optional[StartResponse]:
        self._maybe_fail("active")
        return self.active

    async def save_answer(
        self,
        session: QuizSession,
        question_id: str,
        answer: Any,
        sequence: int,
        question_type: Optional[str] = None,
        time_spent_seconds: int = 0,
    ) -> Dict[str, Any]:
        self.save_calls.append((question_id, answer, sequence))
        if self.save_gate is not None:
            await self.save_gate.wait()
        self._maybe_fail("save_answer")
        self.saved[question_id] = answer
        return {"saved": True, "sequence": sequence}

    async def flag_question(self, session: QuizSession, question_id: str) -> Dict[str, Any]:
        self.flag_calls.append(("flag", question_id))
        self._maybe_fail("flag")
        self.flagged.add(question_id)
        return {"is_flagged": True}

    async def unflag_question(self, session: QuizSession, question_id: str) -> Dict[str, Any]:
        self.flag_calls.append(("unflag", question_id))
        self._maybe_fail("flag")
        self.flagged.discard(question_id)
        return {"is_flagged": False}

    async def flagged_questions(self, session: QuizSession) -> List[str]:
        self._maybe_fail("flagged")
        return sorted(self.flagged)

    async def next_question(self, session: QuizSession) -> Dict[str, Any]:
        self.navigation_calls.append(("next", None))
        self._maybe_fail("next_question")
        return {}

    async def go_to_question(self, session: QuizSession, position: int) -> Dict[str, Any]:
        self.navigation_calls.append(("go_to", position))
        self._maybe_fail("go_to_question")
        return {}

    async def questions_status(self, session: QuizSession) -> QuestionsStatusResponse:
        self._maybe_fail("questions_status")
        return QuestionsStatusResponse(
            current_position=1,
            questions=[
                QuestionState(
                    question_id=qid,
                    position=i,
                    answer=self.server_answers.get(qid, self.saved.get(qid)),
                    is_flagged=qid in self.flagged,
                )
                for i, qid in enumerate(self.question_ids, start=1)
            ],
        )

    async def time_remaining(self, session: QuizSession) -> TimeStatus:
        self._maybe_fail("time_remaining")
        return self._time_status()

    async def heartbeat(self, session: QuizSession) -> TimeStatus:
        self.heartbeat_calls += 1
        self._maybe_fail("heartbeat")
        return self._time_status()

    async def pause(self, session: QuizSession) -> TimeStatus:
        self.pause_calls += 1
        self._maybe_fail("pause")
        if self.pauses_remaining is not None:
            self.pauses_remaining -= 1
        return self._time_status(ServerStatus.PAUSED)

    async def resume(self, session: QuizSession) -> TimeStatus:
        self.resume_calls += 1
        self._maybe_fail("resume")
        if self.resume_status.is_submitted:
            self.status = self.resume_status
        return self._time_status(self.resume_status)

    async def submit(self, session: QuizSession, answers: Dict[str, Any]) -> SubmitResult:
        self.submit_attempts += 1
        self._maybe_fail("submit")
        already = bool(self.submit_calls)
        if not already:
            self.submit_calls.append(dict(answers))
        self.status = ServerStatus.SUBMITTED
        return SubmitResult(
            session_id=session.session_id,
            score=float(len(self.submit_calls[0])),
            already_submitted=already,
        )

    async def abandon(self, session: QuizSession) -> Dict[str, Any]:
        self.abandon_calls += 1
        return {"abandoned": True}


def fast_settings(**overrides: Any) -> Settings:
    """Settings with loops that never fire during a test and no backoff waits."""
    values = dict(
        heartbeat_interval=3600.0,
        practice_heartbeat_interval=3600.0,
        countdown_tick=3600.0,
        sync_interval=3600.0,
        sync_max_attempts=3,
        sync_backoff_base=0.0,
        sync_backoff_max=0.0,
        submit_max_attempts=3,
        flush_timeout=1.0,
        pause_flush_timeout=1.0,
        abandon_flush_timeout=0.5,
        heartbeat_failure_threshold=3,
        exam_default_max_pauses=2,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def config() -> Settings:
    return fast_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_api() -> FakeSessionApi:
    return FakeSessionApi()


@pytest.fixture
async def controller(fake_api, config, clock):
    """Controller wired to the fake backend; abandoned after each test."""
    ctrl = SessionController(fake_api, config=config, clock=clock)
    yield ctrl
    await ctrl.abandon()
    # Let stopped background loops run to their exit
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
async def exam(controller):
    """An active exam-mode session with 10 questions and 1800 s."""
    await controller.start("quiz-1", QuizMode.EXAM)
    return controller
