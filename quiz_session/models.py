from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class QuizMode(str, Enum):
    PRACTICE = "practice"
    EXAM = "exam"


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED = "paused"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    REVIEWING = "reviewing"
    EXPIRED = "expired"


class QuestionStatus(str, Enum):
    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    FLAGGED_ANSWERED = "flagged_answered"
    FLAGGED_UNANSWERED = "flagged_unanswered"

    @classmethod
    def derive(cls, answered: bool, flagged: bool) -> "QuestionStatus":
        if flagged:
            return cls.FLAGGED_ANSWERED if answered else cls.FLAGGED_UNANSWERED
        return cls.ANSWERED if answered else cls.UNANSWERED


class ServerStatus(str, Enum):
    """Session status as reported by the backend."""

    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"

    @property
    def is_submitted(self) -> bool:
        return self in (ServerStatus.SUBMITTED, ServerStatus.AUTO_SUBMITTED)


class WriteKind(str, Enum):
    SAVE_ANSWER = "save_answer"
    FLAG = "flag"
    UNFLAG = "unflag"
    NAVIGATE = "navigate"


# ----------------------------------------------------------------------
# Backend responses
# ----------------------------------------------------------------------
class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class QuestionRef(_ApiModel):
    question_id: str = Field(
        validation_alias=AliasChoices("question_id", "quiz_question_id")
    )
    question_type: str = "multiple_choice"


class PauseInfo(_ApiModel):
    max_pauses: Optional[int] = None
    pauses_remaining: Optional[int] = None
    max_pause_duration_seconds: Optional[int] = None


class StartResponse(_ApiModel):
    """Body returned by POST sessions/start and GET sessions/active."""

    session_id: str
    session_token: Optional[str] = None
    quiz_id: str
    quiz_mode: QuizMode = QuizMode.EXAM
    status: ServerStatus = ServerStatus.ACTIVE
    time_limit_seconds: Optional[int] = None
    time_remaining_seconds: Optional[int] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    current_position: int = 1
    questions: List[QuestionRef] = Field(default_factory=list)
    pause_info: PauseInfo = Field(default_factory=PauseInfo)


class TimeStatus(_ApiModel):
    """Body returned by heartbeat, time-remaining, pause and resume."""

    status: ServerStatus = ServerStatus.ACTIVE
    time_remaining_seconds: Optional[int] = None
    pauses_remaining: Optional[int] = None
    auto_resumed: bool = False


class QuestionState(_ApiModel):
    question_id: str = Field(
        validation_alias=AliasChoices("question_id", "quiz_question_id")
    )
    position: int
    question_type: str = "multiple_choice"
    answer: Any = None
    is_flagged: bool = False
    time_spent_seconds: int = 0


class QuestionsStatusResponse(_ApiModel):
    current_position: int = 1
    questions: List[QuestionState] = Field(default_factory=list)


class SubmitResult(_ApiModel):
    session_id: str
    status: ServerStatus = ServerStatus.SUBMITTED
    score: Optional[float] = None
    max_score: Optional[float] = None
    submitted_at: Optional[datetime] = None
    already_submitted: bool = False


# ----------------------------------------------------------------------
# Local state
# ----------------------------------------------------------------------
class QuizSession(BaseModel):
    session_id: str
    quiz_id: str
    mode: QuizMode
    total_questions: int
    time_limit_seconds: Optional[int] = None
    started_at: datetime
    state: SessionState = SessionState.STARTING
    server_time_remaining_seconds: Optional[int] = None
    local_time_remaining_seconds: Optional[int] = None
    session_token: Optional[str] = None
    pauses_remaining: Optional[int] = None


class QuestionSlot(BaseModel):
    """One question position. Status is derived, see AnswerCache.status()."""

    position: int
    question_id: str
    question_type: str = "multiple_choice"
    current_answer: Any = None
    last_synced_at: Optional[datetime] = None
    time_spent_seconds: int = 0


class SlotView(BaseModel):
    """Read-only rendering of a slot with its derived status."""

    position: int
    question_id: str
    question_type: str
    status: QuestionStatus
    answer: Any = None
    flagged: bool = False
    last_synced_at: Optional[datetime] = None
    time_spent_seconds: int = 0


@dataclass
class PendingWrite:
    """A queued mutation awaiting server acknowledgment."""

    kind: WriteKind
    question_id: Optional[str]
    payload: Dict[str, Any]
    sequence: int
    attempt: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)


class FlushResult(BaseModel):
    drained: bool
    pending: int = 0


class SubmitOutcome(BaseModel):
    result: Optional[SubmitResult] = None
    flush_drained: bool = True
    unsynced_writes: int = 0
    submitted_externally: bool = False


class SessionSnapshot(BaseModel):
    """Everything the UI needs to render the current attempt."""

    state: SessionState
    session: Optional[QuizSession] = None
    current_position: Optional[int] = None
    time_remaining: Optional[int] = None
    time_remaining_display: str = "--:--"
    slots: List[SlotView] = Field(default_factory=list)
    flagged_positions: List[int] = Field(default_factory=list)
    answered_count: int = 0
    pending_writes: int = 0
    connectivity_degraded: bool = False
    last_error: Optional[str] = None
    outcome: Optional[SubmitOutcome] = None
