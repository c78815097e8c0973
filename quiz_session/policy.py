"""
Practice vs Exam behaviour.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from quiz_session.config import Settings, settings as default_settings
from quiz_session.models import PauseInfo, QuizMode


@dataclass(frozen=True)
class ModePolicy:
    """
    What a session in a given mode may do.

    max_pauses is None when pauses are unlimited.
    """

    mode: QuizMode
    pause_allowed: bool
    max_pauses: Optional[int]
    time_limited: bool
    auto_submit_on_expiry: bool
    heartbeat_interval: float
    max_pause_duration_seconds: Optional[int] = None

    def can_pause(self, pauses_remaining: Optional[int]) -> bool:
        if not self.pause_allowed:
            return False
        if self.max_pauses is None or pauses_remaining is None:
            return True
        return pauses_remaining > 0

    def initial_pauses_remaining(self, pause_info: Optional[PauseInfo] = None) -> Optional[int]:
        if self.max_pauses is None:
            return None
        if pause_info is not None and pause_info.pauses_remaining is not None:
            return pause_info.pauses_remaining
        return self.max_pauses


def policy_for(
    mode: QuizMode,
    time_limit_seconds: Optional[int] = None,
    pause_info: Optional[PauseInfo] = None,
    config: Optional[Settings] = None,
) -> ModePolicy:
    """
    Build the policy for a session.

    Args:
        mode: Mode chosen by the caller before start
        time_limit_seconds: Quiz time limit from the server (ignored in practice)
        pause_info: Server pause configuration, reconciled at start
        config: Settings override

    Returns:
        Frozen ModePolicy
    """
    config = config or default_settings
    pause_info = pause_info or PauseInfo()

    if mode == QuizMode.PRACTICE:
        return ModePolicy(
            mode=mode,
            pause_allowed=True,
            max_pauses=None,
            time_limited=False,
            auto_submit_on_expiry=False,
            heartbeat_interval=config.practice_heartbeat_interval,
        )

    max_pauses = pause_info.max_pauses
    if max_pauses is None:
        max_pauses = config.exam_default_max_pauses

    return ModePolicy(
        mode=mode,
        pause_allowed=max_pauses > 0,
        max_pauses=max_pauses,
        time_limited=time_limit_seconds is not None,
        auto_submit_on_expiry=time_limit_seconds is not None,
        heartbeat_interval=config.heartbeat_interval,
        max_pause_duration_seconds=pause_info.max_pause_duration_seconds,
    )
