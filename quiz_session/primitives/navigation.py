"""
Question order, the current-position cursor, and derived per-question status.
"""

from __future__ import annotations

import time
from typing import Callable, List, Optional

from quiz_session.models import QuestionSlot, QuestionStatus, SlotView
from quiz_session.primitives.answers import AnswerCache
from quiz_session.utils.exceptions import NavigationError


class NavigationIndex:
    """
    Ordered slots 1..N with a cursor.

    Status is never stored here: every read asks the AnswerCache for the
    current answer and flag bit.
    """

    def __init__(
        self, cache: AnswerCache, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._cache = cache
        self._clock = clock
        self._order: List[str] = []
        self._position = 1
        self._entered_at: Optional[float] = None

    def load(self, slots: List[QuestionSlot], position: int = 1) -> None:
        self._order = [slot.question_id for slot in sorted(slots, key=lambda s: s.position)]
        self._position = position if 1 <= position <= len(self._order) else 1
        self._entered_at = None

    @property
    def total(self) -> int:
        return len(self._order)

    @property
    def current_position(self) -> int:
        return self._position

    def current_slot(self) -> QuestionSlot:
        return self._cache.get_slot(self._order[self._position - 1])

    def slot_at(self, position: int) -> QuestionSlot:
        self._check_range(position)
        return self._cache.get_slot(self._order[position - 1])

    def position_of(self, question_id: str) -> int:
        try:
            return self._order.index(question_id) + 1
        except ValueError:
            raise NavigationError(f"Unknown question: {question_id}") from None

    # ------------------------------------------------------------------
    # Movement
    # ------------------------------------------------------------------
    def next(self) -> bool:
        """Move forward one question. At the last question this is a no-op."""
        if self._position >= self.total:
            return False
        self._move(self._position + 1)
        return True

    def previous(self) -> bool:
        """Move back one question. At the first question this is a no-op."""
        if self._position <= 1:
            return False
        self._move(self._position - 1)
        return True

    def go_to(self, position: int) -> bool:
        """
        Jump to a position.

        Raises:
            NavigationError: position outside 1..N
        """
        self._check_range(position)
        if position == self._position:
            return False
        self._move(position)
        return True

    def _check_range(self, position: int) -> None:
        if not 1 <= position <= self.total:
            raise NavigationError(
                f"Question {position} out of range 1..{self.total}"
            )

    def _move(self, position: int) -> None:
        self.suspend_clock()
        self._position = position
        self.resume_clock()

    # ------------------------------------------------------------------
    # Time spent on the current question
    # ------------------------------------------------------------------
    def resume_clock(self) -> None:
        if self.total and self._entered_at is None:
            self._entered_at = self._clock()

    def suspend_clock(self) -> None:
        if self._entered_at is None or not self.total:
            return
        elapsed = int(self._clock() - self._entered_at)
        self.current_slot().time_spent_seconds += max(0, elapsed)
        self._entered_at = None

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------
    def status_at(self, position: int) -> QuestionStatus:
        return self._cache.status(self.slot_at(position).question_id)

    def flagged_positions(self) -> List[int]:
        return [
            position
            for position, qid in enumerate(self._order, start=1)
            if self._cache.is_flagged(qid)
        ]

    def answered_count(self) -> int:
        return sum(1 for qid in self._order if self._cache.is_answered(qid))

    def unanswered_count(self) -> int:
        return self.total - self.answered_count()

    def slots(self) -> List[SlotView]:
        views = []
        for position, qid in enumerate(self._order, start=1):
            slot = self._cache.get_slot(qid)
            views.append(
                SlotView(
                    position=position,
                    question_id=qid,
                    question_type=slot.question_type,
                    status=self._cache.status(qid),
                    answer=slot.current_answer,
                    flagged=self._cache.is_flagged(qid),
                    last_synced_at=slot.last_synced_at,
                    time_spent_seconds=slot.time_spent_seconds,
                )
            )
        return views
