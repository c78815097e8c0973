"""
Local answer cache with a coalescing, retrying outbound sync queue.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from quiz_session.config import Settings, settings as default_settings
from quiz_session.logger import setup_logger
from quiz_session.models import (
    FlushResult,
    PendingWrite,
    QuestionSlot,
    QuestionStatus,
    WriteKind,
)
from quiz_session.utils.exceptions import (
    QuizSessionError,
    RejectedError,
    TransientError,
)
from quiz_session.utils.helpers import backoff_delay, is_empty_answer

logger = setup_logger(__name__)

WriteKey = Tuple[str, Optional[str]]
Sender = Callable[[PendingWrite], Awaitable[Any]]
EventCallback = Callable[[str, Dict[str, Any]], None]

NAVIGATE_KEY: WriteKey = ("navigate", None)


def _write_key(kind: WriteKind, question_id: Optional[str]) -> WriteKey:
    if kind == WriteKind.SAVE_ANSWER:
        return ("answer", question_id)
    if kind in (WriteKind.FLAG, WriteKind.UNFLAG):
        return ("flag", question_id)
    return NAVIGATE_KEY


class AnswerCache:
    """
    Holds the user's answers and flags, and pushes them to the backend.

    Local writes are synchronous; network writes go through a FIFO queue
    keyed per slot. A newer write to the same key replaces the queued one,
    so only the latest value is ever sent. Writes that exhaust their retries
    stay queued for the next tick.

    Events reported through `on_event`:
    - "synced": a write was acknowledged
    - "sync_degraded": a write exhausted its retries and stays queued
    - "rejected": the backend refused a write; it was dropped
    """

    def __init__(
        self,
        sender: Sender,
        on_event: Optional[EventCallback] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or default_settings
        self._sender = sender
        self._on_event = on_event
        self.max_attempts = config.sync_max_attempts
        self.backoff_base = config.sync_backoff_base
        self.backoff_max = config.sync_backoff_max
        self.sync_interval = config.sync_interval

        self._slots: Dict[str, QuestionSlot] = {}
        self._flagged: Set[str] = set()
        self._pending: "OrderedDict[WriteKey, PendingWrite]" = OrderedDict()
        self._in_flight: Dict[WriteKey, PendingWrite] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._tick_task: Optional[asyncio.Task] = None
        self._tick_stop: Optional[asyncio.Event] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------
    def load(self, slots: Iterable[QuestionSlot], flagged: Iterable[str] = ()) -> None:
        """Replace all local state with a fresh set of slots."""
        self._slots = {slot.question_id: slot for slot in slots}
        self._flagged = {qid for qid in flagged if qid in self._slots}
        self._pending.clear()
        self._in_flight.clear()
        self._closed = False

    def get_slot(self, question_id: str) -> QuestionSlot:
        try:
            return self._slots[question_id]
        except KeyError:
            raise KeyError(f"Unknown question: {question_id}") from None

    def is_flagged(self, question_id: str) -> bool:
        return question_id in self._flagged

    def is_answered(self, question_id: str) -> bool:
        return not is_empty_answer(self.get_slot(question_id).current_answer)

    def status(self, question_id: str) -> QuestionStatus:
        return QuestionStatus.derive(
            answered=self.is_answered(question_id),
            flagged=self.is_flagged(question_id),
        )

    def answers(self) -> Dict[str, Any]:
        """Every non-empty answer, keyed by question id."""
        return {
            qid: slot.current_answer
            for qid, slot in self._slots.items()
            if not is_empty_answer(slot.current_answer)
        }

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------
    def set_answer(self, question_id: str, value: Any) -> QuestionSlot:
        slot = self.get_slot(question_id)
        slot.current_answer = value
        self._enqueue(
            WriteKind.SAVE_ANSWER,
            question_id,
            {
                "answer": value,
                "question_type": slot.question_type,
                "time_spent_seconds": slot.time_spent_seconds,
            },
        )
        return slot

    def set_flag(self, question_id: str, flagged: bool) -> bool:
        self.get_slot(question_id)
        if flagged == (question_id in self._flagged):
            return flagged

        if flagged:
            self._flagged.add(question_id)
        else:
            self._flagged.discard(question_id)
        kind = WriteKind.FLAG if flagged else WriteKind.UNFLAG
        self._enqueue(kind, question_id, {})
        return flagged

    def toggle_flag(self, question_id: str) -> bool:
        return self.set_flag(question_id, not self.is_flagged(question_id))

    def record_navigation(self, position: int, relative: bool = False) -> None:
        """
        Queue a cursor move. A relative move only survives when nothing else
        is queued, otherwise the coalesced write becomes absolute.
        """
        if NAVIGATE_KEY in self._pending or NAVIGATE_KEY in self._in_flight:
            relative = False
        self._enqueue(
            WriteKind.NAVIGATE, None, {"position": position, "relative": relative}
        )

    def adopt_server_value(
        self, question_id: str, answer: Any, flagged: bool
    ) -> bool:
        """
        Take the server's answer and flag for a slot with nothing queued.

        Returns:
            True if the slot was updated
        """
        if question_id not in self._slots:
            return False
        busy = {("answer", question_id), ("flag", question_id)}
        if busy & (set(self._pending) | set(self._in_flight)):
            return False

        slot = self._slots[question_id]
        slot.current_answer = answer
        slot.last_synced_at = datetime.now(timezone.utc)
        if flagged:
            self._flagged.add(question_id)
        else:
            self._flagged.discard(question_id)
        return True

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_writes(self) -> List[PendingWrite]:
        return list(self._pending.values())

    def _enqueue(
        self, kind: WriteKind, question_id: Optional[str], payload: Dict[str, Any]
    ) -> PendingWrite:
        self._sequence += 1
        key = _write_key(kind, question_id)
        write = PendingWrite(
            kind=kind,
            question_id=question_id,
            payload=payload,
            sequence=self._sequence,
        )

        existing = self._pending.get(key)
        if existing is not None:
            # Keep the queue position, carry the attempt count forward
            write.attempt = existing.attempt
            write.enqueued_at = existing.enqueued_at
            logger.debug(
                f"Coalesced {kind.value} for {question_id} (seq {existing.sequence} -> {write.sequence})"
            )
        self._pending[key] = write
        return write

    async def process_once(self, stop: Optional[asyncio.Event] = None) -> int:
        """
        Send every queued write once (with bounded retries each).

        Args:
            stop: When set, the pass ends after the write in progress

        Returns:
            Number of writes acknowledged in this pass
        """
        async with self._lock:
            acked = 0
            for key in list(self._pending):
                if self._closed or (stop is not None and stop.is_set()):
                    break
                write = self._pending.get(key)
                if write is None or key in self._in_flight:
                    continue
                if await self._send_with_retries(key, write, stop):
                    acked += 1
            return acked

    async def _send_with_retries(
        self, key: WriteKey, write: PendingWrite, stop: Optional[asyncio.Event] = None
    ) -> bool:
        self._in_flight[key] = write
        try:
            for attempt in range(1, self.max_attempts + 1):
                write.attempt += 1
                try:
                    await self._sender(write)
                except TransientError as e:
                    logger.warning(
                        f"⚠️ Sync {write.kind.value} {write.question_id or ''} failed "
                        f"(attempt {attempt}/{self.max_attempts}): {e}"
                    )
                    if write.kind == WriteKind.NAVIGATE:
                        # The server may have applied the move; only resend the target
                        write.payload["relative"] = False
                    if (
                        attempt == self.max_attempts
                        or self._closed
                        or (stop is not None and stop.is_set())
                    ):
                        break
                    await asyncio.sleep(
                        backoff_delay(attempt, self.backoff_base, self.backoff_max)
                    )
                    continue
                except RejectedError as e:
                    logger.error(f"❌ Sync {write.kind.value} rejected: {e}")
                    if self._pending.get(key) is write:
                        del self._pending[key]
                    self._emit("rejected", {"write": write, "error": e})
                    return False

                self._acknowledge(key, write)
                return True
        finally:
            self._in_flight.pop(key, None)

        self._emit("sync_degraded", {"write": write, "pending": self.pending_count})
        return False

    def _acknowledge(self, key: WriteKey, write: PendingWrite) -> None:
        if self._pending.get(key) is not write:
            # A newer value was queued while this one was in flight
            logger.debug(f"Discarding stale ack for seq {write.sequence}")
            return

        del self._pending[key]
        if write.question_id is not None and write.kind == WriteKind.SAVE_ANSWER:
            slot = self._slots.get(write.question_id)
            if slot is not None:
                slot.last_synced_at = datetime.now(timezone.utc)
        self._emit("synced", {"write": write})

    async def flush_all(self, timeout: float) -> FlushResult:
        """
        Drain the queue, giving up after `timeout` seconds.

        Args:
            timeout: Upper bound in seconds

        Returns:
            FlushResult(drained, pending)
        """
        if not self._pending:
            return FlushResult(drained=True, pending=0)

        deadline = time.monotonic() + timeout

        async def _drain() -> None:
            while self._pending and not self._closed:
                await self.process_once()
                if self._pending and time.monotonic() < deadline:
                    await asyncio.sleep(
                        min(self.backoff_base, max(0.0, deadline - time.monotonic()))
                    )

        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"⏱️ Flush timed out after {timeout}s with {self.pending_count} write(s) pending"
            )

        return FlushResult(drained=not self._pending, pending=self.pending_count)

    # ------------------------------------------------------------------
    # Background tick
    # ------------------------------------------------------------------
    def start(self) -> None:
        self._closed = False
        if self._tick_task is None or self._tick_task.done():
            self._tick_stop = asyncio.Event()
            self._tick_task = asyncio.create_task(self._tick_loop(self._tick_stop))

    def stop(self) -> None:
        """
        Stop the background tick. A send already in flight is not cancelled;
        the pass ends once it completes.
        """
        if self._tick_stop is not None:
            self._tick_stop.set()
        self._tick_task = None
        self._tick_stop = None

    def close(self) -> None:
        """Stop the tick and refuse to send anything further."""
        self.stop()
        self._closed = True

    def clear_pending(self) -> None:
        self._pending.clear()

    async def _tick_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.sync_interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break
            if self._pending:
                try:
                    await self.process_once(stop)
                except QuizSessionError as e:
                    logger.error(f"❌ Sync tick failed: {e}")
                except Exception as e:
                    logger.error(f"🔥 Sync tick error: {e}", exc_info=True)

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(event, data)
