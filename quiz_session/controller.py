"""
Session lifecycle controller.

Drives one quiz attempt from start to submission. It is the only writer of
session state: the answer cache, navigation index and timer report back
through callbacks and the controller decides every transition.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from quiz_session.api.client import SessionApiClient, call_with_retries
from quiz_session.config import Settings, settings as default_settings
from quiz_session.logger import setup_logger
from quiz_session.models import (
    PendingWrite,
    QuestionSlot,
    QuizMode,
    QuizSession,
    ServerStatus,
    SessionSnapshot,
    SessionState,
    SlotView,
    StartResponse,
    SubmitOutcome,
    SubmitResult,
    TimeStatus,
    WriteKind,
)
from quiz_session.policy import ModePolicy, policy_for
from quiz_session.primitives.answers import AnswerCache
from quiz_session.primitives.navigation import NavigationIndex
from quiz_session.timer import TimerSynchronizer
from quiz_session.utils.exceptions import (
    InvalidStateError,
    PauseNotAllowedError,
    QuizSessionError,
    RejectedError,
    SessionGoneError,
    SubmissionError,
    TransientError,
)
from quiz_session.utils.helpers import format_time

logger = setup_logger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

TERMINAL_STATES = (SessionState.SUBMITTED, SessionState.REVIEWING)


class SessionController:
    """
    State machine for a single attempt:

        idle -> starting -> active <-> paused
        active -> expired -> submitting -> submitted -> reviewing
        any -> idle (abandon)

    Answer, flag and navigation operations are only valid while active and
    raise InvalidStateError otherwise.
    """

    def __init__(
        self,
        api: SessionApiClient,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.config = config or default_settings
        self._clock = clock
        setup_logger(__name__, self.config.log_level)

        self._state = SessionState.IDLE
        self.session: Optional[QuizSession] = None
        self.policy: Optional[ModePolicy] = None
        self.timer: Optional[TimerSynchronizer] = None
        self.cache = AnswerCache(
            self._send_write, on_event=self._on_cache_event, config=self.config
        )
        self.navigation = NavigationIndex(self.cache, clock=clock)

        self.connectivity_degraded = False
        self.last_error: Optional[str] = None
        self._outcome: Optional[SubmitOutcome] = None
        self._submit_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        # Bumped on start/abandon so late responses can be recognised
        self._generation = 0

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def time_remaining(self) -> Optional[int]:
        if self.timer is None or not self.timer.policy.time_limited:
            return None
        if self._state == SessionState.ACTIVE:
            self.timer.tick()
        self._sync_times()
        return self.timer.local_remaining

    @property
    def slots(self) -> List[SlotView]:
        return self.navigation.slots() if self.session else []

    @property
    def flagged_positions(self) -> List[int]:
        return self.navigation.flagged_positions() if self.session else []

    @property
    def outcome(self) -> Optional[SubmitOutcome]:
        return self._outcome

    def snapshot(self) -> SessionSnapshot:
        remaining = self.time_remaining
        session = None
        if self.session is not None:
            session = self.session.model_copy(update={"session_token": None})
        return SessionSnapshot(
            state=self._state,
            session=session,
            current_position=self.navigation.current_position if self.session else None,
            time_remaining=remaining,
            time_remaining_display=format_time(remaining),
            slots=self.slots,
            flagged_positions=self.flagged_positions,
            answered_count=self.navigation.answered_count() if self.session else 0,
            pending_writes=self.cache.pending_count,
            connectivity_degraded=self.connectivity_degraded,
            last_error=self.last_error,
            outcome=self._outcome,
        )

    def add_listener(self, listener: Listener) -> None:
        """Register a callback receiving (event, data) for UI notifications."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Start / restore
    # ------------------------------------------------------------------
    async def start(self, quiz_id: str, mode: QuizMode) -> SessionSnapshot:
        """
        Start a new attempt.

        Args:
            quiz_id: Quiz to attempt
            mode: Practice or exam, chosen by the caller

        Returns:
            Snapshot of the active session

        Raises:
            InvalidStateError: an attempt is already running
            QuizSessionError: the backend could not start the session
        """
        if self._state in TERMINAL_STATES:
            self._reset()
        self._require(SessionState.IDLE, op="start")

        self._generation += 1
        generation = self._generation
        self._transition(SessionState.STARTING)
        logger.info(f"🚀 Starting {mode.value} session for quiz {quiz_id}")

        try:
            response = await self.api.start(quiz_id, mode)
            if generation != self._generation:
                logger.info("Start completed after abandon, ignoring response")
                return self.snapshot()
            self._build(response, mode)
        except Exception as e:
            logger.error(f"❌ Could not start session: {e}")
            self._abort_start(generation, e)
            raise

        self._activate()
        logger.info(
            f"✅ Session {response.session_id}: {self.session.total_questions} questions, "
            f"limit {format_time(self.session.time_limit_seconds)}"
        )
        return self.snapshot()

    async def restore(self) -> Optional[SessionSnapshot]:
        """
        Pick up an unfinished attempt after a reload.

        Returns:
            Snapshot, or None when the backend has nothing to resume
        """
        self._require(SessionState.IDLE, op="restore")
        self._generation += 1
        generation = self._generation
        self._transition(SessionState.STARTING)

        try:
            response = await self.api.active_session()
            if generation != self._generation:
                return self.snapshot()
            if response is None or response.status.is_submitted:
                logger.info("No active session to restore")
                self._transition(SessionState.IDLE)
                return None

            self._build(response, response.quiz_mode)
            await self._load_question_states()
        except SessionGoneError as e:
            logger.info(f"No active session to restore: {e}")
            self._abort_start(generation, e)
            return None
        except Exception as e:
            logger.error(f"❌ Could not restore session: {e}")
            self._abort_start(generation, e)
            raise

        if generation != self._generation:
            return self.snapshot()

        logger.info(f"♻️ Restored session {response.session_id} ({response.status.value})")
        if response.status == ServerStatus.PAUSED:
            self._transition(SessionState.PAUSED)
        elif response.status == ServerStatus.EXPIRED:
            self._expire()
        else:
            self._activate()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Answer / flag / navigate
    # ------------------------------------------------------------------
    def answer(self, question_id: str, value: Any) -> SlotView:
        self._require(SessionState.ACTIVE, op="answer")
        position = self.navigation.position_of(question_id)
        if position == self.navigation.current_position:
            # Fold the time spent so far into the saved value
            self.navigation.suspend_clock()
            self.navigation.resume_clock()
        self.cache.set_answer(question_id, value)
        return self.navigation.slots()[position - 1]

    def flag(self, question_id: str) -> SlotView:
        return self._set_flag(question_id, True, op="flag")

    def unflag(self, question_id: str) -> SlotView:
        return self._set_flag(question_id, False, op="unflag")

    def toggle_flag(self, question_id: str) -> SlotView:
        self._require(SessionState.ACTIVE, op="flag")
        return self._set_flag(
            question_id, not self.cache.is_flagged(question_id), op="flag"
        )

    def _set_flag(self, question_id: str, flagged: bool, op: str) -> SlotView:
        self._require(SessionState.ACTIVE, op=op)
        position = self.navigation.position_of(question_id)
        self.cache.set_flag(question_id, flagged)
        return self.navigation.slots()[position - 1]

    def next(self) -> int:
        self._require(SessionState.ACTIVE, op="navigate")
        if self.navigation.next():
            self.cache.record_navigation(self.navigation.current_position, relative=True)
        return self.navigation.current_position

    def previous(self) -> int:
        self._require(SessionState.ACTIVE, op="navigate")
        if self.navigation.previous():
            self.cache.record_navigation(self.navigation.current_position)
        return self.navigation.current_position

    def go_to(self, position: int) -> int:
        self._require(SessionState.ACTIVE, op="navigate")
        if self.navigation.go_to(position):
            self.cache.record_navigation(position)
        return self.navigation.current_position

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------
    async def pause(self) -> SessionSnapshot:
        """
        Pause the attempt.

        The backend call is best-effort: a transient failure still leaves the
        session paused locally. An explicit rejection restores active and
        triggers a reconciliation.

        Raises:
            InvalidStateError: not active
            PauseNotAllowedError: no pauses left
        """
        self._require(SessionState.ACTIVE, op="pause")
        if not self.policy.can_pause(self.session.pauses_remaining):
            raise PauseNotAllowedError(
                f"No pauses remaining ({self.policy.max_pauses} allowed)"
            )

        generation = self._generation
        session = self.session
        self._stop_machinery()
        self._transition(SessionState.PAUSED)

        flush = await self.cache.flush_all(self.config.pause_flush_timeout)
        if not flush.drained:
            self._emit("flush_incomplete", pending=flush.pending)
        if generation != self._generation or self._state != SessionState.PAUSED:
            return self.snapshot()

        response: Optional[TimeStatus] = None
        try:
            response = await self.api.pause(session)
        except TransientError as e:
            logger.warning(f"⚠️ Pause not confirmed by server, paused locally: {e}")
            self.last_error = str(e)
        except RejectedError as e:
            logger.error(f"❌ Pause rejected: {e}")
            self.last_error = str(e)
            if generation == self._generation and self._state == SessionState.PAUSED:
                self._transition(SessionState.ACTIVE)
                self._resume_machinery()
                self._schedule(self.reconcile())
            raise

        if generation != self._generation:
            return self.snapshot()

        if response is not None and response.pauses_remaining is not None:
            session.pauses_remaining = response.pauses_remaining
        elif session.pauses_remaining is not None:
            session.pauses_remaining = max(0, session.pauses_remaining - 1)

        logger.info(
            f"⏸️ Paused with {format_time(self.timer.local_remaining)} left, "
            f"pauses remaining: {session.pauses_remaining if session.pauses_remaining is not None else 'unlimited'}"
        )
        return self.snapshot()

    async def resume(self) -> SessionSnapshot:
        """
        Resume a paused attempt after re-reading the server's clock.

        Ends in submitted or expired instead of active when the server says
        the attempt finished during the pause.

        Raises:
            InvalidStateError: not paused
            TransientError: server unreachable, still paused
        """
        self._require(SessionState.PAUSED, op="resume")
        generation = self._generation
        session = self.session

        try:
            response = await self.api.resume(session)
        except SessionGoneError as e:
            logger.warning(f"⚠️ Session gone on resume: {e}")
            self._finish_external(None)
            return self.snapshot()
        except RejectedError as e:
            self.last_error = str(e)
            self._schedule(self.reconcile())
            raise
        except TransientError as e:
            self.last_error = str(e)
            logger.warning(f"⚠️ Resume failed, still paused: {e}")
            raise

        if generation != self._generation or self._state != SessionState.PAUSED:
            return self.snapshot()

        if response.status.is_submitted:
            self._finish_external(response)
            return self.snapshot()
        if response.status == ServerStatus.EXPIRED:
            self._expire()
            return self.snapshot()

        if response.pauses_remaining is not None:
            session.pauses_remaining = response.pauses_remaining
        self.timer.apply(response)
        if self._state != SessionState.PAUSED:
            return self.snapshot()

        # Forced heartbeat before the countdown restarts
        await self.timer.resume()
        if generation != self._generation or self._state != SessionState.PAUSED:
            return self.snapshot()

        self._transition(SessionState.ACTIVE)
        self.cache.start()
        self.navigation.resume_clock()
        if self.cache.pending_count:
            self._schedule(self.cache.process_once())
        logger.info(f"▶️ Resumed with {format_time(self.timer.local_remaining)} left")
        return self.snapshot()

    # ------------------------------------------------------------------
    # Submit / review / abandon
    # ------------------------------------------------------------------
    async def submit(self) -> SubmitOutcome:
        """
        Submit the attempt exactly once.

        Concurrent callers (double click, auto-submit racing a manual submit)
        share one submission and observe the same outcome.

        Raises:
            InvalidStateError: nothing to submit
            SubmissionError: submission failed after retries
        """
        if self._submit_task is not None:
            return await asyncio.shield(self._submit_task)
        if self._state in TERMINAL_STATES and self._outcome is not None:
            return self._outcome
        self._require(SessionState.ACTIVE, SessionState.EXPIRED, op="submit")

        self._submit_task = asyncio.create_task(self._do_submit())
        return await asyncio.shield(self._submit_task)

    async def _do_submit(self) -> SubmitOutcome:
        prior_state = self._state
        generation = self._generation
        session = self.session

        self._stop_machinery()
        self._transition(SessionState.SUBMITTING)

        flush = await self.cache.flush_all(self.config.flush_timeout)
        if not flush.drained:
            logger.warning(
                f"⚠️ Submitting with {flush.pending} unsynced write(s); "
                "final answers travel with the submit"
            )
            self._emit("flush_incomplete", pending=flush.pending)

        answers = self.cache.answers()
        logger.info(f"📤 Submitting session {session.session_id} ({len(answers)} answers)")

        try:
            result = await call_with_retries(
                self.api.submit,
                session,
                answers,
                max_attempts=self.config.submit_max_attempts,
                backoff_base=self.config.sync_backoff_base,
                backoff_max=self.config.sync_backoff_max,
            )
        except SessionGoneError as e:
            logger.warning(f"⚠️ Session closed by server before submit: {e}")
            if generation == self._generation:
                self._finish_external(None, during_submit=True)
            return self._outcome or SubmitOutcome(submitted_externally=True)
        except (SubmissionError, RejectedError) as e:
            logger.error(f"❌ Submit failed: {e}")
            if generation == self._generation:
                self.last_error = str(e)
                self._transition(prior_state)
                if prior_state == SessionState.ACTIVE:
                    self._resume_machinery()
                if isinstance(e, RejectedError):
                    self._schedule(self.reconcile())
            self._submit_task = None
            raise

        outcome = SubmitOutcome(
            result=result,
            flush_drained=flush.drained,
            unsynced_writes=self.cache.pending_count,
        )
        if generation != self._generation:
            return outcome

        self.cache.clear_pending()
        session.session_token = None
        self._outcome = outcome
        self._transition(SessionState.SUBMITTED)
        self._emit("submitted", outcome=outcome)
        logger.info(
            f"🏁 Session {session.session_id} submitted"
            + (f", score {result.score}" if result.score is not None else "")
        )
        return outcome

    def review(self) -> SessionSnapshot:
        """Enter the read-only review of a submitted attempt."""
        self._require(SessionState.SUBMITTED, op="review")
        self._transition(SessionState.REVIEWING)
        return self.snapshot()

    async def abandon(self, discard_attempt: bool = False) -> SessionSnapshot:
        """
        Leave the attempt and return to idle.

        Pending writes get one short best-effort flush; nothing is retried
        afterwards. In-flight calls are not aborted, their responses are
        ignored.

        Args:
            discard_attempt: Also tell the backend to abandon the attempt
        """
        if self._state == SessionState.IDLE:
            return self.snapshot()

        prior_state = self._state
        session = self.session
        self._generation += 1
        self._stop_machinery()

        if session is not None and prior_state not in TERMINAL_STATES:
            if self.cache.pending_count:
                await self.cache.flush_all(self.config.abandon_flush_timeout)
            if discard_attempt:
                try:
                    await self.api.abandon(session)
                except QuizSessionError as e:
                    logger.warning(f"⚠️ Abandon not confirmed by server: {e}")
        self.cache.close()

        logger.info(f"🚪 Abandoned session {session.session_id if session else ''}".rstrip())
        self._reset()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reconcile(self) -> SessionSnapshot:
        """
        Re-read time, answers and flags from the backend.

        Slots with queued writes keep their local values; everything else
        adopts the server's view.
        """
        if self._state not in (
            SessionState.ACTIVE,
            SessionState.PAUSED,
            SessionState.EXPIRED,
        ):
            return self.snapshot()

        generation = self._generation
        session = self.session
        try:
            time_status = await self.api.time_remaining(session)
            statuses = await self.api.questions_status(session)
            flagged = set(await self.api.flagged_questions(session))
        except SessionGoneError as e:
            logger.warning(f"⚠️ Session gone during reconcile: {e}")
            if generation == self._generation:
                self._finish_external(None)
            return self.snapshot()
        except QuizSessionError as e:
            logger.warning(f"⚠️ Reconcile failed: {e}")
            if generation == self._generation:
                self.last_error = str(e)
            return self.snapshot()

        if generation != self._generation:
            return self.snapshot()
        if time_status.status.is_submitted:
            self._finish_external(time_status)
            return self.snapshot()

        updated = 0
        for question in statuses.questions:
            if self.cache.adopt_server_value(
                question.question_id,
                question.answer,
                question.is_flagged or question.question_id in flagged,
            ):
                updated += 1
        logger.info(f"🔄 Reconciled {updated} slot(s) with server")

        if time_status.status == ServerStatus.EXPIRED and self._state in (
            SessionState.ACTIVE,
            SessionState.PAUSED,
        ):
            self._expire()
        elif self._state == SessionState.ACTIVE:
            self.timer.apply(time_status)
        elif self._state == SessionState.PAUSED:
            self.timer.reconcile(time_status.time_remaining_seconds)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Callbacks from timer and cache
    # ------------------------------------------------------------------
    def _on_time_expired(self) -> None:
        if self._state not in (SessionState.ACTIVE, SessionState.PAUSED):
            return
        self._expire()

    def _on_server_status(self, response: TimeStatus) -> None:
        self._finish_external(response)

    def _on_connectivity(self, degraded: bool) -> None:
        self.connectivity_degraded = degraded
        self._emit("connectivity_degraded" if degraded else "connectivity_restored")

    def _on_background_rejection(self, error: QuizSessionError) -> None:
        self.last_error = str(error)
        self._schedule(self.reconcile())

    def _on_cache_event(self, event: str, data: Dict[str, Any]) -> None:
        if event == "rejected":
            write: PendingWrite = data["write"]
            self.last_error = str(data["error"])
            self._emit(
                "sync_rejected",
                kind=write.kind.value,
                question_id=write.question_id,
                error=self.last_error,
            )
            self._schedule(self.reconcile())
        elif event == "sync_degraded":
            self._emit("sync_degraded", pending=data["pending"])

    async def _send_write(self, write: PendingWrite) -> Any:
        session = self.session
        if session is None:
            raise InvalidStateError("No session to sync")

        if write.kind == WriteKind.SAVE_ANSWER:
            return await self.api.save_answer(
                session,
                write.question_id,
                write.payload["answer"],
                write.sequence,
                question_type=write.payload.get("question_type"),
                time_spent_seconds=write.payload.get("time_spent_seconds", 0),
            )
        if write.kind == WriteKind.FLAG:
            return await self.api.flag_question(session, write.question_id)
        if write.kind == WriteKind.UNFLAG:
            return await self.api.unflag_question(session, write.question_id)
        if write.payload.get("relative"):
            return await self.api.next_question(session)
        return await self.api.go_to_question(session, write.payload["position"])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _build(self, response: StartResponse, mode: QuizMode) -> None:
        slots = [
            QuestionSlot(
                position=position,
                question_id=question.question_id,
                question_type=question.question_type,
            )
            for position, question in enumerate(response.questions, start=1)
        ]
        policy = policy_for(
            mode, response.time_limit_seconds, response.pause_info, self.config
        )

        time_limit = response.time_limit_seconds if policy.time_limited else None
        remaining = None
        if policy.time_limited:
            remaining = response.time_remaining_seconds
            if remaining is None:
                remaining = time_limit

        self.policy = policy
        self.session = QuizSession(
            session_id=response.session_id,
            quiz_id=response.quiz_id,
            mode=mode,
            total_questions=len(slots),
            time_limit_seconds=time_limit,
            started_at=response.started_at,
            state=self._state,
            server_time_remaining_seconds=remaining,
            local_time_remaining_seconds=remaining,
            session_token=response.session_token,
            pauses_remaining=policy.initial_pauses_remaining(response.pause_info),
        )
        self.cache.load(slots)
        self.navigation.load(slots, response.current_position)

        session = self.session
        self.timer = TimerSynchronizer(
            heartbeat=lambda: self.api.heartbeat(session),
            policy=policy,
            on_expired=self._on_time_expired,
            on_server_status=self._on_server_status,
            on_connectivity=self._on_connectivity,
            on_error=self._on_background_rejection,
            clock=self._clock,
            config=self.config,
        )
        self.timer.reconcile(remaining)

        self.connectivity_degraded = False
        self.last_error = None
        self._outcome = None
        self._submit_task = None

    async def _load_question_states(self) -> None:
        """Adopt saved answers, flags and time spent after a restore."""
        session = self.session
        try:
            statuses = await self.api.questions_status(session)
            flagged = set(await self.api.flagged_questions(session))
        except TransientError as e:
            logger.warning(f"⚠️ Restored without question states: {e}")
            return

        for question in statuses.questions:
            if not self.cache.adopt_server_value(
                question.question_id,
                question.answer,
                question.is_flagged or question.question_id in flagged,
            ):
                continue
            self.cache.get_slot(question.question_id).time_spent_seconds = (
                question.time_spent_seconds
            )
        self.navigation.load(
            [self.cache.get_slot(qid) for qid in self._question_ids()],
            statuses.current_position,
        )

    def _abort_start(self, generation: int, error: Exception) -> None:
        """Return to idle after a failed start or restore, unless superseded."""
        if generation != self._generation:
            return
        self._reset()
        self.last_error = str(error)

    def _question_ids(self) -> List[str]:
        return [view.question_id for view in self.navigation.slots()]

    def _activate(self) -> None:
        self._transition(SessionState.ACTIVE)
        self._resume_machinery()

    def _resume_machinery(self) -> None:
        if self.timer is not None:
            self.timer.start()
        self.cache.start()
        self.navigation.resume_clock()

    def _stop_machinery(self) -> None:
        if self.timer is not None:
            self.timer.stop()
            self._sync_times()
        self.cache.stop()
        self.navigation.suspend_clock()

    def _expire(self) -> None:
        self._stop_machinery()
        if self.timer is not None:
            self.timer.expired = True
        self._transition(SessionState.EXPIRED)
        self._emit("time_expired")
        if self.policy is not None and self.policy.auto_submit_on_expiry:
            logger.warning("⌛ Time expired, auto-submitting")
            self._schedule(self._auto_submit())

    async def _auto_submit(self) -> None:
        try:
            await self.submit()
        except QuizSessionError as e:
            logger.error(f"❌ Auto-submit failed: {e}")
            self.last_error = str(e)

    def _finish_external(
        self, response: Optional[TimeStatus], during_submit: bool = False
    ) -> None:
        """The backend already closed the attempt (submitted, auto-submitted, gone)."""
        if self._state in TERMINAL_STATES or self._state == SessionState.IDLE:
            return
        # An in-flight submit owns the transition out of submitting
        if self._state == SessionState.SUBMITTING and not during_submit:
            return

        status = response.status if response is not None else ServerStatus.SUBMITTED
        logger.info(f"📬 Server reports session {status.value}")
        self._stop_machinery()
        unsynced = self.cache.pending_count
        self.cache.clear_pending()

        session = self.session
        self._outcome = SubmitOutcome(
            result=SubmitResult(session_id=session.session_id, status=status),
            flush_drained=unsynced == 0,
            unsynced_writes=unsynced,
            submitted_externally=True,
        )
        session.session_token = None
        self._transition(SessionState.SUBMITTED)
        self._emit("submitted", outcome=self._outcome)

    def _reset(self) -> None:
        self._stop_machinery()
        self.session = None
        self.policy = None
        self.timer = None
        self._outcome = None
        self._submit_task = None
        self.connectivity_degraded = False
        self.cache.load([])
        self.navigation.load([])
        self._transition(SessionState.IDLE)

    def _sync_times(self) -> None:
        if self.session is None or self.timer is None:
            return
        self.session.server_time_remaining_seconds = self.timer.server_remaining
        self.session.local_time_remaining_seconds = self.timer.local_remaining

    def _require(self, *states: SessionState, op: str) -> None:
        if self._state not in states:
            raise InvalidStateError(f"Cannot {op} while session is {self._state.value}")

    def _transition(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        if self.session is not None:
            self.session.state = new_state
        logger.info(f"🔀 {old_state.value} -> {new_state.value}")
        self._emit("state_changed", old=old_state.value, new=new_state.value)

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _emit(self, event: str, **data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception as e:
                logger.error(f"🔥 Listener failed on {event}: {e}", exc_info=True)
