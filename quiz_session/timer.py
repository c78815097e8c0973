"""
Session countdown reconciled against server heartbeats.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from quiz_session.config import Settings, settings as default_settings
from quiz_session.logger import setup_logger
from quiz_session.models import ServerStatus, TimeStatus
from quiz_session.policy import ModePolicy
from quiz_session.utils.exceptions import QuizSessionError, RejectedError, TransientError

logger = setup_logger(__name__)


class TimerSynchronizer:
    """
    Keeps a trustworthy time-remaining estimate and raises expiry once.

    The local countdown only interpolates between heartbeats; each
    heartbeat response replaces the estimate. Expiry is raised only from a
    server answer, never from the local clock alone.
    """

    def __init__(
        self,
        heartbeat: Callable[[], Awaitable[TimeStatus]],
        policy: ModePolicy,
        on_expired: Callable[[], None],
        on_server_status: Callable[[TimeStatus], None],
        on_connectivity: Callable[[bool], None],
        on_error: Optional[Callable[[QuizSessionError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        config: Optional[Settings] = None,
    ) -> None:
        """
        Args:
            heartbeat: Coroutine function asking the server for time remaining.
            policy: Mode policy of the session.
            on_expired: Called once when the server reports no time left.
            on_server_status: Called when the server reports a terminal status.
            on_connectivity: Called with True when degraded, False when restored.
            on_error: Called when a heartbeat is rejected.
            clock: Monotonic clock in seconds.
        """
        config = config or default_settings
        self._heartbeat = heartbeat
        self.policy = policy
        self._on_expired = on_expired
        self._on_server_status = on_server_status
        self._on_connectivity = on_connectivity
        self._on_error = on_error
        self._clock = clock

        self.heartbeat_interval = policy.heartbeat_interval
        self.tick_interval = config.countdown_tick
        self.failure_threshold = config.heartbeat_failure_threshold

        self.server_remaining: Optional[int] = None
        self.local_remaining: Optional[int] = None
        self.consecutive_failures = 0
        self.degraded = False
        self.expired = False

        self._anchor_value: Optional[int] = None
        self._anchor_at: Optional[float] = None
        self._last_heartbeat_at: Optional[float] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._heartbeat_task is not None

    # ------------------------------------------------------------------
    # Local countdown
    # ------------------------------------------------------------------
    def reconcile(self, seconds: Optional[int]) -> None:
        """Replace the local estimate with an authoritative value."""
        if not self.policy.time_limited or seconds is None:
            return
        seconds = max(0, int(seconds))
        self.server_remaining = seconds
        self.local_remaining = seconds
        self._anchor(seconds)

    def _anchor(self, seconds: int) -> None:
        self._anchor_value = seconds
        self._anchor_at = self._clock()

    def tick(self) -> Optional[int]:
        """
        Advance the local estimate from the monotonic clock.

        Returns:
            Local seconds remaining (None when untimed)
        """
        if not self.policy.time_limited or self._anchor_value is None:
            return self.local_remaining

        elapsed = int(self._clock() - self._anchor_at)
        estimate = max(0, self._anchor_value - elapsed)
        if self.local_remaining is None or estimate < self.local_remaining:
            self.local_remaining = estimate
        return self.local_remaining

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------
    async def heartbeat_once(self) -> Optional[TimeStatus]:
        """
        Ask the server for authoritative time and apply the answer.

        Returns:
            The server response, or None if the call failed
        """
        self._last_heartbeat_at = self._clock()
        try:
            response = await self._heartbeat()
        except TransientError as e:
            self.consecutive_failures += 1
            logger.warning(
                f"💔 Heartbeat failed ({self.consecutive_failures} in a row): {e}"
            )
            if self.consecutive_failures >= self.failure_threshold and not self.degraded:
                self.degraded = True
                logger.warning("📡 Connectivity degraded, keeping local countdown")
                self._on_connectivity(True)
            return None
        except RejectedError as e:
            logger.error(f"❌ Heartbeat rejected: {e}")
            if self._on_error is not None:
                self._on_error(e)
            return None

        self.consecutive_failures = 0
        if self.degraded:
            self.degraded = False
            logger.info("📡 Connectivity restored")
            self._on_connectivity(False)

        self.apply(response)
        return response

    def apply(self, response: TimeStatus) -> None:
        """Apply a server time/status answer (heartbeat, resume, time-remaining)."""
        if response.status.is_submitted:
            self._on_server_status(response)
            return

        self.reconcile(response.time_remaining_seconds)

        if not self.policy.time_limited:
            return
        if response.status == ServerStatus.EXPIRED or (
            response.time_remaining_seconds is not None
            and response.time_remaining_seconds <= 0
        ):
            self._fire_expired()

    def _fire_expired(self) -> None:
        if self.expired:
            return
        self.expired = True
        self.local_remaining = 0
        logger.warning("⌛ Server reports no time remaining")
        self._on_expired()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start heartbeats (and the countdown for timed sessions)."""
        if self.local_remaining is not None:
            self._anchor(self.local_remaining)
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if self.policy.time_limited and self._countdown_task is None:
            self._countdown_task = asyncio.create_task(self._countdown_loop())

    def stop(self) -> None:
        """Freeze the countdown and stop heartbeats."""
        self.tick()
        for task in (self._countdown_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
        self._countdown_task = None
        self._heartbeat_task = None

    async def resume(self) -> Optional[TimeStatus]:
        """Force a heartbeat, then restart the loops unless it ended the session."""
        response = await self.heartbeat_once()
        if not self.expired and not (response is not None and response.status.is_submitted):
            self.start()
        return response

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception as e:
                logger.error(f"🔥 Heartbeat loop error: {e}", exc_info=True)

    async def _countdown_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                remaining = self.tick()
                if remaining == 0 and not self.expired and self._heartbeat_due_early():
                    # Local clock hit zero: ask the server rather than assume
                    await self.heartbeat_once()
            except Exception as e:
                logger.error(f"🔥 Countdown loop error: {e}", exc_info=True)

    def _heartbeat_due_early(self) -> bool:
        if self._last_heartbeat_at is None:
            return True
        return self._clock() - self._last_heartbeat_at >= self.tick_interval
