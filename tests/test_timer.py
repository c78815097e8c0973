"""
Unit Tests for the Timer Synchronizer
Tests for: reconciliation, monotonic countdown, expiry latch, connectivity
"""
import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import pytest

from quiz_session.api.client import SessionApiClient
from quiz_session.models import QuizMode, QuizSession, ServerStatus, TimeStatus
from quiz_session.policy import policy_for
from quiz_session.timer import TimerSynchronizer
from quiz_session.utils.exceptions import RejectedError, TransientError

from conftest import FakeClock, fast_settings


class HeartbeatScript:
    """Heartbeat coroutine returning queued responses or raising queued errors."""

    def __init__(self):
        self.responses: List[object] = []
        self.calls = 0

    def push(self, *items):
        self.responses.extend(items)

    async def __call__(self) -> TimeStatus:
        self.calls += 1
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class Recorder:
    def __init__(self):
        self.expired = 0
        self.statuses: List[TimeStatus] = []
        self.connectivity: List[bool] = []
        self.errors: List[Exception] = []

    def on_expired(self):
        self.expired += 1

    def on_server_status(self, response):
        self.statuses.append(response)

    def on_connectivity(self, degraded):
        self.connectivity.append(degraded)

    def on_error(self, error):
        self.errors.append(error)


def status(remaining: Optional[int], state: ServerStatus = ServerStatus.ACTIVE) -> TimeStatus:
    return TimeStatus(status=state, time_remaining_seconds=remaining)


def make_timer(mode=QuizMode.EXAM, time_limit=1800, **overrides):
    clock = FakeClock()
    heartbeat = HeartbeatScript()
    recorder = Recorder()
    config = fast_settings(**overrides)
    timer = TimerSynchronizer(
        heartbeat=heartbeat,
        policy=policy_for(mode, time_limit, config=config),
        on_expired=recorder.on_expired,
        on_server_status=recorder.on_server_status,
        on_connectivity=recorder.on_connectivity,
        on_error=recorder.on_error,
        clock=clock,
        config=config,
    )
    timer.reconcile(time_limit)
    return timer, heartbeat, recorder, clock


class TestCountdown:
    def test_tick_interpolates_from_anchor(self):
        timer, _, _, clock = make_timer()

        clock.advance(90)

        assert timer.tick() == 1710

    def test_local_estimate_never_increases(self):
        timer, _, _, clock = make_timer()
        clock.advance(100)
        timer.tick()

        # Clock adjustments backwards must not add time
        clock.now -= 50

        assert timer.tick() == 1700

    def test_countdown_bottoms_out_at_zero(self):
        timer, _, recorder, clock = make_timer(time_limit=30)

        clock.advance(45)

        assert timer.tick() == 0
        # The local clock alone never declares expiry
        assert recorder.expired == 0

    def test_reconcile_replaces_estimate(self):
        timer, _, _, clock = make_timer()
        clock.advance(100)
        timer.tick()

        timer.reconcile(1750)

        assert timer.local_remaining == 1750
        assert timer.server_remaining == 1750

    def test_stop_freezes_countdown(self):
        timer, _, _, clock = make_timer()
        clock.advance(10)
        timer.stop()
        frozen = timer.local_remaining

        clock.advance(500)

        assert timer.local_remaining == frozen == 1790

    def test_practice_is_untimed(self):
        timer, _, _, clock = make_timer(mode=QuizMode.PRACTICE)

        clock.advance(100)
        timer.reconcile(500)

        assert timer.tick() is None
        assert timer.local_remaining is None


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeat_reconciles_time(self):
        timer, heartbeat, _, clock = make_timer()
        clock.advance(60)
        timer.tick()
        heartbeat.push(status(1735))

        await timer.heartbeat_once()

        assert timer.local_remaining == 1735

    @pytest.mark.asyncio
    async def test_zero_remaining_fires_expiry_once(self):
        timer, heartbeat, recorder, _ = make_timer()
        heartbeat.push(status(0), status(0, ServerStatus.EXPIRED))

        await timer.heartbeat_once()
        await timer.heartbeat_once()

        assert recorder.expired == 1
        assert timer.expired is True
        assert timer.local_remaining == 0

    @pytest.mark.asyncio
    async def test_submitted_status_is_reported(self):
        timer, heartbeat, recorder, _ = make_timer()
        heartbeat.push(status(None, ServerStatus.AUTO_SUBMITTED))

        await timer.heartbeat_once()

        assert [s.status for s in recorder.statuses] == [ServerStatus.AUTO_SUBMITTED]
        assert recorder.expired == 0

    @pytest.mark.asyncio
    async def test_consecutive_failures_degrade_then_restore(self):
        timer, heartbeat, recorder, _ = make_timer(heartbeat_failure_threshold=2)
        heartbeat.push(
            TransientError("timeout"),
            TransientError("timeout"),
            TransientError("timeout"),
            status(1700),
        )

        for _ in range(3):
            assert await timer.heartbeat_once() is None
        await timer.heartbeat_once()

        assert recorder.connectivity == [True, False]
        assert timer.consecutive_failures == 0
        assert timer.local_remaining == 1700

    @pytest.mark.asyncio
    async def test_rejected_heartbeat_is_reported(self):
        timer, heartbeat, recorder, _ = make_timer()
        heartbeat.push(RejectedError("forbidden", status_code=403))

        await timer.heartbeat_once()

        assert len(recorder.errors) == 1
        assert recorder.connectivity == []

    @pytest.mark.asyncio
    async def test_practice_never_expires(self):
        timer, heartbeat, recorder, _ = make_timer(mode=QuizMode.PRACTICE)
        heartbeat.push(status(0))

        await timer.heartbeat_once()

        assert recorder.expired == 0


class TestLoops:
    @pytest.mark.asyncio
    async def test_resume_forces_heartbeat_and_starts_loops(self):
        timer, heartbeat, _, _ = make_timer()
        heartbeat.push(status(1200))

        await timer.resume()

        assert heartbeat.calls == 1
        assert timer.running is True
        assert timer.local_remaining == 1200
        timer.stop()
        assert timer.running is False

    @pytest.mark.asyncio
    async def test_resume_into_expiry_does_not_start(self):
        timer, heartbeat, recorder, _ = make_timer()
        heartbeat.push(status(0, ServerStatus.EXPIRED))

        await timer.resume()

        assert recorder.expired == 1
        assert timer.running is False


class TestUnexpectedResponses:
    """A malformed heartbeat reply never stops the heartbeat"""

    @pytest.mark.asyncio
    async def test_html_heartbeat_counts_as_failure(self):
        session = QuizSession(
            session_id="sess-1",
            quiz_id="quiz-1",
            mode=QuizMode.EXAM,
            total_questions=1,
            started_at=datetime.now(timezone.utc),
        )
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, text="<html>captive portal</html>", headers={"content-type": "text/html"}
            )
        )
        api = SessionApiClient(
            client=httpx.AsyncClient(transport=transport, base_url="http://backend.test")
        )
        timer, _, recorder, _ = make_timer(heartbeat_failure_threshold=2)
        timer._heartbeat = lambda: api.heartbeat(session)

        assert await timer.heartbeat_once() is None
        assert await timer.heartbeat_once() is None

        assert timer.consecutive_failures == 2
        assert recorder.connectivity == [True]
        await api.aclose()

    @pytest.mark.asyncio
    async def test_heartbeat_loop_keeps_running_after_error(self):
        calls = []

        async def heartbeat():
            calls.append(1)
            if len(calls) == 1:
                raise ValueError("unexpected body")
            return status(1500)

        timer, _, _, _ = make_timer(heartbeat_interval=0.01)
        timer._heartbeat = heartbeat

        timer.start()
        await asyncio.sleep(0.1)
        timer.stop()

        assert len(calls) >= 2
        assert timer.local_remaining == 1500
