"""
Tests for the scoring circuit breaker.
"""

import pytest
import asyncio
from datetime import datetime, timedelta
from unittest.mock import Mock

from grading_circuit_breaker import (
    CircuitOpenError,
    CircuitState,
    ScoringCallStats,
    ScoringCircuitBreaker,
)
from grading_config import ScoringConfig
from grading_errors import GradingError


async def model_unavailable():
    raise RuntimeError("model unavailable")


async def score_ok():
    return 42.0


async def trip(breaker, times=2):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.call(model_unavailable)


def expire_open_window(breaker):
    breaker.stats.opened_at = datetime.now() - timedelta(seconds=1)


class TestScoringCallStats:
    """Test ScoringCallStats."""

    def test_initial_stats(self):
        stats = ScoringCallStats()

        assert stats.calls == 0
        assert stats.failure_rate == 0.0
        assert stats.average_latency == 0.0

    def test_consecutive_tracking(self):
        """Test consecutive success and failure counters reset each other."""
        stats = ScoringCallStats()

        stats.record(False, 0.2)
        stats.record(False, 0.4)
        assert stats.consecutive_failures == 2
        assert stats.failure_rate == 1.0

        stats.record(True, 0.3)
        assert stats.consecutive_failures == 0
        assert stats.consecutive_successes == 1
        assert stats.failure_rate == pytest.approx(2 / 3)
        assert stats.average_latency == pytest.approx(0.3)


class TestScoringCircuitBreaker:
    """Test ScoringCircuitBreaker state transitions."""

    @pytest.fixture
    def breaker(self):
        return ScoringCircuitBreaker(
            failure_threshold=2,
            success_threshold=1,
            recovery_timeout=0.1,
            half_open_max_calls=1,
            name="agent",
        )

    def test_open_error_is_grading_error(self):
        error = CircuitOpenError("agent", 3.0)

        assert isinstance(error, GradingError)
        assert "agent" in str(error)
        assert error.retry_in == 3.0

    @pytest.mark.asyncio
    async def test_successful_calls(self, breaker):
        result = await breaker.call(score_ok)

        assert result == 42.0
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.successes == 1

    @pytest.mark.asyncio
    async def test_circuit_opens_on_failures(self, breaker):
        """Test circuit opens once consecutive failures reach the threshold."""
        await trip(breaker, times=1)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, times=1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.opened_at is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self, breaker):
        await trip(breaker, times=1)
        await breaker.call(score_ok)
        await trip(breaker, times=1)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, breaker):
        """Test an open circuit never awaits the scorer."""
        await trip(breaker)

        func = Mock()
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(func)

        func.assert_not_called()
        assert breaker.stats.rejections == 1
        assert 0 < exc_info.value.retry_in <= 0.1

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, breaker):
        await trip(breaker)

        await asyncio.sleep(0.15)

        assert await breaker.call(score_ok) == 42.0
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.opened_at is None

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, breaker):
        """Test a failed trial call reopens the circuit with a fresh window."""
        await trip(breaker)
        expire_open_window(breaker)

        await trip(breaker, times=1)

        assert breaker.state == CircuitState.OPEN
        assert (datetime.now() - breaker.stats.opened_at).total_seconds() < 1

    @pytest.mark.asyncio
    async def test_trial_call_limit(self, breaker):
        """Test only the configured number of trial calls run while half-open."""
        await trip(breaker)
        expire_open_window(breaker)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return 1.0

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(score_ok)

        release.set()
        assert await trial == 1.0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_counts_as_failure(self, breaker):
        """Test a scoring timeout is counted against the scorer."""
        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(breaker.call(hang), timeout=0.01)

        assert breaker.stats.failures == 1

    @pytest.mark.asyncio
    async def test_state_listeners(self, breaker):
        listener = Mock()
        breaker.on_state_change(listener)

        await trip(breaker)

        listener.assert_called_once_with(CircuitState.CLOSED, CircuitState.OPEN)

    @pytest.mark.asyncio
    async def test_listener_may_inspect_breaker(self, breaker):
        """Test listeners run outside the lock and can read the status."""
        seen = []
        breaker.on_state_change(lambda old, new: seen.append(breaker.get_status()["state"]))

        await trip(breaker)

        assert seen == ["open"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_transition(self, breaker):
        breaker.on_state_change(Mock(side_effect=ValueError("boom")))

        await trip(breaker)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await trip(breaker)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.calls == 0

    @pytest.mark.asyncio
    async def test_get_status(self, breaker):
        await trip(breaker)

        status = breaker.get_status()

        assert status["scorer"] == "agent"
        assert status["state"] == "open"
        assert status["stats"]["failures"] == 2
        assert status["stats"]["failure_rate"] == "100.0%"
        assert status["config"]["failure_threshold"] == 2
        assert "retry_in_seconds" in status

    def test_from_config(self):
        breaker = ScoringCircuitBreaker.from_config(
            ScoringConfig(failure_threshold=3, recovery_timeout=12.5), name="agent"
        )

        assert breaker.failure_threshold == 3
        assert breaker.recovery_timeout == 12.5
        assert breaker.name == "agent"
