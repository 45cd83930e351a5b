"""Tests for circuit breaker implementation."""

import asyncio
import time

import pytest

from callguard.context import ExecutionContext
from callguard.errors import (
    CircuitOpenError,
    ClassifiedError,
    DeadlineExceededError,
    ErrorClassification,
)
from callguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitMetrics,
    CircuitState,
)


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fresh_cb(clock, name="dep", **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(**{"failure_threshold": 3, "recovery_timeout": 30.0, **overrides})
    return CircuitBreaker(name, config, clock=clock)


def _failing(exc):
    async def op():
        raise exc
    return op


async def _ok():
    return "ok"


def _trip(cb, times=None):
    for _ in range(times or cb.config.failure_threshold):
        with pytest.raises(ConnectionError):
            _run(cb.call(_failing(ConnectionError("refused"))))


# ---------------------------------------------------------------------------
# CircuitBreakerConfig
# ---------------------------------------------------------------------------


class TestCircuitBreakerConfig:
    def test_defaults(self):
        cfg = CircuitBreakerConfig()
        assert cfg.failure_threshold == 5
        assert cfg.success_threshold == 2
        assert cfg.recovery_timeout == 60.0
        assert cfg.half_open_max_calls == 1

    def test_rejects_zero_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_rejects_zero_half_open_calls(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(half_open_max_calls=0)

    def test_counted_kinds_accept_strings(self):
        cfg = CircuitBreakerConfig(counted_kinds=["transient"])
        assert [k.value for k in cfg.counted_kinds] == ["transient"]


# ---------------------------------------------------------------------------
# CLOSED → OPEN → HALF_OPEN → CLOSED
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_starts_closed(self, clock):
        cb = _fresh_cb(clock)
        assert cb.state == CircuitState.CLOSED
        assert isinstance(cb.metrics, CircuitMetrics)

    def test_success_passes_through(self, clock):
        cb = _fresh_cb(clock)
        assert _run(cb.call(_ok)) == "ok"
        assert cb.metrics.successful_calls == 1

    def test_opens_at_failure_threshold(self, clock):
        cb = _fresh_cb(clock)
        _trip(cb, 2)
        assert cb.state == CircuitState.CLOSED
        _trip(cb, 1)
        assert cb.state == CircuitState.OPEN
        for _ in range(3):
            with pytest.raises(CircuitOpenError):
                _run(cb.call(_ok))
        assert cb.metrics.state_changes == 1

    def test_success_resets_failure_count(self, clock):
        cb = _fresh_cb(clock)
        _trip(cb, 2)
        _run(cb.call(_ok))
        assert cb.failure_count == 0
        _trip(cb, 2)
        assert cb.state == CircuitState.CLOSED

    def test_open_rejects_without_invoking(self, clock):
        cb = _fresh_cb(clock)
        _trip(cb)
        clock.advance(10)

        calls = []

        async def op():
            calls.append(1)

        with pytest.raises(CircuitOpenError) as exc_info:
            _run(cb.call(op))
        assert calls == []
        assert exc_info.value.name == "dep"
        assert exc_info.value.until is not None
        assert cb.metrics.rejected_calls == 1

    def test_trial_after_recovery_timeout_closes(self, clock):
        cb = _fresh_cb(clock, success_threshold=1)
        _trip(cb)
        clock.advance(10)
        with pytest.raises(CircuitOpenError):
            _run(cb.call(_ok))

        clock.advance(21)
        assert _run(cb.call(_ok)) == "ok"
        assert cb.state == CircuitState.CLOSED

    def test_needs_success_threshold_to_close(self, clock):
        cb = _fresh_cb(clock, success_threshold=2)
        _trip(cb)
        clock.advance(31)
        _run(cb.call(_ok))
        assert cb.state == CircuitState.HALF_OPEN
        _run(cb.call(_ok))
        assert cb.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        cb = _fresh_cb(clock, success_threshold=2)
        _trip(cb)
        clock.advance(31)
        _run(cb.call(_ok))
        assert cb.success_count == 1
        with pytest.raises(ConnectionError):
            _run(cb.call(_failing(ConnectionError("still down"))))
        assert cb.state == CircuitState.OPEN
        assert cb.success_count == 0
        # Recovery timeout restarts from the reopen.
        clock.advance(10)
        with pytest.raises(CircuitOpenError):
            _run(cb.call(_ok))

    def test_state_stays_open_until_next_call(self, clock):
        cb = _fresh_cb(clock)
        _trip(cb)
        clock.advance(120)
        assert cb.state == CircuitState.OPEN


# ---------------------------------------------------------------------------
# Half-open trial limits
# ---------------------------------------------------------------------------


class TestHalfOpenTrials:
    def test_concurrent_trials_limited(self, clock):
        cb = _fresh_cb(clock, half_open_max_calls=1, success_threshold=1)
        _trip(cb)
        clock.advance(31)

        async def scenario():
            gate = asyncio.Event()

            async def slow():
                await gate.wait()
                return "recovered"

            first = asyncio.create_task(cb.call(slow))
            await asyncio.sleep(0)
            with pytest.raises(CircuitOpenError):
                await cb.call(_ok)
            gate.set()
            return await first

        assert _run(scenario()) == "recovered"
        assert cb.state == CircuitState.CLOSED

    def test_stale_trial_does_not_close_new_window(self, clock):
        cb = _fresh_cb(clock, half_open_max_calls=2, success_threshold=1)
        _trip(cb)
        clock.advance(31)

        async def scenario():
            stale_gate = asyncio.Event()
            fresh_gate = asyncio.Event()

            async def blocked(gate):
                await gate.wait()
                return "ok"

            stale = asyncio.create_task(cb.call(lambda: blocked(stale_gate)))
            await asyncio.sleep(0.05)
            with pytest.raises(ConnectionError):
                await cb.call(_failing(ConnectionError("down")))
            assert cb.state == CircuitState.OPEN

            clock.advance(31)
            fresh = asyncio.create_task(cb.call(lambda: blocked(fresh_gate)))
            await asyncio.sleep(0.05)
            assert cb.state == CircuitState.HALF_OPEN

            stale_gate.set()
            await stale
            assert cb.state == CircuitState.HALF_OPEN

            fresh_gate.set()
            await fresh
            assert cb.state == CircuitState.CLOSED

        _run(scenario())


# ---------------------------------------------------------------------------
# Failure counting
# ---------------------------------------------------------------------------


class TestFailureCounting:
    def test_permanent_errors_do_not_count(self, clock):
        cb = _fresh_cb(clock)
        for _ in range(10):
            with pytest.raises(ValueError):
                _run(cb.call(_failing(ValueError("bad input"))))
        assert cb.state == CircuitState.CLOSED
        assert cb.metrics.ignored_calls == 10
        assert cb.metrics.failed_calls == 0

    def test_business_errors_do_not_count(self, clock):
        cb = _fresh_cb(clock)
        exc = ClassifiedError("insufficient funds", ErrorClassification.business("insufficient_funds"))
        for _ in range(5):
            with pytest.raises(ClassifiedError):
                _run(cb.call(_failing(exc)))
        assert cb.state == CircuitState.CLOSED

    def test_systemic_errors_count(self, clock):
        cb = _fresh_cb(clock)
        exc = ClassifiedError("pool exhausted", ErrorClassification.systemic("pool_exhausted"))
        for _ in range(3):
            with pytest.raises(ClassifiedError):
                _run(cb.call(_failing(exc)))
        assert cb.state == CircuitState.OPEN

    def test_expected_exceptions_filter(self, clock):
        cb = _fresh_cb(clock, expected_exceptions=(ConnectionError,))
        for _ in range(5):
            with pytest.raises(TimeoutError):
                _run(cb.call(_failing(TimeoutError("slow"))))
        assert cb.state == CircuitState.CLOSED
        assert cb.should_count_failure(ConnectionError("x")) is True

    def test_ignored_failure_releases_trial_slot(self, clock):
        cb = _fresh_cb(clock, success_threshold=1)
        _trip(cb)
        clock.advance(31)
        with pytest.raises(ValueError):
            _run(cb.call(_failing(ValueError("bad request"))))
        assert cb.state == CircuitState.HALF_OPEN
        assert _run(cb.call(_ok)) == "ok"
        assert cb.state == CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Context, listeners and manual control
# ---------------------------------------------------------------------------


class TestContextAndControl:
    def test_expired_deadline_rejects_before_invoking(self, clock):
        cb = _fresh_cb(clock)
        ctx = ExecutionContext(correlation_id="c-1", deadline=time.monotonic() - 1)
        calls = []

        async def op():
            calls.append(1)

        with pytest.raises(DeadlineExceededError):
            _run(cb.call(op, ctx))
        assert calls == []
        assert cb.metrics.total_calls == 0

    def test_transition_listener_called(self, clock):
        seen = []
        cb = CircuitBreaker(
            "dep",
            CircuitBreakerConfig(failure_threshold=1),
            clock=clock,
            on_transition=lambda breaker, old, new: seen.append((old, new)),
        )
        _trip(cb, 1)
        assert seen == [(CircuitState.CLOSED, CircuitState.OPEN)]

    def test_failing_listener_does_not_break_call(self, clock):
        def boom(*args):
            raise RuntimeError("listener down")

        cb = CircuitBreaker("dep", CircuitBreakerConfig(failure_threshold=1), clock=clock, on_transition=boom)
        _trip(cb, 1)
        assert cb.state == CircuitState.OPEN

    def test_force_open_and_reset(self, clock):
        cb = _fresh_cb(clock)
        cb.force_open()
        assert cb.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            _run(cb.call(_ok))
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert _run(cb.call(_ok)) == "ok"

    def test_sync_operation_runs_in_thread(self, clock):
        cb = _fresh_cb(clock)
        assert _run(cb.call(lambda: 42)) == 42

    def test_call_sync(self, clock):
        cb = _fresh_cb(clock, failure_threshold=1)
        assert cb.call_sync(lambda: "sync") == "sync"

        def fail():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            cb.call_sync(fail)
        with pytest.raises(CircuitOpenError):
            cb.call_sync(lambda: "never")

    def test_to_dict(self, clock):
        cb = _fresh_cb(clock)
        _trip(cb)
        data = cb.to_dict()
        assert data["name"] == "dep"
        assert data["state"] == "open"
        assert data["metrics"]["failed_calls"] == 3
        assert data["config"]["failure_threshold"] == 3
        assert data["opened_at"] is not None
