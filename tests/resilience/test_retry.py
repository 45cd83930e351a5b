"""Tests for retry with exponential backoff."""

import asyncio
import random

import pytest

from callguard.context import ExecutionContext
from callguard.errors import (
    ClassifiedError,
    DeadlineExceededError,
    ErrorClassification,
    ErrorKind,
    MaxRetriesExceededError,
)
from callguard.resilience.retry import (
    RetryConfig,
    RetryPolicy,
    RetryStats,
    calculate_delay,
    should_retry,
)


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


class _Flaky:
    """Async operation failing with the given errors before succeeding."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.calls = 0
        self.result = result

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _policy(sleep, **overrides) -> RetryPolicy:
    config = RetryConfig(**{"max_attempts": 3, "base_delay": 1.0, "backoff_multiplier": 2.0,
                            "jitter": False, **overrides})
    return RetryPolicy(config, name="inventory", sleep=sleep)


# ---------------------------------------------------------------------------
# RetryConfig / RetryStats
# ---------------------------------------------------------------------------


class TestRetryConfig:
    def test_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_attempts == 3
        assert cfg.base_delay == 1.0
        assert cfg.max_delay == 30.0
        assert cfg.backoff_multiplier == 2.0
        assert cfg.jitter is True
        assert cfg.retryable_classifications == {ErrorKind.TRANSIENT, ErrorKind.SYSTEMIC}

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_rejects_shrinking_multiplier(self):
        with pytest.raises(ValueError):
            RetryConfig(backoff_multiplier=0.5)


class TestRetryStats:
    def test_defaults(self):
        s = RetryStats()
        assert s.attempts == 0
        assert s.total_delay == 0.0
        assert s.success is False
        assert s.final_exception is None


# ---------------------------------------------------------------------------
# calculate_delay / should_retry
# ---------------------------------------------------------------------------


class TestCalculateDelay:
    def test_exponential_growth(self):
        cfg = RetryConfig(base_delay=1.0, backoff_multiplier=2.0, jitter=False)
        assert [calculate_delay(i, cfg) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        cfg = RetryConfig(base_delay=10.0, backoff_multiplier=10.0, max_delay=50.0, jitter=False)
        assert calculate_delay(3, cfg) == 50.0

    def test_jitter_range(self):
        cfg = RetryConfig(base_delay=10.0, jitter=True)
        rng = random.Random(7)
        for _ in range(50):
            assert 5.0 <= calculate_delay(0, cfg, rng) <= 10.0


class TestShouldRetry:
    def test_transient_retried(self):
        assert should_retry(ErrorClassification.transient("timeout"), RetryConfig()) is True

    def test_permanent_never_retried(self):
        assert should_retry(ErrorClassification.permanent("bad_request"), RetryConfig()) is False

    def test_non_retryable_systemic(self):
        classification = ErrorClassification.systemic("circuit_open", retryable=False)
        assert should_retry(classification, RetryConfig()) is False

    def test_kind_outside_config(self):
        cfg = RetryConfig(retryable_classifications={ErrorKind.SYSTEMIC})
        assert should_retry(ErrorClassification.transient("timeout"), cfg) is False


# ---------------------------------------------------------------------------
# RetryPolicy.run
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_success_first_try(self, recording_sleep):
        op = _Flaky()
        assert _run(_policy(recording_sleep).run(op)) == "ok"
        assert op.calls == 1
        assert recording_sleep.delays == []

    def test_recovers_after_transient(self, recording_sleep):
        op = _Flaky(ConnectionError("reset"))
        policy = _policy(recording_sleep)
        assert _run(policy.run(op)) == "ok"
        assert op.calls == 2
        assert policy.last_stats.attempts == 2
        assert policy.last_stats.success is True

    def test_exhausts_attempts_with_backoff(self, recording_sleep):
        op = _Flaky(*(ConnectionError(f"reset {i}") for i in range(3)))
        with pytest.raises(MaxRetriesExceededError) as exc_info:
            _run(_policy(recording_sleep).run(op))
        assert op.calls == 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert exc_info.value.classification.kind == ErrorKind.TRANSIENT

    def test_permanent_error_not_retried(self, recording_sleep):
        op = _Flaky(ValueError("malformed"))
        with pytest.raises(ValueError):
            _run(_policy(recording_sleep).run(op))
        assert op.calls == 1
        assert recording_sleep.delays == []

    def test_business_error_not_retried(self, recording_sleep):
        exc = ClassifiedError("card declined", ErrorClassification.business("card_declined"))
        op = _Flaky(exc)
        with pytest.raises(ClassifiedError):
            _run(_policy(recording_sleep).run(op))
        assert op.calls == 1

    def test_retry_after_is_a_floor(self, recording_sleep):
        exc = ClassifiedError("throttled", ErrorClassification.transient("rate_limited", retry_after=5.0))
        op = _Flaky(exc)
        assert _run(_policy(recording_sleep).run(op)) == "ok"
        assert recording_sleep.delays == [5.0]

    def test_stats_passed_in_are_filled(self, recording_sleep):
        stats = RetryStats()
        op = _Flaky(ConnectionError("reset"))
        _run(_policy(recording_sleep).run(op, stats=stats))
        assert stats.attempts == 2
        assert stats.total_delay == 1.0

    def test_on_retry_callback(self, recording_sleep):
        seen = []
        policy = RetryPolicy(
            RetryConfig(max_attempts=2, base_delay=0.5, jitter=False),
            sleep=recording_sleep,
            on_retry=lambda attempt, exc, delay: seen.append((attempt, type(exc), delay)),
        )
        _run(policy.run(_Flaky(ConnectionError("reset"))))
        assert seen == [(1, ConnectionError, 0.5)]

    def test_sync_operation(self, recording_sleep):
        attempts = []

        def op():
            attempts.append(1)
            if len(attempts) < 2:
                raise TimeoutError("slow")
            return "done"

        assert _run(_policy(recording_sleep).run(op)) == "done"
        assert len(attempts) == 2


# ---------------------------------------------------------------------------
# Deadline interaction
# ---------------------------------------------------------------------------


class TestDeadline:
    def test_backoff_past_deadline_aborts(self, recording_sleep):
        ctx = ExecutionContext.new(timeout=0.5)
        op = _Flaky(ConnectionError("reset"), ConnectionError("reset"))
        with pytest.raises(DeadlineExceededError):
            _run(_policy(recording_sleep, base_delay=2.0).run(op, ctx))
        assert op.calls == 1
        assert recording_sleep.delays == []

    def test_expired_deadline_never_calls(self, recording_sleep):
        ctx = ExecutionContext(correlation_id="c", deadline=0.0)
        op = _Flaky()
        with pytest.raises(DeadlineExceededError):
            _run(_policy(recording_sleep).run(op, ctx))
        assert op.calls == 0

    def test_deadline_error_from_operation_not_retried(self, recording_sleep):
        op = _Flaky(DeadlineExceededError("downstream"))
        with pytest.raises(DeadlineExceededError):
            _run(_policy(recording_sleep).run(op))
        assert op.calls == 1

    def test_attempt_timeout_is_retried(self, recording_sleep):
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "fast"

        policy = _policy(recording_sleep, attempt_timeout=0.02)
        assert _run(policy.run(slow_then_fast)) == "fast"
        assert len(calls) == 2
