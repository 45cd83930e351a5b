"""
Circuit Breaker Pattern Implementation.

Prevents cascading failures by failing fast when a dependency is unhealthy.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Dependency failing, requests fail immediately
- HALF_OPEN: A bounded number of trial requests test recovery

Transitions:
- CLOSED → OPEN: When failure threshold is reached
- OPEN → HALF_OPEN: Lazily, on the first call after the recovery timeout
- HALF_OPEN → CLOSED: When success threshold is reached
- HALF_OPEN → OPEN: On any counted failure

Only failures classified TRANSIENT or SYSTEMIC count by default; other
errors propagate without touching the counters.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from ..context import ExecutionContext
from ..errors import CircuitOpenError, ErrorKind, classify_exception
from .timeout import Operation, invoke

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5          # Failures before opening
    success_threshold: int = 2          # Successes to close from half-open
    recovery_timeout: float = 60.0      # Seconds in open state before half-open
    half_open_max_calls: int = 1        # Concurrent trial calls in half-open
    expected_exceptions: tuple = (Exception,)  # Only these can count as failures
    counted_kinds: frozenset = field(
        default_factory=lambda: frozenset({ErrorKind.TRANSIENT, ErrorKind.SYSTEMIC})
    )

    def __post_init__(self):
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("thresholds must be at least 1")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be non-negative")
        object.__setattr__(
            self, "counted_kinds", frozenset(ErrorKind(k) for k in self.counted_kinds)
        )


@dataclass
class CircuitMetrics:
    """Metrics for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    ignored_calls: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """
    Circuit breaker for one named dependency.

    Usage:
        cb = CircuitBreaker("payments", CircuitBreakerConfig(failure_threshold=3))

        result = await cb.call(lambda: gateway.charge(order))

        if cb.state == CircuitState.OPEN:
            ...  # serve a fallback

    All reads and transitions happen under one lock that is never held
    while the wrapped operation runs.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Callable[["CircuitBreaker", CircuitState, CircuitState], None] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_transition = on_transition
        self._state = CircuitState.CLOSED
        self._metrics = CircuitMetrics()
        self._failure_count = 0
        self._success_count = 0
        self._half_open_in_flight = 0
        self._generation = 0
        self._last_transition_time: Optional[float] = None
        self._lock = threading.Lock()

        logger.info(f"Circuit breaker '{name}' initialized")

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            return self._state

    @property
    def metrics(self) -> CircuitMetrics:
        """Circuit metrics."""
        return self._metrics

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def last_transition_time(self) -> Optional[float]:
        return self._last_transition_time

    # -- state machine (callers hold self._lock) --------------------------

    def _transition_to(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState]:
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._metrics.state_changes += 1
        self._last_transition_time = self._clock()
        self._failure_count = 0
        self._success_count = 0
        self._half_open_in_flight = 0
        return old_state, new_state

    def _open_until(self) -> datetime:
        remaining = self.config.recovery_timeout
        if self._last_transition_time is not None:
            remaining -= self._clock() - self._last_transition_time
        return datetime.now(timezone.utc) + timedelta(seconds=max(0.0, remaining))

    def _admit(self) -> tuple[Optional[int], Optional[tuple]]:
        """Decide whether a call may proceed.

        Returns (trial, transition); trial is the half-open window the
        call belongs to, or None for an ordinary closed-state call.
        """
        transition = None
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._last_transition_time
            if elapsed < self.config.recovery_timeout:
                self._metrics.rejected_calls += 1
                raise CircuitOpenError(self.name, self._open_until())
            transition = self._transition_to(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_in_flight >= self.config.half_open_max_calls:
                self._metrics.rejected_calls += 1
                raise CircuitOpenError(self.name)
            self._half_open_in_flight += 1
            return self._generation, transition

        return None, transition

    def _is_live_trial(self, trial: Optional[int]) -> bool:
        # A trial from an earlier half-open window no longer owns a slot.
        return (
            trial is not None
            and trial == self._generation
            and self._state == CircuitState.HALF_OPEN
        )

    def _on_success(self, trial: Optional[int]) -> Optional[tuple]:
        self._metrics.total_calls += 1
        self._metrics.successful_calls += 1

        if self._is_live_trial(trial):
            self._half_open_in_flight -= 1
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                return self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0
        return None

    def _on_failure(self, trial: Optional[int], counted: bool) -> Optional[tuple]:
        self._metrics.total_calls += 1
        live_trial = self._is_live_trial(trial)
        if live_trial:
            self._half_open_in_flight -= 1

        if not counted:
            self._metrics.ignored_calls += 1
            return None

        self._metrics.failed_calls += 1
        if self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                return self._transition_to(CircuitState.OPEN)
        elif live_trial:
            return self._transition_to(CircuitState.OPEN)
        return None

    def _notify(self, transition: Optional[tuple]) -> None:
        if transition is None:
            return
        old_state, new_state = transition
        logger.info(
            f"Circuit '{self.name}' transitioned: {old_state.value} → {new_state.value}",
            extra={"circuit": self.name, "from_state": old_state.value, "to_state": new_state.value},
        )
        if self._on_transition:
            try:
                self._on_transition(self, old_state, new_state)
            except Exception:
                logger.exception(f"Transition listener failed for circuit '{self.name}'")

    def should_count_failure(self, exc: BaseException) -> bool:
        """Check if exception is evidence of dependency failure."""
        if not isinstance(exc, self.config.expected_exceptions):
            return False
        return classify_exception(exc).kind in self.config.counted_kinds

    # -- public API -------------------------------------------------------

    def _before_call(self) -> Optional[int]:
        with self._lock:
            trial, transition = self._admit()
        self._notify(transition)
        return trial

    def _after_success(self, trial: Optional[int]) -> None:
        with self._lock:
            transition = self._on_success(trial)
        self._notify(transition)

    def _after_failure(self, trial: Optional[int], exc: BaseException) -> None:
        counted = self.should_count_failure(exc)
        with self._lock:
            transition = self._on_failure(trial, counted)
        self._notify(transition)

    async def call(self, operation: Operation, ctx: Optional[ExecutionContext] = None) -> Any:
        """
        Execute operation through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open (operation not invoked)
            Exception: Any exception from the operation
        """
        if ctx is not None:
            ctx.check(f"circuit '{self.name}'")
        trial = self._before_call()
        try:
            result = await invoke(operation)
        except BaseException as e:
            self._after_failure(trial, e)
            raise
        self._after_success(trial)
        return result

    def call_sync(self, operation: Callable[[], Any]) -> Any:
        """Synchronous variant for thread callers."""
        trial = self._before_call()
        try:
            result = operation()
        except BaseException as e:
            self._after_failure(trial, e)
            raise
        self._after_success(trial)
        return result

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            transition = self._transition_to(CircuitState.CLOSED)
        logger.info(f"Circuit '{self.name}' manually reset")
        self._notify(transition)

    def force_open(self) -> None:
        """Open the circuit now, restarting the recovery timeout."""
        with self._lock:
            transition = self._transition_to(CircuitState.OPEN)
        logger.warning(f"Circuit '{self.name}' forced open")
        self._notify(transition)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        with self._lock:
            opened_at = None
            if self._state == CircuitState.OPEN and self._last_transition_time is not None:
                opened_at = (
                    datetime.now(timezone.utc)
                    - timedelta(seconds=self._clock() - self._last_transition_time)
                ).isoformat()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "metrics": {
                    "total_calls": self._metrics.total_calls,
                    "successful_calls": self._metrics.successful_calls,
                    "failed_calls": self._metrics.failed_calls,
                    "rejected_calls": self._metrics.rejected_calls,
                    "ignored_calls": self._metrics.ignored_calls,
                    "state_changes": self._metrics.state_changes,
                },
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "success_threshold": self.config.success_threshold,
                    "recovery_timeout": self.config.recovery_timeout,
                    "half_open_max_calls": self.config.half_open_max_calls,
                },
                "opened_at": opened_at,
            }
