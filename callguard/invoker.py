"""
Resilient invoker.

Composes the protections for a call to a named dependency in a fixed,
load-shedding-first order:

    Bulkhead → CircuitBreaker → RetryPolicy → TimeoutGuard → operation

Bulkhead and breaker checks are cheap and reject overload before any
retry or backoff work is scheduled. The breaker wraps the whole retry
loop, so an exhausted retry counts as one breaker failure.
"""

import functools
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any, Optional

from .context import ExecutionContext, bind_context, resolve_context
from .errors import classify_exception
from .monitoring.error_monitor import ErrorEvent, ErrorMonitor
from .observability.logging import EventEmitter
from .resilience.registry import ResilienceRegistry
from .resilience.retry import RetryStats
from .resilience.timeout import Operation

logger = logging.getLogger(__name__)


class ResilientInvoker:
    """
    Entry point for protected dependency calls.

    Usage:
        invoker = ResilientInvoker(registry, emitter=events, monitor=monitor)

        receipt = await invoker.call("payments", lambda: gateway.charge(order), ctx)
    """

    def __init__(
        self,
        registry: ResilienceRegistry,
        emitter: EventEmitter = None,
        monitor: Optional[ErrorMonitor] = None,
    ):
        self.registry = registry
        self.emitter = emitter or EventEmitter()
        self.monitor = monitor

    async def call(
        self,
        dependency: str,
        operation: Operation,
        ctx: Optional[ExecutionContext] = None,
    ) -> Any:
        """
        Call operation against dependency under its resilience policy.

        Raises:
            BulkheadFullError / CircuitOpenError: Fast-fail, operation not invoked
            MaxRetriesExceededError: Retryable failures exhausted all attempts
            DeadlineExceededError: The context's deadline ran out
            Exception: Non-retryable errors from the operation, unchanged
        """
        ctx = resolve_context(ctx)
        policy = self.registry.policy(dependency)
        bulkhead = self.registry.bulkhead(policy.bulkhead)
        breaker = self.registry.breaker(policy.breaker)
        retry = self.registry.retry_policy(dependency)

        stats = RetryStats()

        async def attempt_with_retry():
            return await retry.run(operation, ctx, stats=stats)

        async def through_breaker():
            return await breaker.call(attempt_with_retry, ctx)

        with bind_context(ctx):
            started = time.monotonic()
            try:
                result = await bulkhead.execute(through_breaker, ctx)
            except Exception as e:
                self._on_failure(dependency, e, ctx, started, stats.attempts)
                raise
            self.emitter.emit(
                logging.INFO,
                f"Call to {dependency} succeeded",
                event_category="call",
                outcome="success",
                dependency=dependency,
                attempts=stats.attempts,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return result

    def _on_failure(
        self,
        dependency: str,
        exc: BaseException,
        ctx: ExecutionContext,
        started: float,
        attempts: int,
    ) -> None:
        classification = classify_exception(exc)
        self.emitter.emit(
            logging.WARNING,
            f"Call to {dependency} failed: {type(exc).__name__}",
            event_category="call",
            outcome="failure",
            dependency=dependency,
            error_code=classification.error_code,
            error_kind=classification.kind,
            error_type=type(exc).__name__,
            attempts=attempts,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        if self.monitor is None:
            return
        try:
            self.monitor.record(ErrorEvent.from_exception(exc, dependency, ctx))
        except Exception:
            logger.exception(f"Error monitor failed while recording {dependency} failure")

    def wrap(self, dependency: str) -> Callable:
        """
        Decorator protecting a coroutine function.

        Usage:
            @invoker.wrap("inventory")
            async def reserve(sku: str) -> Reservation:
                ...
        """

        def decorator(func):
            if not inspect.iscoroutinefunction(func):
                raise TypeError("invoker.wrap() expects a coroutine function")

            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                async def operation():
                    return await func(*args, **kwargs)

                return await self.call(dependency, operation)

            return wrapper

        return decorator
