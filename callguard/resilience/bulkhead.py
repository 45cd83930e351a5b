"""
Bulkhead isolation.

Limits concurrent use of one resource class ("database", "external-api")
so exhaustion in one cannot starve another. Callers beyond max_concurrent
wait in a bounded FIFO queue; when the queue is full they fail fast.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

from ..context import ExecutionContext, current_context
from ..errors import BulkheadFullError, DeadlineExceededError, OperationTimeoutError
from .timeout import Operation, TimeoutGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkheadConfig:
    """Configuration for a bulkhead."""
    max_concurrent: int = 10
    queue_capacity: int = 0              # Waiters allowed beyond max_concurrent
    max_wait: Optional[float] = None     # Longest queued wait in seconds
    timeout: Optional[float] = None      # Bound on the admitted operation

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.queue_capacity < 0:
            raise ValueError("queue_capacity must be non-negative")


@dataclass
class BulkheadMetrics:
    """Counters for a bulkhead."""
    accepted_calls: int = 0
    queued_calls: int = 0
    rejected_calls: int = 0
    timed_out_calls: int = 0


class Bulkhead:
    """
    Bulkhead pattern for resource isolation.

    Usage:
        bulkhead = Bulkhead("database", BulkheadConfig(max_concurrent=5, queue_capacity=20))

        rows = await bulkhead.execute(lambda: repo.fetch(order_id))

    Waiters are asyncio futures owned by the event loop the bulkhead is
    used from; a released slot is handed straight to the oldest waiter.
    """

    def __init__(self, name: str, config: BulkheadConfig = None):
        self.name = name
        self.config = config or BulkheadConfig()
        self._in_flight = 0
        self._waiters: deque[asyncio.Future] = deque()
        self._metrics = BulkheadMetrics()
        self._lock = threading.Lock()
        self._guard = TimeoutGuard(self.config.timeout, name=f"bulkhead '{name}'")

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return len(self._waiters)

    @property
    def available(self) -> int:
        return self.config.max_concurrent - self._in_flight

    @property
    def metrics(self) -> BulkheadMetrics:
        return self._metrics

    def _full_error(self, message: str = None) -> BulkheadFullError:
        return BulkheadFullError(
            self.name, self.config.max_concurrent, self.config.queue_capacity, message
        )

    def _release(self) -> None:
        with self._lock:
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    # Slot passes to the waiter; in_flight is unchanged.
                    waiter.set_result(None)
                    return
            self._in_flight -= 1

    async def acquire(self, ctx: Optional[ExecutionContext] = None) -> None:
        """
        Take a slot, queuing if allowed.

        Raises:
            BulkheadFullError: No slot and no queue room, or max_wait elapsed
            DeadlineExceededError: The caller's deadline ran out first
        """
        with self._lock:
            if self._in_flight < self.config.max_concurrent and not self._waiters:
                self._in_flight += 1
                self._metrics.accepted_calls += 1
                return
            if len(self._waiters) >= self.config.queue_capacity:
                self._metrics.rejected_calls += 1
                raise self._full_error()
            if ctx is not None and ctx.expired:
                raise DeadlineExceededError(f"bulkhead '{self.name}'")
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            self._metrics.queued_calls += 1

        remaining = ctx.remaining() if ctx is not None else None
        wait = self.config.max_wait
        deadline_binds = remaining is not None and (wait is None or remaining < wait)
        if deadline_binds:
            wait = remaining

        try:
            if wait is None:
                await waiter
            else:
                await asyncio.wait_for(asyncio.shield(waiter), timeout=wait)
        except BaseException as e:
            with self._lock:
                handed_slot = waiter.done() and not waiter.cancelled()
                if not handed_slot:
                    waiter.cancel()
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pass
            if handed_slot:
                self._release()
            if isinstance(e, asyncio.TimeoutError):
                with self._lock:
                    self._metrics.rejected_calls += 1
                if deadline_binds:
                    raise DeadlineExceededError(f"bulkhead '{self.name}'") from None
                raise self._full_error(
                    f"Bulkhead '{self.name}' full after waiting {wait:g}s"
                ) from None
            raise

        with self._lock:
            self._metrics.accepted_calls += 1

    async def execute(self, operation: Operation, ctx: Optional[ExecutionContext] = None) -> Any:
        """
        Execute operation within bulkhead constraints.

        Raises:
            BulkheadFullError: Resource saturated (operation not invoked)
            OperationTimeoutError: Admitted operation exceeded config.timeout
            DeadlineExceededError: The caller's deadline ran out
        """
        ctx = ctx if ctx is not None else current_context()
        if ctx is not None:
            ctx.check(f"bulkhead '{self.name}'")

        await self.acquire(ctx)
        try:
            return await self._guard.run(operation, ctx)
        except OperationTimeoutError:
            with self._lock:
                self._metrics.timed_out_calls += 1
            raise
        finally:
            self._release()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        with self._lock:
            return {
                "name": self.name,
                "max_concurrent": self.config.max_concurrent,
                "queue_capacity": self.config.queue_capacity,
                "in_flight": self._in_flight,
                "queued": len(self._waiters),
                "metrics": {
                    "accepted_calls": self._metrics.accepted_calls,
                    "queued_calls": self._metrics.queued_calls,
                    "rejected_calls": self._metrics.rejected_calls,
                    "timed_out_calls": self._metrics.timed_out_calls,
                },
            }
