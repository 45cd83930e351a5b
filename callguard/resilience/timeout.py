"""
Timeout guard for a single attempt.

Bounds one operation by min(timeout, remaining deadline). Synchronous
callables run in a worker thread so the event loop keeps running while
they are waited on.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar, Union

from ..context import ExecutionContext, current_context
from ..errors import DeadlineExceededError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Union[T, Awaitable[T]]]


async def invoke(operation: Operation) -> Any:
    """Call a zero-argument operation, sync or async, and return its result."""
    if inspect.iscoroutinefunction(operation):
        return await operation()
    result = await asyncio.to_thread(operation)
    if inspect.isawaitable(result):
        result = await result
    return result


class TimeoutGuard:
    """
    Bounds the wall-clock duration of one operation.

    Usage:
        guard = TimeoutGuard(5.0, name="payments")
        result = await guard.run(lambda: client.charge(order))
    """

    def __init__(self, timeout: Optional[float] = None, name: str = "operation"):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.name = name

    def _bound(self, ctx: Optional[ExecutionContext]) -> tuple[Optional[float], bool]:
        """Effective bound and whether the deadline is what binds."""
        remaining = ctx.remaining() if ctx is not None else None
        if remaining is None:
            return self.timeout, False
        if self.timeout is None or remaining < self.timeout:
            return remaining, True
        return self.timeout, False

    async def run(self, operation: Operation, ctx: Optional[ExecutionContext] = None) -> Any:
        """
        Run operation within the bound.

        Raises:
            DeadlineExceededError: Deadline already passed, or hit while waiting
            OperationTimeoutError: The guard's own timeout elapsed
        """
        ctx = ctx if ctx is not None else current_context()
        if ctx is not None:
            ctx.check(self.name)

        bound, deadline_binds = self._bound(ctx)
        if bound is None:
            return await invoke(operation)

        # asyncio.wait() never raises the operation's own TimeoutError, so
        # only an elapsed bound is translated below.
        task = asyncio.ensure_future(invoke(operation))
        try:
            done, _ = await asyncio.wait({task}, timeout=bound)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled():
            # Finished while being cancelled.
            return task.result()

        if deadline_binds:
            logger.warning(f"Deadline reached while waiting on {self.name}")
            raise DeadlineExceededError(self.name)
        logger.warning(f"{self.name} timed out after {bound:g}s")
        raise OperationTimeoutError(bound, self.name)
