"""
Execution context carried through every call.

An ExecutionContext is created once per inbound request and only ever
derived, never mutated. It can be passed explicitly or bound to the
current task with bind_context(); ContextVar values follow tasks created
inside the block and worker threads started with asyncio.to_thread.
"""

import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from typing import Iterator, Optional

from .errors import DeadlineExceededError

_current_context: ContextVar[Optional["ExecutionContext"]] = ContextVar(
    "callguard_execution_context", default=None
)

_UNSET = object()


@dataclass(frozen=True)
class ExecutionContext:
    """Request-scoped context.

    deadline is an absolute time.monotonic() value, or None when the
    work has no deadline.
    """
    correlation_id: str
    actor_id: Optional[str] = None
    deadline: Optional[float] = None

    @classmethod
    def new(
        cls,
        timeout: Optional[float] = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> "ExecutionContext":
        """Create a root context for an inbound request."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        return cls(
            correlation_id=correlation_id or uuid.uuid4().hex,
            actor_id=actor_id,
            deadline=deadline,
        )

    def child(self, timeout: Optional[float] = None, actor_id=_UNSET) -> "ExecutionContext":
        """Derive a context for a downstream call.

        The child may shorten the deadline but never extend it.
        """
        deadline = self.deadline
        if timeout is not None:
            candidate = time.monotonic() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        changes = {"deadline": deadline}
        if actor_id is not _UNSET:
            changes["actor_id"] = actor_id
        return replace(self, **changes)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self, operation: str = "operation") -> None:
        """Raise DeadlineExceededError if the deadline has passed."""
        if self.expired:
            raise DeadlineExceededError(operation)

    def log_fields(self) -> dict:
        fields = {"correlation_id": self.correlation_id}
        if self.actor_id is not None:
            fields["actor_id"] = self.actor_id
        return fields


def current_context() -> Optional[ExecutionContext]:
    """Context bound to the current task/thread, if any."""
    return _current_context.get()


@contextmanager
def bind_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Bind ctx as the ambient context for the duration of the block."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def resolve_context(ctx: Optional[ExecutionContext] = None) -> ExecutionContext:
    """Explicit context, else the bound one, else a fresh root context."""
    if ctx is not None:
        return ctx
    return current_context() or ExecutionContext.new()
