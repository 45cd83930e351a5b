"""
Error taxonomy and classification.

Every failure that crosses the resilience core is resolved to an
ErrorClassification. Policies (retry, circuit breaker counting, alert
rules) dispatch on the classification, not on exception types.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification tags."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    SYSTEMIC = "systemic"
    BUSINESS = "business"


NEVER_RETRYABLE = frozenset({ErrorKind.PERMANENT, ErrorKind.BUSINESS})


@dataclass(frozen=True)
class ErrorClassification:
    """Classification attached to a failure."""
    kind: ErrorKind
    error_code: str
    retryable: bool = False
    retry_after: Optional[float] = None  # seconds

    def __post_init__(self):
        if self.retryable and self.kind in NEVER_RETRYABLE:
            raise ValueError(f"{self.kind.value} errors cannot be retryable")
        if self.retry_after is not None and self.retry_after < 0:
            raise ValueError("retry_after must be non-negative")

    @classmethod
    def transient(cls, error_code: str, retry_after: Optional[float] = None) -> "ErrorClassification":
        return cls(ErrorKind.TRANSIENT, error_code, retryable=True, retry_after=retry_after)

    @classmethod
    def systemic(cls, error_code: str, retryable: bool = True) -> "ErrorClassification":
        return cls(ErrorKind.SYSTEMIC, error_code, retryable=retryable)

    @classmethod
    def permanent(cls, error_code: str) -> "ErrorClassification":
        return cls(ErrorKind.PERMANENT, error_code)

    @classmethod
    def business(cls, error_code: str) -> "ErrorClassification":
        return cls(ErrorKind.BUSINESS, error_code)


class ClassifiedError(Exception):
    """Raised by operations to attach an explicit classification."""

    def __init__(
        self,
        message: str,
        classification: ErrorClassification,
        cause: Optional[BaseException] = None,
    ):
        self.classification = classification
        self.cause = cause
        super().__init__(message)


class ResilienceError(Exception):
    """Base class for errors raised by the resilience core itself."""

    classification: ErrorClassification


class CircuitOpenError(ResilienceError):
    """Raised when a circuit is open and the call is rejected."""

    classification = ErrorClassification.systemic("circuit_open", retryable=False)

    def __init__(self, name: str, until: Optional[datetime] = None):
        self.name = name
        self.until = until
        if until is not None:
            message = f"Circuit '{name}' is open until {until.isoformat()}"
        else:
            message = f"Circuit '{name}' is open"
        super().__init__(message)


class BulkheadFullError(ResilienceError):
    """Raised when a bulkhead has no free slot and no queue room."""

    classification = ErrorClassification.systemic("bulkhead_full", retryable=False)

    def __init__(self, name: str, max_concurrent: int, queue_capacity: int, message: str = None):
        self.name = name
        self.max_concurrent = max_concurrent
        self.queue_capacity = queue_capacity
        super().__init__(
            message
            or f"Bulkhead '{name}' full ({max_concurrent} running, {queue_capacity} queued)"
        )


class OperationTimeoutError(ResilienceError):
    """Raised when a single attempt exceeds its time bound."""

    classification = ErrorClassification.transient("timeout")

    def __init__(self, timeout: float, name: str = "operation"):
        self.timeout = timeout
        self.name = name
        super().__init__(f"{name} timed out after {timeout:g}s")


class DeadlineExceededError(ResilienceError):
    """Raised when the caller's overall deadline has passed. Never retried."""

    classification = ErrorClassification.permanent("deadline_exceeded")

    def __init__(self, operation: str = "operation"):
        self.operation = operation
        super().__init__(f"Deadline exceeded before {operation} could complete")


class MaxRetriesExceededError(ResilienceError):
    """Raised after all retry attempts failed. Wraps the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempts: {type(last_error).__name__}: {last_error}"
        )

    @property
    def classification(self) -> ErrorClassification:
        return classify_exception(self.last_error)


class ConfigError(Exception):
    """Raised for invalid static configuration."""


def classify_exception(exc: BaseException) -> ErrorClassification:
    """Resolve the classification of any exception.

    Explicit classifications win. Well-known network and timeout errors
    are transient; everything unknown is permanent so it is never retried.
    """
    classification = getattr(exc, "classification", None)
    if isinstance(classification, ErrorClassification):
        return classification

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorClassification.transient("timeout")
    if isinstance(exc, ConnectionError):
        return ErrorClassification.transient("connection_error")
    if isinstance(exc, OSError):
        return ErrorClassification.transient("os_error")

    return ErrorClassification.permanent(f"unclassified:{type(exc).__name__}")
