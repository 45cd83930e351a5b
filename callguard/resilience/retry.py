"""
Retry with Exponential Backoff.

Retries classified-transient failures with capped exponential backoff
and optional jitter. Each attempt runs under a TimeoutGuard, and the
caller's deadline bounds the whole loop: the policy never sleeps past it.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from ..context import ExecutionContext, current_context
from ..errors import (
    DeadlineExceededError,
    ErrorClassification,
    ErrorKind,
    MaxRetriesExceededError,
    classify_exception,
)
from .timeout import Operation, TimeoutGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior. Shared read-only across calls."""
    max_attempts: int = 3
    base_delay: float = 1.0              # Initial delay in seconds
    max_delay: float = 30.0              # Maximum delay
    backoff_multiplier: float = 2.0      # Exponential backoff multiplier
    jitter: bool = True                  # Scale delay by uniform(0.5, 1.0)
    retryable_classifications: frozenset = field(
        default_factory=lambda: frozenset({ErrorKind.TRANSIENT, ErrorKind.SYSTEMIC})
    )
    attempt_timeout: Optional[float] = None  # Per-attempt bound in seconds

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        object.__setattr__(
            self,
            "retryable_classifications",
            frozenset(ErrorKind(k) for k in self.retryable_classifications),
        )


@dataclass
class RetryStats:
    """Statistics from a retry operation."""
    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    final_exception: Optional[BaseException] = None


def calculate_delay(attempt: int, config: RetryConfig, rng: random.Random = None) -> float:
    """Delay after the given zero-based attempt."""
    delay = min(config.base_delay * (config.backoff_multiplier ** attempt), config.max_delay)

    if config.jitter:
        delay *= (rng or random).uniform(0.5, 1.0)

    return delay


def should_retry(classification: ErrorClassification, config: RetryConfig) -> bool:
    """Determine if a classified failure should trigger a retry."""
    return classification.retryable and classification.kind in config.retryable_classifications


class RetryPolicy:
    """
    Bounded retry around a single operation.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=5), name="inventory")
        result = await policy.run(lambda: client.reserve(sku))
    """

    def __init__(
        self,
        config: RetryConfig = None,
        name: str = "operation",
        on_retry: Callable[[int, BaseException, float], None] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random = None,
    ):
        self.config = config or RetryConfig()
        self.name = name
        self.on_retry = on_retry
        self._sleep = sleep
        self._rng = rng
        self._guard = TimeoutGuard(self.config.attempt_timeout, name=name)
        self.last_stats = RetryStats()

    async def run(
        self,
        operation: Operation,
        ctx: Optional[ExecutionContext] = None,
        stats: RetryStats = None,
    ) -> Any:
        """
        Execute operation with retry and exponential backoff.

        Returns:
            Result from the first successful attempt

        Raises:
            MaxRetriesExceededError: All attempts failed with retryable errors
            DeadlineExceededError: The caller's deadline ran out
            Exception: The original error when it is not retryable
        """
        ctx = ctx if ctx is not None else current_context()
        config = self.config
        stats = stats if stats is not None else RetryStats()
        self.last_stats = stats

        for attempt in range(config.max_attempts):
            stats.attempts = attempt + 1
            try:
                result = await self._guard.run(operation, ctx)
                stats.success = True
                if attempt > 0:
                    logger.info(f"{self.name} succeeded on attempt {attempt + 1}")
                return result

            except DeadlineExceededError as e:
                stats.final_exception = e
                raise

            except Exception as e:
                stats.final_exception = e
                classification = classify_exception(e)

                if not should_retry(classification, config):
                    logger.debug(
                        f"Not retrying {self.name}: {classification.kind.value} "
                        f"error {classification.error_code}"
                    )
                    raise

                if attempt >= config.max_attempts - 1:
                    logger.warning(
                        f"All {config.max_attempts} attempts failed for {self.name}: {e}"
                    )
                    raise MaxRetriesExceededError(stats.attempts, e) from e

                delay = calculate_delay(attempt, config, self._rng)
                if classification.retry_after is not None:
                    delay = max(delay, classification.retry_after)

                remaining = ctx.remaining() if ctx is not None else None
                if remaining is not None and remaining <= delay:
                    logger.warning(
                        f"Abandoning retries for {self.name}: backoff {delay:.2f}s "
                        f"exceeds remaining budget {remaining:.2f}s"
                    )
                    raise DeadlineExceededError(self.name) from e

                stats.total_delay += delay
                logger.info(
                    f"Retry {attempt + 1}/{config.max_attempts} for {self.name} "
                    f"after {delay:.2f}s: {type(e).__name__}: {e}",
                    extra={"error_code": classification.error_code, "attempt": attempt + 1},
                )

                if self.on_retry:
                    self.on_retry(attempt + 1, e, delay)

                await self._sleep(delay)

        raise RuntimeError("Retry loop exited unexpectedly")
