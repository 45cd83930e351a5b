"""
Resilience primitives for dependency calls.

Provides:
- Circuit breaker per dependency
- Retry with exponential backoff and jitter
- Per-attempt timeout guard
- Bulkhead isolation per resource class
- Registry owning the process-scoped instances
"""

from .bulkhead import Bulkhead, BulkheadConfig
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .registry import DependencyPolicy, ResilienceRegistry
from .retry import RetryConfig, RetryPolicy, RetryStats, calculate_delay
from .timeout import TimeoutGuard

__all__ = [
    "Bulkhead",
    "BulkheadConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "DependencyPolicy",
    "ResilienceRegistry",
    "RetryConfig",
    "RetryPolicy",
    "RetryStats",
    "calculate_delay",
    "TimeoutGuard",
]
