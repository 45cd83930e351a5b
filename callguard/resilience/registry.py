"""
Registry of process-scoped resilience components.

Owned by the application's composition root and injected into callers,
so tests get fresh instances and nothing lives in module globals.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from .bulkhead import Bulkhead, BulkheadConfig
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .retry import RetryConfig, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyPolicy:
    """How calls to one named dependency are protected."""
    name: str
    bulkhead: str
    breaker: str
    retry: RetryConfig


class ResilienceRegistry:
    """
    Named circuit breakers, bulkheads and dependency policies.

    Usage:
        registry = ResilienceRegistry()
        registry.add_bulkhead("external-api", BulkheadConfig(max_concurrent=20))
        registry.add_dependency("payments", bulkhead="external-api",
                                retry=RetryConfig(max_attempts=3))
        breaker = registry.breaker("payments")
    """

    def __init__(
        self,
        default_breaker: CircuitBreakerConfig = None,
        default_bulkhead: BulkheadConfig = None,
        default_retry: RetryConfig = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Callable = None,
    ):
        self.default_breaker = default_breaker or CircuitBreakerConfig()
        self.default_bulkhead = default_bulkhead or BulkheadConfig()
        self.default_retry = default_retry or RetryConfig()
        self._clock = clock
        self._on_transition = on_transition
        self._breakers: dict[str, CircuitBreaker] = {}
        self._bulkheads: dict[str, Bulkhead] = {}
        self._policies: dict[str, DependencyPolicy] = {}
        self._retry_policies: dict[str, RetryPolicy] = {}
        self._lock = threading.Lock()

    def add_breaker(self, name: str, config: CircuitBreakerConfig = None) -> CircuitBreaker:
        """Create and register a circuit breaker. Names are unique."""
        with self._lock:
            if name in self._breakers:
                raise ValueError(f"Circuit breaker '{name}' already registered")
            breaker = CircuitBreaker(
                name,
                config or self.default_breaker,
                clock=self._clock,
                on_transition=self._on_transition,
            )
            self._breakers[name] = breaker
            return breaker

    def add_bulkhead(self, name: str, config: BulkheadConfig = None) -> Bulkhead:
        """Create and register a bulkhead. Names are unique."""
        with self._lock:
            if name in self._bulkheads:
                raise ValueError(f"Bulkhead '{name}' already registered")
            bulkhead = Bulkhead(name, config or self.default_bulkhead)
            self._bulkheads[name] = bulkhead
            return bulkhead

    def add_dependency(
        self,
        name: str,
        bulkhead: str = None,
        breaker: str = None,
        retry: RetryConfig = None,
    ) -> DependencyPolicy:
        """Register how calls to a dependency are protected.

        Bulkhead and breaker default to the dependency's own name and are
        created with the registry defaults if not registered yet.
        """
        policy = DependencyPolicy(
            name=name,
            bulkhead=bulkhead or name,
            breaker=breaker or name,
            retry=retry or self.default_retry,
        )
        self.bulkhead(policy.bulkhead)
        self.breaker(policy.breaker)
        with self._lock:
            self._policies[name] = policy
            self._retry_policies[name] = RetryPolicy(policy.retry, name=name)
        return policy

    def breaker(self, name: str) -> CircuitBreaker:
        """Get a circuit breaker, creating it with defaults if unknown."""
        with self._lock:
            breaker = self._breakers.get(name)
        return breaker or self._get_or_add(self._breakers, name, self.add_breaker)

    def bulkhead(self, name: str) -> Bulkhead:
        """Get a bulkhead, creating it with defaults if unknown."""
        with self._lock:
            bulkhead = self._bulkheads.get(name)
        return bulkhead or self._get_or_add(self._bulkheads, name, self.add_bulkhead)

    def _get_or_add(self, table: dict, name: str, factory: Callable):
        try:
            created = factory(name)
            logger.info(f"Created '{name}' with default configuration")
            return created
        except ValueError:
            # Another caller registered it first.
            with self._lock:
                return table[name]

    def policy(self, dependency: str) -> DependencyPolicy:
        """Policy for a dependency, registering a default one if unknown."""
        with self._lock:
            policy = self._policies.get(dependency)
        return policy or self.add_dependency(dependency)

    def retry_policy(self, dependency: str) -> RetryPolicy:
        self.policy(dependency)
        with self._lock:
            return self._retry_policies[dependency]

    def find_breaker(self, name: str) -> Optional[CircuitBreaker]:
        """Get a registered circuit breaker without creating one."""
        with self._lock:
            return self._breakers.get(name)

    def find_bulkhead(self, name: str) -> Optional[Bulkhead]:
        with self._lock:
            return self._bulkheads.get(name)

    def breakers(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def bulkheads(self) -> dict[str, Bulkhead]:
        with self._lock:
            return dict(self._bulkheads)

    def dependencies(self) -> dict[str, DependencyPolicy]:
        with self._lock:
            return dict(self._policies)

    def open_circuits(self) -> list[str]:
        return [name for name, cb in self.breakers().items() if cb.state == CircuitState.OPEN]
