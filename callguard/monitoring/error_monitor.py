"""Sliding-window error monitor.

Counts classified errors per (error_code, dependency) key and evaluates
alert rules after every recorded error. Cooldowns are per rule.
"""

import fnmatch
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..context import ExecutionContext, current_context
from ..errors import ErrorKind, classify_exception
from ..observability.logging import EventEmitter

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


@dataclass(frozen=True)
class ErrorEvent:
    error_code: str
    dependency: str
    kind: ErrorKind
    message: str = ""
    correlation_id: Optional[str] = None
    actor_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str]:
        return (self.error_code, self.dependency)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        dependency: str,
        ctx: Optional[ExecutionContext] = None,
    ) -> "ErrorEvent":
        """Build an event from a failure, using its classification."""
        ctx = ctx if ctx is not None else current_context()
        classification = classify_exception(exc)
        return cls(
            error_code=classification.error_code,
            dependency=dependency,
            kind=classification.kind,
            message=str(exc),
            correlation_id=ctx.correlation_id if ctx else None,
            actor_id=ctx.actor_id if ctx else None,
        )

    def log_fields(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "dependency": self.dependency,
            "error_kind": self.kind.value,
            "error_message": self.message,
            "triggering_correlation_id": self.correlation_id,
        }


@dataclass
class AlertRule:
    """Fires when `threshold` matching errors land within `window` seconds."""
    name: str
    predicate: Callable[[ErrorEvent], bool]
    threshold: int
    window: float
    cooldown: float = 0.0
    severity: Severity = Severity.MEDIUM

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        if self.window <= 0:
            raise ValueError("window must be positive")
        if self.cooldown < 0:
            raise ValueError("cooldown must be non-negative")
        self.severity = Severity(self.severity)

    @classmethod
    def matching(
        cls,
        name: str,
        *,
        threshold: int,
        window: float,
        cooldown: float = 0.0,
        severity: Severity = Severity.MEDIUM,
        error_code: str = None,
        dependency: str = None,
        kinds: Iterable[ErrorKind] = None,
    ) -> "AlertRule":
        """Build a rule from glob patterns on error_code/dependency and a kind set."""
        kind_set = frozenset(ErrorKind(k) for k in kinds) if kinds else None

        def predicate(event: ErrorEvent) -> bool:
            if error_code and not fnmatch.fnmatchcase(event.error_code, error_code):
                return False
            if dependency and not fnmatch.fnmatchcase(event.dependency, dependency):
                return False
            if kind_set is not None and event.kind not in kind_set:
                return False
            return True

        return cls(
            name=name,
            predicate=predicate,
            threshold=threshold,
            window=window,
            cooldown=cooldown,
            severity=severity,
        )


@dataclass(frozen=True)
class Alert:
    rule_name: str
    severity: Severity
    count: int
    window: float
    event: ErrorEvent
    fired_at: float


AlertListener = Callable[[ErrorEvent, list[Alert]], None]


class ErrorMonitor:
    """
    Records error events and evaluates alert rules.

    Usage:
        monitor = ErrorMonitor([
            AlertRule.matching("payment_timeouts", threshold=5, window=60,
                               cooldown=300, error_code="timeout",
                               dependency="payments"),
        ], emitter=events)
        monitor.record(ErrorEvent.from_exception(exc, "payments"))
    """

    def __init__(
        self,
        rules: Iterable[AlertRule] = (),
        emitter: EventEmitter = None,
        clock: Callable[[], float] = time.time,
    ):
        self._rules: list[AlertRule] = list(rules)
        self._emitter = emitter or EventEmitter()
        self._clock = clock
        self._entries: dict[tuple[str, str], deque] = {}
        self._last_fired: dict[str, float] = {}
        self._listeners: list[AlertListener] = []
        self._lock = threading.Lock()

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    def add_rule(self, rule: AlertRule) -> None:
        with self._lock:
            if any(r.name == rule.name for r in self._rules):
                raise ValueError(f"Alert rule '{rule.name}' already registered")
            self._rules.append(rule)

    def subscribe(self, listener: AlertListener) -> None:
        """Call listener(event, alerts) after every recorded event."""
        self._listeners.append(listener)

    def _max_window(self) -> float:
        return max((rule.window for rule in self._rules), default=0.0)

    def _prune(self, now: float) -> None:
        """Drop entries older than the largest rule window, and keys left empty."""
        cutoff = now - self._max_window()
        for key in list(self._entries):
            entries = self._entries[key]
            while entries and entries[0][0] < cutoff:
                entries.popleft()
            if not entries:
                del self._entries[key]

    def _evaluate(self, event: ErrorEvent, entries: deque, now: float) -> list[Alert]:
        fired = []
        for rule in self._rules:
            if not rule.predicate(event):
                continue
            cutoff = now - rule.window
            count = sum(
                1 for ts, recorded in entries
                if ts >= cutoff and rule.predicate(recorded)
            )
            if count < rule.threshold:
                continue
            last = self._last_fired.get(rule.name)
            if last is not None and now - last < rule.cooldown:
                continue
            self._last_fired[rule.name] = now
            fired.append(Alert(
                rule_name=rule.name,
                severity=rule.severity,
                count=count,
                window=rule.window,
                event=event,
                fired_at=now,
            ))
        return fired

    def record(self, event: ErrorEvent) -> list[Alert]:
        """Record an error and return the alerts it fired."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            entries = self._entries.setdefault(event.key, deque())
            entries.append((now, event))
            alerts = self._evaluate(event, entries, now)

        for alert in alerts:
            self._emitter.alert(
                alert.rule_name,
                alert.severity,
                f"Alert '{alert.rule_name}': {alert.count} errors in {alert.window:g}s",
                count=alert.count,
                window_seconds=alert.window,
                **event.log_fields(),
            )

        for listener in list(self._listeners):
            try:
                listener(event, alerts)
            except Exception:
                logger.exception("Error monitor listener failed")

        return alerts

    def count(self, error_code: str, dependency: str, window: float = None) -> int:
        """Errors recorded for a key within window (default: largest rule window)."""
        with self._lock:
            entries = self._entries.get((error_code, dependency))
            if not entries:
                return 0
            cutoff = self._clock() - (window if window is not None else self._max_window())
            return sum(1 for ts, _ in entries if ts >= cutoff)

    def snapshot(self) -> dict[str, int]:
        """Current in-window counts keyed by "dependency:error_code"."""
        with self._lock:
            self._prune(self._clock())
            return {
                f"{dependency}:{code}": len(entries)
                for (code, dependency), entries in self._entries.items()
            }
