"""Incident lifecycle and automated response.

Turns alert threshold breaches into incidents keyed by
"<dependency>:<error_code>", runs the configured response actions once per
incident (and again only on escalation), and tracks occurrences until the
incident is resolved manually or after a quiet period.
"""

import fnmatch
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..observability.logging import EventEmitter
from ..resilience.registry import ResilienceRegistry
from .error_monitor import Alert, ErrorEvent, Severity

logger = logging.getLogger(__name__)


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class ResponseAction(str, Enum):
    ALERT_TEAM = "alert_team"
    OPEN_CIRCUIT = "open_circuit"
    SCALE_RESOURCE = "scale_resource"
    FAILOVER = "failover"


@dataclass
class ActionRecord:
    action: ResponseAction
    outcome: str  # "succeeded", "failed", "skipped"
    detail: Optional[str] = None
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class IncidentPattern:
    """One row of the pattern → response table."""
    name: str
    severity: Severity
    actions: tuple[ResponseAction, ...]
    error_code: str = "*"
    dependency: str = "*"

    def matches(self, event: ErrorEvent) -> bool:
        return (
            fnmatch.fnmatchcase(event.error_code, self.error_code)
            and fnmatch.fnmatchcase(event.dependency, self.dependency)
        )


@dataclass
class Incident:
    id: str
    key: str
    severity: Severity
    dependency: str
    error_code: str
    created_at: float
    updated_at: float
    rule_name: Optional[str] = None
    pattern: Optional[str] = None
    error_count: int = 1
    status: IncidentStatus = IncidentStatus.ACTIVE
    actions_taken: list[ActionRecord] = field(default_factory=list)
    correlation_ids: list[str] = field(default_factory=list)
    resolved_at: Optional[float] = None
    resolution: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "severity": self.severity.value,
            "status": self.status.value,
            "dependency": self.dependency,
            "error_code": self.error_code,
            "rule_name": self.rule_name,
            "pattern": self.pattern,
            "error_count": self.error_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
            "resolution": self.resolution,
            "actions_taken": [
                {"action": r.action.value, "outcome": r.outcome, "detail": r.detail, "at": r.at}
                for r in self.actions_taken
            ],
        }


ActionHandler = Callable[[Incident], Optional[str]]

# Correlation ids kept per incident for cross-referencing logs.
MAX_CORRELATION_IDS = 20


def incident_key(event: ErrorEvent) -> str:
    return f"{event.dependency}:{event.error_code}"


def default_handlers(registry: ResilienceRegistry, emitter: EventEmitter) -> dict[ResponseAction, ActionHandler]:
    """Handlers for the actions the core can perform itself.

    SCALE_RESOURCE and FAILOVER depend on the host platform and must be
    bound by the application.
    """

    def alert_team(incident: Incident) -> str:
        emitter.incident(
            incident.id,
            incident.severity,
            f"Paging on-call for {incident.key}",
            action=ResponseAction.ALERT_TEAM.value,
            incident_key=incident.key,
            error_count=incident.error_count,
        )
        return "on-call notified"

    def open_circuit(incident: Incident) -> str:
        # The dependency may share or rename its breaker.
        name = registry.policy(incident.dependency).breaker
        registry.breaker(name).force_open()
        return f"circuit '{name}' opened"

    return {
        ResponseAction.ALERT_TEAM: alert_team,
        ResponseAction.OPEN_CIRCUIT: open_circuit,
    }


class IncidentManager:
    """
    Maps recurring error patterns to response actions.

    Usage:
        manager = IncidentManager(
            patterns=[IncidentPattern("payments_down", Severity.CRITICAL,
                                      (ResponseAction.ALERT_TEAM, ResponseAction.OPEN_CIRCUIT),
                                      dependency="payments")],
            handlers={ResponseAction.OPEN_CIRCUIT: lambda inc: registry.breaker(inc.dependency).force_open()},
            emitter=events,
        )
        monitor.subscribe(manager.handle)
    """

    def __init__(
        self,
        patterns: Iterable[IncidentPattern] = (),
        handlers: dict[ResponseAction, ActionHandler] = None,
        emitter: EventEmitter = None,
        clock: Callable[[], float] = time.time,
        history_limit: int = 500,
    ):
        self._patterns = list(patterns)
        self._handlers: dict[ResponseAction, ActionHandler] = dict(handlers or {})
        self._emitter = emitter or EventEmitter()
        self._clock = clock
        self._active: dict[str, Incident] = {}
        self._by_id: dict[str, Incident] = {}
        self._history: deque[Incident] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def set_handler(self, action: ResponseAction, handler: ActionHandler) -> None:
        self._handlers[ResponseAction(action)] = handler

    def match_pattern(self, event: ErrorEvent) -> Optional[IncidentPattern]:
        for pattern in self._patterns:
            if pattern.matches(event):
                return pattern
        return None

    # -- lifecycle --------------------------------------------------------

    def handle(self, event: ErrorEvent, alerts: list[Alert] = ()) -> Optional[Incident]:
        """
        Process one error event and the alerts it fired.

        Opens an incident on the first alert for a key, counts further
        errors against the active incident, and escalates when a higher
        severity alert arrives. Returns the incident touched, if any.
        """
        key = incident_key(event)
        pattern = self.match_pattern(event)
        now = self._clock()
        top_alert = max(alerts, key=lambda a: a.severity.rank, default=None)

        created = escalated = False
        with self._lock:
            incident = self._active.get(key)
            if incident is None:
                if top_alert is None:
                    return None
                severity = pattern.severity if pattern else top_alert.severity
                incident = Incident(
                    id=uuid.uuid4().hex[:12],
                    key=key,
                    severity=severity,
                    dependency=event.dependency,
                    error_code=event.error_code,
                    created_at=now,
                    updated_at=now,
                    rule_name=top_alert.rule_name,
                    pattern=pattern.name if pattern else None,
                )
                self._active[key] = incident
                self._by_id[incident.id] = incident
                created = True
            else:
                incident.error_count += 1
                incident.updated_at = now
                if top_alert is not None and top_alert.severity.rank > incident.severity.rank:
                    incident.severity = top_alert.severity
                    escalated = True
            if event.correlation_id and len(incident.correlation_ids) < MAX_CORRELATION_IDS:
                incident.correlation_ids.append(event.correlation_id)

        if created:
            self._emit(incident, f"Incident opened for {key}", event, "opened")
            self._run_actions(incident, pattern)
        elif escalated:
            self._emit(incident, f"Incident escalated to {incident.severity.value} for {key}", event, "escalated")
            self._run_actions(incident, pattern)
        return incident

    def escalate(self, incident_id: str, severity: Severity) -> Incident:
        """Raise an active incident's severity and re-run its response actions."""
        severity = Severity(severity)
        with self._lock:
            incident = self._require(incident_id)
            if incident.status != IncidentStatus.ACTIVE:
                raise ValueError(f"Incident {incident_id} is not active")
            if severity.rank <= incident.severity.rank:
                return incident
            incident.severity = severity
            incident.updated_at = self._clock()
        self._emit(incident, f"Incident escalated to {severity.value} for {incident.key}", None, "escalated")
        self._run_actions(incident, self._pattern_named(incident.pattern))
        return incident

    def resolve(self, incident_id: str, reason: str = "manual") -> Incident:
        """Mark an incident resolved. Resolving twice is a no-op."""
        with self._lock:
            incident = self._require(incident_id)
            if incident.status == IncidentStatus.RESOLVED:
                return incident
            self._close(incident, reason)
        self._emit(incident, f"Incident resolved for {incident.key} ({reason})", None, "resolved")
        return incident

    def resolve_quiet(self, quiet_period: float) -> list[Incident]:
        """Resolve active incidents with no errors for quiet_period seconds."""
        now = self._clock()
        with self._lock:
            quiet = [
                incident for incident in self._active.values()
                if now - incident.updated_at >= quiet_period
            ]
            for incident in quiet:
                self._close(incident, "quiet_period")
        for incident in quiet:
            self._emit(incident, f"Incident resolved for {incident.key} (quiet period)", None, "resolved")
        return quiet

    # -- queries ----------------------------------------------------------

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            return self._by_id.get(incident_id)

    def active(self) -> list[Incident]:
        with self._lock:
            return list(self._active.values())

    def active_for(self, key: str) -> Optional[Incident]:
        with self._lock:
            return self._active.get(key)

    def history(self) -> list[Incident]:
        with self._lock:
            return list(self._history)

    # -- internals --------------------------------------------------------

    def _require(self, incident_id: str) -> Incident:
        incident = self._by_id.get(incident_id)
        if incident is None:
            raise KeyError(incident_id)
        return incident

    def _close(self, incident: Incident, reason: str) -> None:
        incident.status = IncidentStatus.RESOLVED
        incident.resolved_at = self._clock()
        incident.resolution = reason
        self._active.pop(incident.key, None)
        if len(self._history) == self._history.maxlen:
            self._by_id.pop(self._history[0].id, None)
        self._history.append(incident)

    def _pattern_named(self, name: Optional[str]) -> Optional[IncidentPattern]:
        return next((p for p in self._patterns if p.name == name), None)

    def _run_actions(self, incident: Incident, pattern: Optional[IncidentPattern]) -> None:
        actions = pattern.actions if pattern else (ResponseAction.ALERT_TEAM,)
        for action in actions:
            handler = self._handlers.get(action)
            if handler is None:
                record = ActionRecord(action, "skipped", "no handler configured")
                logger.warning(f"No handler for {action.value} on incident {incident.id}")
            else:
                try:
                    detail = handler(incident)
                    record = ActionRecord(action, "succeeded", detail)
                except Exception as e:
                    logger.exception(f"Response action {action.value} failed for incident {incident.id}")
                    record = ActionRecord(action, "failed", f"{type(e).__name__}: {e}")
            with self._lock:
                incident.actions_taken.append(record)

    def _emit(self, incident: Incident, message: str, event: Optional[ErrorEvent], transition: str) -> None:
        fields = {
            "status": incident.status.value,
            "transition": transition,
            "incident_key": incident.key,
            "error_count": incident.error_count,
            "rule_name": incident.rule_name,
        }
        if event is not None:
            fields.update(event.log_fields())
        self._emitter.incident(incident.id, incident.severity, message, **fields)
