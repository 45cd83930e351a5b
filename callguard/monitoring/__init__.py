"""Error monitoring, alert rules and incident response."""

from .error_monitor import Alert, AlertRule, ErrorEvent, ErrorMonitor, Severity
from .incidents import (
    ActionRecord,
    Incident,
    IncidentManager,
    IncidentPattern,
    IncidentStatus,
    ResponseAction,
    default_handlers,
)

__all__ = [
    "Alert",
    "AlertRule",
    "ErrorEvent",
    "ErrorMonitor",
    "Severity",
    "ActionRecord",
    "Incident",
    "IncidentManager",
    "IncidentPattern",
    "IncidentStatus",
    "ResponseAction",
    "default_handlers",
]
