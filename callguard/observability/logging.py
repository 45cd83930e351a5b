"""
Structured JSON logging with correlation.

Every record leaving the process is one JSON object carrying at least
timestamp, level, message, service and correlation_id. The active
ExecutionContext is picked up implicitly by CorrelationFilter, so callers
never pass correlation ids by hand.
"""

import logging
import sys
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, TextIO, Union

from pythonjsonlogger.json import JsonFormatter

from ..context import current_context

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "callguard"
EVENTS_LOGGER = "callguard.events"

# LogRecord attributes (logging raises on these as extra keys) and the
# keys CorrelatedJsonFormatter writes itself.
_RESERVED = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "timestamp", "level", "logger"}


class CorrelationFilter(logging.Filter):
    """Attach service and ExecutionContext fields to every record."""

    def __init__(self, service: str = DEFAULT_SERVICE):
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service
        ctx = current_context()
        if not hasattr(record, "correlation_id"):
            record.correlation_id = ctx.correlation_id if ctx else None
        if ctx is not None and ctx.actor_id is not None and not hasattr(record, "actor_id"):
            record.actor_id = ctx.actor_id
        return True


class CorrelatedJsonFormatter(JsonFormatter):
    """
    JSON formatter with a stable field layout.

    Adds:
    - timestamp: ISO-8601 UTC time of the record
    - level: level name
    - logger: logger name
    - correlation_id / service: from CorrelationFilter (None if absent)
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if "message" not in log_record:
            log_record["message"] = record.getMessage()
        log_record.setdefault("correlation_id", getattr(record, "correlation_id", None))
        log_record.setdefault("service", getattr(record, "service", DEFAULT_SERVICE))


class JsonStreamHandler(logging.StreamHandler):
    """Stream handler that counts write failures instead of printing them."""

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__(stream)
        self.failures = 0

    def handleError(self, record: logging.LogRecord) -> None:
        self.failures += 1


def setup_logging(
    level: Union[int, str] = logging.INFO,
    service: str = DEFAULT_SERVICE,
    json_format: bool = True,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Configure the root logger.

    Args:
        level: Log level (name or number)
        service: Service name stamped on every record
        json_format: Use JSON formatting (default: True)
        stream: Output stream (default: stdout)

    Returns:
        The installed handler
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = JsonStreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationFilter(service))

    if json_format:
        handler.setFormatter(CorrelatedJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
        ))

    root_logger.addHandler(handler)
    return handler


def _normalize_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class EventEmitter:
    """
    Emits machine-parsable events. Never fails the caller.

    Usage:
        events = EventEmitter(service="checkout")
        events.emit("info", "payment authorized", {"amount": 12})
        events.alert("payment_timeouts", "high", "5 timeouts in 60s")
    """

    def __init__(
        self,
        service: str = DEFAULT_SERVICE,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.logger = logger or logging.getLogger(EVENTS_LOGGER)
        self._dropped = 0
        self._lock = threading.Lock()

    @property
    def dropped(self) -> int:
        """Events that could not be written."""
        return self._dropped

    def _build_extra(self, fields: Optional[Mapping[str, Any]], extra_kw: Mapping[str, Any]) -> dict:
        extra: dict[str, Any] = {"service": self.service}
        ctx = current_context()
        if ctx is not None:
            extra.update(ctx.log_fields())
        for source in (fields or {}, extra_kw):
            for key, value in source.items():
                name = f"field_{key}" if key in _RESERVED else key
                extra[name] = _plain(value)
        return extra

    def emit(
        self,
        level: Union[int, str],
        message: str,
        fields: Optional[Mapping[str, Any]] = None,
        /,
        **extra_fields: Any,
    ) -> None:
        """Write one structured record. Any keyword, even "level" or "message", is a field."""
        try:
            self.logger.log(
                _normalize_level(level),
                message,
                extra=self._build_extra(fields, extra_fields),
            )
        except Exception:
            with self._lock:
                self._dropped += 1

    def alert(self, rule_name: str, severity: Any, message: str, /, **fields: Any) -> None:
        self.emit(
            logging.WARNING,
            message,
            {**fields, "event_category": "alert", "rule_name": rule_name, "severity": severity},
        )

    def incident(self, incident_id: str, severity: Any, message: str, /, **fields: Any) -> None:
        level = logging.ERROR if _plain(severity) in ("high", "critical") else logging.WARNING
        self.emit(
            level,
            message,
            {**fields, "event_category": "incident", "incident_id": incident_id, "severity": severity},
        )
