"""Static configuration and composition root.

Breaker thresholds, bulkhead limits, retry parameters, alert rules and
the incident pattern table are read once at startup from YAML, validated
against CONFIG_SCHEMA, and wired together by build_runtime().
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from jsonschema import ValidationError, validate

from .errors import ConfigError, ErrorKind
from .invoker import ResilientInvoker
from .monitoring.error_monitor import AlertRule, ErrorMonitor, Severity
from .monitoring.incidents import (
    IncidentManager,
    IncidentPattern,
    ResponseAction,
    default_handlers,
)
from .observability.logging import DEFAULT_SERVICE, EventEmitter, setup_logging
from .resilience.bulkhead import BulkheadConfig
from .resilience.circuit_breaker import CircuitBreakerConfig
from .resilience.registry import ResilienceRegistry
from .resilience.retry import RetryConfig

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "CALLGUARD_CONFIG"
ENV_SERVICE_NAME = "CALLGUARD_SERVICE_NAME"
ENV_LOG_LEVEL = "CALLGUARD_LOG_LEVEL"
ENV_LOG_FORMAT = "CALLGUARD_LOG_FORMAT"

_KINDS = [k.value for k in ErrorKind]
_SEVERITIES = [s.value for s in Severity]
_ACTIONS = [a.value for a in ResponseAction]

_POSITIVE = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE = {"type": "number", "minimum": 0}
_COUNT = {"type": "integer", "minimum": 1}

_BREAKER_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "failure_threshold": _COUNT,
        "success_threshold": _COUNT,
        "recovery_timeout": _NON_NEGATIVE,
        "half_open_max_calls": _COUNT,
        "counted_kinds": {"type": "array", "items": {"enum": _KINDS}},
    },
}

_BULKHEAD_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_concurrent": _COUNT,
        "queue_capacity": {"type": "integer", "minimum": 0},
        "max_wait": _POSITIVE,
        "timeout": _POSITIVE,
    },
}

_RETRY_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_attempts": _COUNT,
        "base_delay": _NON_NEGATIVE,
        "max_delay": _NON_NEGATIVE,
        "backoff_multiplier": {"type": "number", "minimum": 1},
        "jitter": {"type": "boolean"},
        "retryable_classifications": {"type": "array", "items": {"enum": _KINDS}},
        "attempt_timeout": _POSITIVE,
    },
}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "service": {"type": "string", "minLength": 1},
        "defaults": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "circuit_breaker": _BREAKER_SCHEMA,
                "bulkhead": _BULKHEAD_SCHEMA,
                "retry": _RETRY_SCHEMA,
            },
        },
        "circuit_breakers": {"type": "object", "additionalProperties": _BREAKER_SCHEMA},
        "bulkheads": {"type": "object", "additionalProperties": _BULKHEAD_SCHEMA},
        "dependencies": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "bulkhead": {"type": "string"},
                    "circuit_breaker": {"type": "string"},
                    "retry": _RETRY_SCHEMA,
                },
            },
        },
        "alert_rules": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["name", "threshold", "window"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "threshold": _COUNT,
                    "window": _POSITIVE,
                    "cooldown": _NON_NEGATIVE,
                    "severity": {"enum": _SEVERITIES},
                    "error_code": {"type": "string"},
                    "dependency": {"type": "string"},
                    "kinds": {"type": "array", "items": {"enum": _KINDS}},
                },
            },
        },
        "incident_patterns": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["name", "severity", "actions"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "severity": {"enum": _SEVERITIES},
                    "actions": {"type": "array", "items": {"enum": _ACTIONS}},
                    "error_code": {"type": "string"},
                    "dependency": {"type": "string"},
                },
            },
        },
        "incident_history_limit": _COUNT,
    },
}


@dataclass
class Settings:
    service: str = DEFAULT_SERVICE
    default_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    default_bulkhead: BulkheadConfig = field(default_factory=BulkheadConfig)
    default_retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breakers: dict[str, CircuitBreakerConfig] = field(default_factory=dict)
    bulkheads: dict[str, BulkheadConfig] = field(default_factory=dict)
    dependencies: dict[str, dict[str, Any]] = field(default_factory=dict)
    alert_rules: list[AlertRule] = field(default_factory=list)
    incident_patterns: list[IncidentPattern] = field(default_factory=list)
    incident_history_limit: int = 500
    log_level: str = "INFO"
    log_format: str = "json"


@dataclass
class Runtime:
    """Process-scoped components built once at startup."""
    settings: Settings
    emitter: EventEmitter
    registry: ResilienceRegistry
    monitor: ErrorMonitor
    incidents: IncidentManager
    invoker: ResilientInvoker


def _breaker_config(data: dict, base: CircuitBreakerConfig = None) -> CircuitBreakerConfig:
    base = base or CircuitBreakerConfig()
    return CircuitBreakerConfig(
        failure_threshold=data.get("failure_threshold", base.failure_threshold),
        success_threshold=data.get("success_threshold", base.success_threshold),
        recovery_timeout=float(data.get("recovery_timeout", base.recovery_timeout)),
        half_open_max_calls=data.get("half_open_max_calls", base.half_open_max_calls),
        counted_kinds=frozenset(data.get("counted_kinds", base.counted_kinds)),
    )


def _bulkhead_config(data: dict, base: BulkheadConfig = None) -> BulkheadConfig:
    base = base or BulkheadConfig()
    return BulkheadConfig(
        max_concurrent=data.get("max_concurrent", base.max_concurrent),
        queue_capacity=data.get("queue_capacity", base.queue_capacity),
        max_wait=data.get("max_wait", base.max_wait),
        timeout=data.get("timeout", base.timeout),
    )


def _retry_config(data: dict, base: RetryConfig = None) -> RetryConfig:
    base = base or RetryConfig()
    return RetryConfig(
        max_attempts=data.get("max_attempts", base.max_attempts),
        base_delay=float(data.get("base_delay", base.base_delay)),
        max_delay=float(data.get("max_delay", base.max_delay)),
        backoff_multiplier=float(data.get("backoff_multiplier", base.backoff_multiplier)),
        jitter=data.get("jitter", base.jitter),
        retryable_classifications=frozenset(
            data.get("retryable_classifications", base.retryable_classifications)
        ),
        attempt_timeout=data.get("attempt_timeout", base.attempt_timeout),
    )


def parse_settings(data: Optional[dict]) -> Settings:
    """Validate a raw config mapping and convert it to Settings."""
    data = data or {}
    try:
        validate(instance=data, schema=CONFIG_SCHEMA)
    except ValidationError as exc:
        logger.error("callguard configuration failed schema validation: %s", exc.message)
        raise ConfigError(exc.message) from exc

    defaults = data.get("defaults", {})
    try:
        default_breaker = _breaker_config(defaults.get("circuit_breaker", {}))
        default_bulkhead = _bulkhead_config(defaults.get("bulkhead", {}))
        default_retry = _retry_config(defaults.get("retry", {}))

        settings = Settings(
            service=data.get("service", DEFAULT_SERVICE),
            default_breaker=default_breaker,
            default_bulkhead=default_bulkhead,
            default_retry=default_retry,
            circuit_breakers={
                name: _breaker_config(cfg, default_breaker)
                for name, cfg in data.get("circuit_breakers", {}).items()
            },
            bulkheads={
                name: _bulkhead_config(cfg, default_bulkhead)
                for name, cfg in data.get("bulkheads", {}).items()
            },
            dependencies={
                name: {
                    "bulkhead": cfg.get("bulkhead"),
                    "breaker": cfg.get("circuit_breaker"),
                    "retry": _retry_config(cfg.get("retry", {}), default_retry),
                }
                for name, cfg in data.get("dependencies", {}).items()
            },
            alert_rules=[
                AlertRule.matching(
                    rule["name"],
                    threshold=rule["threshold"],
                    window=float(rule["window"]),
                    cooldown=float(rule.get("cooldown", 0.0)),
                    severity=Severity(rule.get("severity", Severity.MEDIUM.value)),
                    error_code=rule.get("error_code"),
                    dependency=rule.get("dependency"),
                    kinds=rule.get("kinds"),
                )
                for rule in data.get("alert_rules", [])
            ],
            incident_patterns=[
                IncidentPattern(
                    name=pattern["name"],
                    severity=Severity(pattern["severity"]),
                    actions=tuple(ResponseAction(a) for a in pattern["actions"]),
                    error_code=pattern.get("error_code", "*"),
                    dependency=pattern.get("dependency", "*"),
                )
                for pattern in data.get("incident_patterns", [])
            ],
            incident_history_limit=data.get("incident_history_limit", 500),
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    rule_names = [rule.name for rule in settings.alert_rules]
    if len(rule_names) != len(set(rule_names)):
        raise ConfigError("alert rule names must be unique")
    return settings


def load_config(config_path: Path) -> Settings:
    """Load settings from a YAML file."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    with open(config_path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    return parse_settings(data)


def settings_from_env(environ: dict = None) -> Settings:
    """Settings from CALLGUARD_CONFIG plus environment overrides."""
    environ = os.environ if environ is None else environ
    path = environ.get(ENV_CONFIG_PATH)
    settings = load_config(Path(path)) if path else Settings()

    if environ.get(ENV_SERVICE_NAME):
        settings.service = environ[ENV_SERVICE_NAME]
    log_level = environ.get(ENV_LOG_LEVEL, settings.log_level).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"{ENV_LOG_LEVEL} is not a log level: {log_level!r}")
    settings.log_level = log_level
    log_format = environ.get(ENV_LOG_FORMAT, settings.log_format).lower()
    if log_format not in ("json", "text"):
        raise ConfigError(f"{ENV_LOG_FORMAT} must be 'json' or 'text', got {log_format!r}")
    settings.log_format = log_format
    return settings


def configure_logging(settings: Settings) -> logging.Handler:
    """Install the root handler described by settings.log_level and log_format."""
    return setup_logging(
        level=settings.log_level,
        service=settings.service,
        json_format=settings.log_format == "json",
    )


def build_runtime(settings: Settings = None, configure_logs: bool = True) -> Runtime:
    """Wire every component from settings. Call once at startup.

    Pass configure_logs=False when the host application owns logging setup.
    """
    settings = settings or Settings()
    if configure_logs:
        configure_logging(settings)
    emitter = EventEmitter(service=settings.service)

    def on_transition(breaker, old_state, new_state):
        emitter.emit(
            logging.WARNING if new_state.value == "open" else logging.INFO,
            f"Circuit '{breaker.name}' {old_state.value} -> {new_state.value}",
            event_category="circuit",
            circuit=breaker.name,
            from_state=old_state,
            to_state=new_state,
        )

    registry = ResilienceRegistry(
        default_breaker=settings.default_breaker,
        default_bulkhead=settings.default_bulkhead,
        default_retry=settings.default_retry,
        on_transition=on_transition,
    )
    for name, cfg in settings.circuit_breakers.items():
        registry.add_breaker(name, cfg)
    for name, cfg in settings.bulkheads.items():
        registry.add_bulkhead(name, cfg)
    for name, dep in settings.dependencies.items():
        registry.add_dependency(name, bulkhead=dep["bulkhead"], breaker=dep["breaker"], retry=dep["retry"])

    monitor = ErrorMonitor(settings.alert_rules, emitter=emitter)
    incidents = IncidentManager(
        patterns=settings.incident_patterns,
        handlers=default_handlers(registry, emitter),
        emitter=emitter,
        history_limit=settings.incident_history_limit,
    )
    monitor.subscribe(incidents.handle)

    invoker = ResilientInvoker(registry, emitter=emitter, monitor=monitor)
    logger.info(
        f"callguard runtime ready: {len(registry.breakers())} breakers, "
        f"{len(registry.bulkheads())} bulkheads, {len(settings.alert_rules)} alert rules"
    )
    return Runtime(
        settings=settings,
        emitter=emitter,
        registry=registry,
        monitor=monitor,
        incidents=incidents,
        invoker=invoker,
    )
