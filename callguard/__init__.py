"""
callguard: resilience and observability core for service-to-service calls.

    runtime = build_runtime(load_config(Path("callguard.yaml")))
    ctx = ExecutionContext.new(timeout=2.0, actor_id="user-42")
    receipt = await runtime.invoker.call("payments", charge, ctx)
"""

from .config import (
    Runtime,
    Settings,
    build_runtime,
    configure_logging,
    load_config,
    settings_from_env,
)
from .context import ExecutionContext, bind_context, current_context
from .errors import (
    BulkheadFullError,
    CircuitOpenError,
    ClassifiedError,
    ConfigError,
    DeadlineExceededError,
    ErrorClassification,
    ErrorKind,
    MaxRetriesExceededError,
    OperationTimeoutError,
    ResilienceError,
    classify_exception,
)
from .invoker import ResilientInvoker

__version__ = "0.1.0"

__all__ = [
    "Runtime",
    "Settings",
    "build_runtime",
    "configure_logging",
    "load_config",
    "settings_from_env",
    "ExecutionContext",
    "bind_context",
    "current_context",
    "BulkheadFullError",
    "CircuitOpenError",
    "ClassifiedError",
    "ConfigError",
    "DeadlineExceededError",
    "ErrorClassification",
    "ErrorKind",
    "MaxRetriesExceededError",
    "OperationTimeoutError",
    "ResilienceError",
    "classify_exception",
    "ResilientInvoker",
]
