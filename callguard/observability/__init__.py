"""Structured, correlated logging."""

from .logging import (
    CorrelatedJsonFormatter,
    CorrelationFilter,
    EventEmitter,
    setup_logging,
)

__all__ = [
    "CorrelatedJsonFormatter",
    "CorrelationFilter",
    "EventEmitter",
    "setup_logging",
]
