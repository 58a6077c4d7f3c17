"""
Observability Module.

Structured logging with JSON output, correlation IDs and bound run context.
"""

from src.observability.logging import (
    configure_logging,
    correlation_id_var,
    current_log_context,
    LogContext,
    setup_logging,
)

__all__ = [
    "configure_logging",
    "correlation_id_var",
    "current_log_context",
    "LogContext",
    "setup_logging",
]
