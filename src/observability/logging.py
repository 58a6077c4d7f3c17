"""
Structured Logging Configuration.

Configures structlog for:
- JSON output in production
- Colored console output in development
- Correlation ID injection (one id per extraction run)
- Bound context for the card being processed
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Literal

import structlog
from structlog.types import EventDict, WrappedLogger

from src.config.settings import Settings, get_settings

# Set to the run id for the duration of an extraction run
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})

SENSITIVE_KEYS = frozenset({
    "password",
    "api_key",
    "apikey",
    "api-key",
    "secret",
    "token",
    "authorization",
    "bearer",
    "credential",
    "private_key",
})

REDACTED = "***REDACTED***"

# Chatty third-party loggers kept at WARNING
_QUIET_LOGGERS = ("httpx", "httpcore", "neo4j", "asyncio", "openai", "anthropic")


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LogContext(card_id="42", run_id="a1b2c3d4"):
            logger.info("Extraction started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._token = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self._context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token:
            _log_context.reset(self._token)
        return False


def current_log_context() -> dict[str, Any]:
    """Return a copy of the context bound by enclosing LogContext blocks."""
    return dict(_log_context.get())


def add_correlation_id(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_log_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add bound context; keys passed on the event itself take precedence."""
    for key, value in _log_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def _censor(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _censor(k, v) for k, v in value.items()}
    if isinstance(value, str) and any(s in key.lower() for s in SENSITIVE_KEYS):
        return REDACTED
    return value


def censor_sensitive_data(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact credentials, including ones nested in dict values."""
    return {key: _censor(key, value) for key, value in event_dict.items()}


def configure_logging(
    level: str = "INFO",
    format: Literal["json", "console"] = "json",
) -> None:
    """
    Configure structlog for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        format: Output format ("json" for production, "console" for development)
    """
    if format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_correlation_id,
            add_log_context,
            censor_sensitive_data,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(settings: Settings | None = None) -> None:
    """Configure logging from application settings."""
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, format=settings.observability.log_format)
