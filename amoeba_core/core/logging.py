"""
Standardized Logging Configuration

Structured logging setup for the job execution core. Every module logs
through structlog; this module wires structlog onto the stdlib logging tree
so that JSON output can be used in production and a readable console format
during development.
"""

import logging
import sys
from enum import Enum
from typing import Any, List, Optional

import structlog


# =============================================================================
# Configuration
# =============================================================================


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    PRETTY = "pretty"
    SIMPLE = "simple"


NOISY_LOGGERS = ("asyncio", "redis", "urllib3", "httpx", "httpcore")


def _renderer(format: str) -> Any:
    if format == LogFormat.JSON:
        return structlog.processors.JSONRenderer()
    if format == LogFormat.PRETTY:
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.KeyValueRenderer(
        key_order=["timestamp", "level", "event"],
    )


# =============================================================================
# Logger Setup
# =============================================================================


def setup_logging(
    level: str = LogLevel.INFO.value,
    format: str = LogFormat.PRETTY.value,
    service_name: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json, pretty, simple)
        service_name: Service name bound to every log entry
    """
    format = LogFormat(format)
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)

    structlog.get_logger(__name__).info(
        "logging_configured",
        level=str(level).upper(),
        format=format.value,
    )


def get_logger(name: str) -> Any:
    """
    Get a structured logger with the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


__all__ = [
    "LogLevel",
    "LogFormat",
    "setup_logging",
    "get_logger",
]
