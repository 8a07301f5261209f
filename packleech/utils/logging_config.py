"""Structured logging configuration for packleech.

Console output goes through Rich; the optional log file receives either
structured JSON lines or plain text. Every record carries the correlation id
of the run that produced it.
"""

from __future__ import annotations

import json
import logging
import logging.config
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import ObservabilityConfig

ROOT_LOGGER = "packleech"

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_EXCLUDED_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "correlation_id",
}


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Anything passed through ``extra=``
        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _EXCLUDED_KEYS
            }
        )
        return json.dumps(log_entry, default=str)


def setup_logging(
    config: ObservabilityConfig,
    console: Console | None = None,
) -> None:
    """Set up logging for the ``packleech`` logger tree.

    Args:
        config: Observability settings (level, log file, structured output)
        console: Rich console shared with progress rendering, if any

    """
    level = config.log_level.value
    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {"()": StructuredFormatter},
            "simple": {
                "format": "%(asctime)s %(levelname)s [%(correlation_id)s] "
                "%(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {"correlation": {"()": CorrelationFilter}},
        "handlers": {},
        "loggers": {
            ROOT_LOGGER: {"level": level, "handlers": [], "propagate": False},
        },
    }

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }
        logging_config["loggers"][ROOT_LOGGER]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    rich_handler.addFilter(CorrelationFilter())
    logging.getLogger(ROOT_LOGGER).addHandler(rich_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``packleech`` namespace."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = uuid.uuid4().hex[:12]
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()
