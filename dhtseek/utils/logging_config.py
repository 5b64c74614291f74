"""Structured logging configuration for dhtseek.

Provides logging setup with correlation IDs, Rich console output, optional
rotating file output (plain or JSON lines) and configurable log levels.
"""

from __future__ import annotations

import json
import logging
import logging.config
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from dhtseek.utils.exceptions import DHTSeekError
from dhtseek.utils.rich_logging import FileFormatter, create_rich_handler

if TYPE_CHECKING:  # pragma: no cover
    from dhtseek.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = cast(
    "ContextVar[str | None]",
    ContextVar("correlation_id", default=None),
)

_STANDARD_RECORD_KEYS = frozenset(
    {
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
        "correlation_id",
        "message",
    }
)


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "no-correlation-id"
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

        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _STANDARD_RECORD_KEYS
            }
        )
        return json.dumps(log_entry, default=str)


def setup_logging(config: ObservabilityConfig, level: int | str | None = None) -> None:
    """Set up logging configuration with Rich console output.

    Args:
        config: Observability settings
        level: Overrides ``config.log_level`` (the CLI verbosity flags use this)

    """
    log_level = logging.getLevelName(level) if isinstance(level, int) else level
    log_level = log_level or config.log_level.value

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "()": FileFormatter,
                "format": "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "correlation": {
                "()": CorrelationFilter,
            },
        },
        "handlers": {},
        "loggers": {
            "dhtseek": {
                "level": log_level,
                "handlers": [],
                "propagate": False,
            },
        },
        "root": {
            "level": logging.WARNING,
            "handlers": [],
        },
    }

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "encoding": "utf-8",
        }
        logging_config["loggers"]["dhtseek"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    rich_handler = create_rich_handler(level=log_level)
    rich_handler.addFilter(CorrelationFilter())
    logging.getLogger("dhtseek").addHandler(rich_handler)
    logging.getLogger().addHandler(rich_handler)

    if config.log_correlation_id:
        set_correlation_id()


def get_logger(name: str) -> logging.Logger:
    """Get a logger below the ``dhtseek`` namespace."""
    if name == "dhtseek" or name.startswith("dhtseek."):
        return logging.getLogger(name)
    return logging.getLogger(f"dhtseek.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = uuid.uuid4().hex[:12]
    correlation_id.set(corr_id)
    return corr_id


class LoggingContext:
    """Context manager that logs the start, end and duration of an operation."""

    def __init__(
        self,
        operation: str,
        log_level: int = logging.DEBUG,
        slow_threshold: float = 1.0,
        logger: logging.Logger | None = None,
        **kwargs: Any,
    ):
        """Initialize operation context manager.

        Args:
            operation: Name of the operation
            log_level: Level for the start/completion messages
            slow_threshold: Completions slower than this are logged at INFO
            logger: Logger to use (defaults to this module's logger)
            **kwargs: Additional context attached to the records

        """
        self.operation = operation
        self.kwargs = kwargs
        self.logger = logger or get_logger(__name__)
        self.log_level = log_level
        self.slow_threshold = slow_threshold
        self.start_time: float | None = None

    def __enter__(self):
        """Enter the context manager."""
        self.start_time = time.monotonic()
        self.logger.log(self.log_level, "Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the context manager."""
        duration = time.monotonic() - self.start_time if self.start_time else 0.0

        if exc_type is None:
            level = logging.INFO if duration >= self.slow_threshold else self.log_level
            self.logger.log(
                max(level, self.log_level),
                "Completed %s in %.3fs",
                self.operation,
                duration,
                extra=self.kwargs,
            )
        else:
            self.logger.error(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
                exc_info=exc_val is not None,
            )

        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context."""
    if isinstance(exc, DHTSeekError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=True,
        )
    else:
        logger.exception("%s: %s", context, exc)
