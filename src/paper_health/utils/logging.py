"""
Structured logging and error handling framework for paper-health.

This module provides:
- Structured (JSON) logging configuration
- Custom exception classes for the monitoring subsystem
- Context-aware logging utilities
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


class LogLevel(str, Enum):
    """Log level enumeration for type safety."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogContext(str, Enum):
    """Log context categories for structured logging."""

    HEALTH = "health"
    PROBE = "probe"
    SAMPLER = "sampler"
    RECOVERY = "recovery"
    NOTIFICATION = "notification"
    CONFIG = "config"
    DATABASE = "database"


class PaperHealthException(Exception):
    """Base exception class for all paper-health errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)


class ConfigurationError(PaperHealthException):
    """Errors related to monitoring configuration."""

    pass


class ProbeError(PaperHealthException):
    """A dependency probe observed a broken contract (e.g. read/write mismatch)."""

    pass


class ProbeTimeoutError(ProbeError):
    """A dependency probe did not finish within its timeout."""

    pass


class RemediationError(PaperHealthException):
    """Errors raised by recovery actions."""

    pass


class NotificationError(PaperHealthException):
    """Errors related to notification delivery."""

    pass


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    # Attributes every LogRecord carries; anything else came in through `extra`
    standard_fields = {
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
        "getMessage",
        "context",
        "target",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "context"):
            log_data["context"] = record.context

        if hasattr(record, "target"):
            log_data["target"] = record.target

        for key, value in record.__dict__.items():
            if key not in self.standard_fields and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class ContextualLogger:
    """Logger with context management for structured logging."""

    def __init__(self, name: str, context: LogContext):
        self.logger = logging.getLogger(name)
        self.context = context.value
        self.target: str | None = None

    def set_target(self, target: str) -> None:
        """Set the monitored target for all subsequent log messages."""
        self.target = target

    def _log(
        self, level: int, message: str, extra_context: dict[str, Any] | None = None
    ) -> None:
        """Internal logging method with context injection."""
        extra: dict[str, Any] = {
            "context": self.context,
        }

        if self.target:
            extra["target"] = self.target

        if extra_context:
            extra.update(extra_context)

        self.logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, exception: Exception | None = None, **kwargs) -> None:
        """Log error message with context and optional exception."""
        if exception:
            self.logger.error(
                message,
                exc_info=exception,
                extra={"context": self.context, **kwargs},
            )
        else:
            self._log(logging.ERROR, message, kwargs)

    def critical(
        self, message: str, exception: Exception | None = None, **kwargs
    ) -> None:
        """Log critical message with context and optional exception."""
        if exception:
            self.logger.critical(
                message,
                exc_info=exception,
                extra={"context": self.context, **kwargs},
            )
        else:
            self._log(logging.CRITICAL, message, kwargs)


def get_logger(name: str, context: LogContext) -> ContextualLogger:
    """Get a contextual logger instance."""
    return ContextualLogger(name, context)


def setup_logging(
    log_level: str | LogLevel = LogLevel.INFO,
    log_file: Path | None = None,
    enable_structured: bool = True,
    enable_console: bool = True,
) -> None:
    """
    Setup logging configuration for the monitoring subsystem.

    Args:
        log_level: Minimum log level to capture
        log_file: Optional file path for log output
        enable_structured: Use JSON structured logging format
        enable_console: Enable console output
    """
    if isinstance(log_level, LogLevel):
        log_level = log_level.value

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        handlers.append(console_handler)

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        if enable_structured:
            handler.setFormatter(StructuredFormatter())
        else:
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                )
            )

    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
