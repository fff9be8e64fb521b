"""Structured logging configuration for CAFS.

Provides JSON-formatted logs with correlation IDs and storage context
(folder, digest, operation) for production observability.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Context variable for correlation ID tracking across async operations
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    'correlation_id', default=None
)

_CONTEXT_FIELDS = ("folder", "digest", "operation", "duration_ms")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs logs in JSON format with timestamp, level, logger name, message,
    and optional context fields like folder, digest, operation, correlation_id.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)
        if hasattr(record, "extra"):
            log_data["extra"] = record.extra

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Helper for structured logging with context fields.

    Wraps standard Python logger to make it easy to add structured fields
    like folder, digest, operation, duration_ms, etc.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_operation(
        self,
        level: str,
        message: str,
        folder: str | None = None,
        digest: str | None = None,
        operation: str | None = None,
        duration_ms: int | None = None,
        exc_info: bool = False,
        **extra: Any
    ) -> None:
        """Log with structured fields.

        Args:
            level: Log level (INFO, WARNING, ERROR, etc.)
            message: Log message
            folder: Optional storage folder
            digest: Optional content digest
            operation: Optional operation name (e.g., "cas.content.store")
            duration_ms: Optional operation duration in milliseconds
            exc_info: Attach the exception currently being handled
            **extra: Additional fields to include in log
        """
        log_level = getattr(logging, level.upper())
        if not self.logger.isEnabledFor(log_level):
            return

        record = self.logger.makeRecord(
            self.logger.name,
            log_level,
            "(structured)",
            0,
            message,
            (),
            None
        )
        if exc_info:
            record.exc_info = sys.exc_info()

        if folder:
            record.folder = folder
        if digest:
            record.digest = digest
        if operation:
            record.operation = operation
        if duration_ms is not None:
            record.duration_ms = duration_ms
        if extra:
            record.extra = extra

        self.logger.handle(record)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log at INFO level."""
        self.log_operation("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log at WARNING level."""
        self.log_operation("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR level."""
        self.log_operation("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log at DEBUG level."""
        self.log_operation("DEBUG", message, **kwargs)


def _make_formatter(structured: bool) -> logging.Formatter:
    if structured:
        return StructuredFormatter()
    return logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def configure_logging(
    log_level: str = "INFO",
    structured: bool = True,
    log_file: str | None = None
) -> None:
    """Configure application logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        structured: If True, use JSON formatter; if False, use human-readable
        log_file: Optional file path to write logs to
    """
    root_logger = logging.getLogger("cafs")
    root_logger.setLevel(log_level.upper())

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_make_formatter(structured))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_make_formatter(structured))
        root_logger.addHandler(file_handler)
