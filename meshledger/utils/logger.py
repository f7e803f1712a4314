"""Structured JSON logging with context injection.

Every record carries the operation context (request_id, actor_id,
equipment_id, ip_address, action) and, when a span is active, the
OpenTelemetry trace_id/span_id.
"""

import logging
import sys
import time
from contextlib import contextmanager
from functools import wraps
from typing import Optional, Callable, Any

from pythonjsonlogger import jsonlogger

from meshledger.config import settings
from meshledger.utils.context import get_context, get_trace_context

CONTEXT_FIELDS = (
    "request_id",
    "actor_id",
    "equipment_id",
    "ip_address",
    "action",
    "trace_id",
    "span_id",
)


class ContextInjectionFilter(logging.Filter):
    """Logging filter that injects context variables into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add operation and trace context to a record.

        Args:
            record: Record being emitted

        Returns:
            Always True; the filter only annotates
        """
        for key, value in get_context().items():
            setattr(record, key, value)

        for key, value in get_trace_context().items():
            setattr(record, key, value)

        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds level, logger name and context fields."""

    def add_fields(
        self, log_record: dict, record: logging.LogRecord, message_dict: dict
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = record.created

        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for non-JSON output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        if record.levelname in self.COLORS:
            record.levelname = (
                f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
            )
        return super().format(record)


def setup_logging() -> None:
    """Configure application logging with JSON or console formatting."""
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.addFilter(ContextInjectionFilter())

    if settings.LOG_FORMAT == "json":
        formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(logger)s %(message)s",
            timestamp=True,
        )
    else:
        formatter = ColoredConsoleFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Logger whose records pass through the context filter once
        ``setup_logging`` has run
    """
    return logging.getLogger(name)


@contextmanager
def log_timer(operation_name: str, logger: Optional[logging.Logger] = None):
    """Context manager to log operation duration.

    Args:
        operation_name: Name reported in the "operation" field
        logger: Logger to write to (this module's logger by default)

    Example:
        with log_timer("probe_batch", logger):
            await run_batch()
        # Logs: {"message": "Operation completed: probe_batch", "duration_ms": 12.5}
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    start_time = time.time()

    try:
        yield
    finally:
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Operation completed: {operation_name}",
            extra={"operation": operation_name, "duration_ms": round(duration_ms, 2)},
        )


def log_duration(operation_name: Optional[str] = None):
    """Decorator to log coroutine execution duration and failures.

    Failures are logged at ERROR and re-raised.

    Args:
        operation_name: Name reported in the "function" field (the
            coroutine's name by default)

    Example:
        @log_duration("conflict_scan")
        async def scan(self, session): ...
    """

    def decorator(func: Callable) -> Callable:
        name = operation_name or func.__name__
        func_logger = logging.getLogger(func.__module__)

        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                func_logger.error(
                    f"Function failed: {name}",
                    extra={
                        "function": name,
                        "duration_ms": round(duration_ms, 2),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise
            duration_ms = (time.time() - start_time) * 1000
            func_logger.info(
                f"Function completed: {name}",
                extra={"function": name, "duration_ms": round(duration_ms, 2)},
            )
            return result

        return async_wrapper

    return decorator
