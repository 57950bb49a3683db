# ==== STRUCTURED LOGGING WITH LOGURU ==== #

"""
Structured logging with loguru for OrderDesk.

This module provides JSON logging with correlation ID and OpenTelemetry
trace context, file rotation, interception of standard library logging and
a small set of helpers for business events and slow operations.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor


# ==== INITIALIZATION ==== #

class InterceptHandler(logging.Handler):
    """Route standard library log records through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def init_logging(level: str = "INFO", log_to_files: bool = True) -> None:
    """Initialize structured logging with loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_files: Also write rotated JSON files under ./logs
    """
    logger.remove()

    # Console handler with JSON formatting for production
    logger.add(
        sys.stdout,
        format="{message}",
        serialize=True,
        level=level.upper(),
        enqueue=True,
        colorize=False,
        backtrace=True,
        diagnose=False,
    )

    if log_to_files:
        logs_dir = Path("logs")
        logs_dir.mkdir(exist_ok=True)

        logger.add(
            logs_dir / "orderdesk_{time:YYYY-MM-DD}.log",
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            serialize=True,
            level="DEBUG",
            enqueue=True,
        )

        # Payment and store failures are kept longer
        logger.add(
            logs_dir / "orderdesk_errors_{time:YYYY-MM-DD}.log",
            rotation="50 MB",
            retention="90 days",
            compression="gz",
            serialize=True,
            level="ERROR",
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    try:
        LoggingInstrumentor().instrument(set_logging_format=False)
    except Exception as e:
        logger.warning(f"Failed to setup OpenTelemetry logging: {e}")

    logger.info("Structured logging initialized", level=level)


# ==== CONTEXTUAL LOGGER ==== #

class ContextualLogger:
    """Loguru logger with automatic context injection.

    Keyword arguments passed to any log call are bound as structured
    fields, together with the correlation id of the current request and
    the active OpenTelemetry trace/span ids.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logger.bind(logger_name=name)

    def _add_context(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        context: Dict[str, Any] = {"logger_name": self.name}

        if extra:
            context.update(extra)

        # Imported lazily: the middleware package imports this module
        from app.middleware.correlation import get_correlation_id
        correlation_id = get_correlation_id()
        if correlation_id:
            context.setdefault("correlation_id", correlation_id)

        span = trace.get_current_span()
        span_context = span.get_span_context()
        if span_context.is_valid:
            context["trace_id"] = format(span_context.trace_id, "032x")
            context["span_id"] = format(span_context.span_id, "016x")

        return context

    def debug(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).debug(msg)

    def info(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).info(msg)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).warning(msg)

    def error(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).error(msg)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).critical(msg)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log exception with full traceback and context."""
        self.logger.bind(**self._add_context(kwargs)).exception(msg)


# ==== LOGGING UTILITIES ==== #

def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextualLogger instance
    """
    return ContextualLogger(name)


def log_performance(operation: str, duration: float, **context: Any) -> None:
    """Log operation duration, escalating the level for slow operations.

    Args:
        operation: Name of the operation
        duration: Duration in seconds
        **context: Additional context fields
    """
    perf_logger = logger.bind(
        operation=operation,
        duration_seconds=round(duration, 3),
        performance_log=True,
        **context
    )

    if duration > 10.0:
        perf_logger.warning(f"Slow operation detected: {operation}")
    elif duration > 5.0:
        perf_logger.info(f"Operation completed: {operation}")
    else:
        perf_logger.debug(f"Operation completed: {operation}")


def log_business_event(event_type: str, **context: Any) -> None:
    """Log a business event (invoice created, payment reconciled, ...).

    Args:
        event_type: Type of business event
        **context: Additional business context
    """
    logger.bind(
        event_type=event_type,
        business_event=True,
        **context
    ).info(f"Business event: {event_type}")
