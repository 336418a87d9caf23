"""
Log Pulse - Structured Logging
==============================

Provides consistent, structured JSON logging for the log engine.
Carries two context values into every record:
- correlation_id: set per HTTP request
- source_id: set while a tail or import works on behalf of a log source

Usage:
    from shared.utils.logging import get_logger, setup_logging

    setup_logging(service_name="log-pulse", log_level="INFO")
    logger = get_logger(__name__)

    logger.info("Tail started", extra={"path": "/var/log/app.log"})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional
from contextvars import ContextVar

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
source_id_var: ContextVar[Optional[str]] = ContextVar("source_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[Optional[str]]] = {
    "correlation_id": correlation_id_var,
    "source_id": source_id_var,
}

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}

# Libraries that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ("watchdog", "sqlalchemy.engine", "uvicorn.access", "httpx", "httpcore")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON line.

    Each line includes:
    - timestamp (ISO 8601 with timezone)
    - level, service, logger, message
    - correlation_id / source_id when set in the current context
    - exception text when exc_info is attached
    - any extra fields passed by the caller
    """

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects context variables into every record.

    Explicit values in ``extra`` win over the context.
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Process the logging call to add extra context."""
        extra = kwargs.get("extra", {})

        for key, var in _CONTEXT_VARS.items():
            if key not in extra:
                value = var.get()
                if value:
                    extra[key] = value

        kwargs["extra"] = extra
        return msg, kwargs


_loggers: dict[str, ContextualLogger] = {}
_service_name: str = "log-pulse"


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """
    Configure logging for the service.

    Should be called once at service startup, typically in main.py.

    Args:
        service_name: Name written into every record
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format; otherwise use standard format
    """
    global _service_name
    _service_name = service_name

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {service_name} | %(levelname)s | %(name)s | %(message)s"
        ))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextualLogger:
    """
    Get a contextual logger for the given module.

    Args:
        name: Logger name, typically __name__

    Returns:
        ContextualLogger instance
    """
    if name not in _loggers:
        base_logger = logging.getLogger(name)
        _loggers[name] = ContextualLogger(base_logger, {})
    return _loggers[name]


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_var.get()


def set_source_id(source_id: Optional[str]) -> None:
    """
    Set the log source the current task is working for.

    Tail tasks set this once when they start; since each asyncio task runs
    in a copy of the context, sources never leak into each other.
    """
    source_id_var.set(source_id)
