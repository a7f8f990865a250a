"""
Reconciliation Core - Structured JSON Logging

Provides structured logging for batch runs and the API.
Outputs JSON format for log aggregation in production, plain text locally.
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback


_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
])


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON logs.
    Compatible with log aggregation services.
    """

    def __init__(self, service_name: str = "recon-core"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
        }

        log_data["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None,
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class RunContextFilter(logging.Filter):
    """
    Stamps the current run id and command on every log record.
    """

    def __init__(self):
        super().__init__()
        self._run_id: Optional[str] = None
        self._command: Optional[str] = None
        self._dry_run: Optional[bool] = None

    def set_run_context(
        self,
        run_id: Optional[str] = None,
        command: Optional[str] = None,
        dry_run: Optional[bool] = None
    ):
        self._run_id = run_id
        self._command = command
        self._dry_run = dry_run

    def clear_run_context(self):
        self._run_id = None
        self._command = None
        self._dry_run = None

    def filter(self, record: logging.LogRecord) -> bool:
        # Audit events carry their own run id
        if getattr(record, "run_id", None) is None:
            record.run_id = self._run_id
        record.command = self._command
        record.dry_run = self._dry_run
        return True


# Global run context filter instance
_run_context_filter: Optional[RunContextFilter] = None


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "recon-core"
) -> logging.Logger:
    """
    Configure logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    global _run_context_filter

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps stdout free for CLI reports
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

    _run_context_filter = RunContextFilter()
    handler.addFilter(_run_context_filter)

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def set_run_context(
    run_id: Optional[str] = None,
    command: Optional[str] = None,
    dry_run: Optional[bool] = None
):
    """Set run context for logging."""
    if _run_context_filter:
        _run_context_filter.set_run_context(run_id, command, dry_run)


def clear_run_context():
    """Clear run context."""
    if _run_context_filter:
        _run_context_filter.clear_run_context()
