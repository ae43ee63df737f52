"""
Structured Logging Configuration for hookflow

Provides JSON-formatted logging for workers and human-readable logs for development:
- Request ID tracking for inbound HTTP calls
- Execution/tenant tracking inside workers (every node job logs its chain)
- Configurable log levels
- Console and file handlers
"""

import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from contextvars import ContextVar
import os

# Context variables survive across awaits inside one request or job
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
execution_id_var: ContextVar[Optional[str]] = ContextVar('execution_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)

NOISY_LOGGERS = ("httpx", "httpcore", "kombu", "amqp")

_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info', 'taskName',
])


def _trace_fields() -> Dict[str, str]:
    fields = {}
    for key, var in (
        ("request_id", request_id_var),
        ("execution_id", execution_id_var),
        ("tenant_id", tenant_id_var),
    ):
        value = var.get()
        if value:
            fields[key] = value
    return fields


class JSONFormatter(logging.Formatter):
    """
    Outputs logs as one JSON object per line.

    Includes timestamp, level, logger, message, the trace ids that are set
    (request_id, execution_id, tenant_id), exception text and any `extra` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_trace_fields())

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed via logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Format: [TIMESTAMP] LEVEL - logger - message (request_id=.., execution_id=..)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        trace = _trace_fields()
        if trace:
            base += " (" + ", ".join(f"{k}={v}" for k, v in trace.items()) + ")"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for hookflow.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSON formatter (workers), else standard formatter (dev)
        log_file: Optional file path to write logs to

    Environment Variables:
        LOG_LEVEL, JSON_LOGS, LOG_FILE override the arguments.
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Client libraries log every request at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "level": level,
            "json_logs": json_logs,
            "log_file": log_file or "none"
        }
    )


def set_request_id(request_id: str) -> None:
    """Set request ID for the current request; all following logs carry it."""
    request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear request ID so it does not leak into the next request."""
    request_id_var.set(None)


def bind_execution(execution_id: Optional[str], tenant_id: Optional[str] = None) -> None:
    """
    Tag every log line emitted while a node job runs with its execution and tenant.

    Called by the worker before running a node and cleared with clear_execution().
    """
    execution_id_var.set(execution_id)
    tenant_id_var.set(tenant_id)


def clear_execution() -> None:
    execution_id_var.set(None)
    tenant_id_var.set(None)
