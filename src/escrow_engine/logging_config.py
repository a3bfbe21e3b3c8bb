"""Structured logging configuration with escrow context.

Provides JSON logging where every record emitted while an escrow operation
is running carries that escrow's id, so one contract's lifecycle can be
followed across engines, monitors and the signer.
"""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from .logging import mask_sensitive_data

escrow_id_var: ContextVar[Optional[str]] = ContextVar("escrow_id", default=None)
operation_var: ContextVar[Optional[str]] = ContextVar("operation", default=None)

_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "escrow_id",
    "operation",
})


class EscrowContextFilter(logging.Filter):
    """Logging filter that adds the current escrow context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.escrow_id = escrow_id_var.get()
        record.operation = operation_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "escrow_id", None):
            log_data["escrow_id"] = record.escrow_id
        if getattr(record, "operation", None):
            log_data["operation"] = record.operation

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(mask_sensitive_data(log_data), default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for a process hosting the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(escrow_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(EscrowContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(EscrowContextFilter())
        root_logger.addHandler(file_handler)


@contextmanager
def escrow_context(escrow_id: str, operation: Optional[str] = None) -> Iterator[None]:
    """Bind an escrow id (and optionally operation name) to log records."""
    escrow_token = escrow_id_var.set(escrow_id)
    op_token = operation_var.set(operation)
    try:
        yield
    finally:
        operation_var.reset(op_token)
        escrow_id_var.reset(escrow_token)
