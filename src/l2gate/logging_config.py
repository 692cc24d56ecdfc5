"""Structured logging for the signature checker.

Every verification task binds a request id and the kind of payload it checks,
so log lines from concurrently running tasks can be told apart:

    {"level": "INFO", "message": "Rejected batch: invalid_offchain_signature",
     "request_id": "sig_3f9c...", "tx_kind": "batch", ...}
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tx_kind_var: ContextVar[Optional[str]] = ContextVar("tx_kind", default=None)

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "taskName",
    "exc_info", "exc_text", "stack_info", "request_id", "tx_kind",
))


class RequestContextFilter(logging.Filter):
    """Adds the current request id and payload kind to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.tx_kind = tx_kind_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }

        if getattr(record, "request_id", None):
            log_data["request_id"] = record.request_id
        if getattr(record, "tx_kind", None):
            log_data["tx_kind"] = record.tx_kind

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure root logging for a process hosting the signature checker.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or plain text (False)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(threadName)s %(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(RequestContextFilter())
    root_logger.addHandler(console_handler)


def generate_request_id() -> str:
    """Generate a new verification request id."""
    return f"sig_{uuid.uuid4().hex[:16]}"


def bind_request_context(request_id: str, tx_kind: str) -> None:
    """Bind request context for the current task.

    Each asyncio task runs in its own copy of the context, so binding here
    never leaks into sibling tasks.
    """
    request_id_var.set(request_id)
    tx_kind_var.set(tx_kind)


def mask_address(address: str, show_chars: int = 6) -> str:
    """Shorten an address for log output (0x1234ab...cdef)."""
    if not address or len(address) <= show_chars * 2 + 2:
        return address
    return f"{address[:show_chars + 2]}...{address[-4:]}"
