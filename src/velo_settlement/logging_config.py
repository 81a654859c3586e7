"""Structured logging with correlation IDs for settlement tracing.

Every settlement request runs inside a LogContext so that the recipient
payout, the fee leg and any background fee collection log under the same
correlation id, even when the fee leg finishes after the request returned.
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
chain_var: ContextVar[Optional[str]] = ContextVar("chain", default=None)

_CONTEXT_FIELDS = ("correlation_id", "user_id", "chain")

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", *_CONTEXT_FIELDS,
})

# Never emitted, even if passed through `extra`.
_REDACTED_KEYS = frozenset({"private_key", "signing_material", "secret", "mnemonic", "seed"})


class CorrelationIDFilter(logging.Filter):
    """Attach correlation context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.user_id = user_id_var.get()
        record.chain = chain_var.get()
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

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if key in _REDACTED_KEYS:
                log_data[key] = "***"
                continue
            log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the settlement engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or plain lines (False)
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
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CorrelationIDFilter())
        root_logger.addHandler(file_handler)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"stl_{uuid.uuid4().hex[:16]}"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        chain: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.user_id = user_id
        self.chain = chain
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        self._tokens = [(correlation_id_var, correlation_id_var.set(self.correlation_id))]
        if self.user_id:
            self._tokens.append((user_id_var, user_id_var.set(self.user_id)))
        if self.chain:
            self._tokens.append((chain_var, chain_var.set(self.chain)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def log_settlement(
    logger: logging.Logger,
    level: str,
    message: str,
    tx_hash: Optional[str] = None,
    amount: Optional[str] = None,
    chain: Optional[str] = None,
    **kwargs,
) -> None:
    """Log a settlement event with structured fields."""
    extra = kwargs.copy()
    if tx_hash:
        extra["tx_hash"] = tx_hash
    if amount:
        extra["amount"] = amount
    if chain:
        extra["settlement_chain"] = chain
    getattr(logger, level.lower())(message, extra=extra)
