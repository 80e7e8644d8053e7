"""
Structured JSON logging for the billing kernel.

Every record under the ``billing_kernel`` logger namespace is rendered as a
single JSON object.  Fields bound with ``LogContext.bind(...)`` are merged
into every record emitted inside the block, so a service log line always
names the farm account, the acting user and the customer or contract whose
money moved.  The CLI also binds a ``correlation_id`` per invocation.

Usage:
    logger = get_logger("modules.settlement.service")
    with LogContext.bind(account_id=farm_id, customer_key="ram lal"):
        logger.info("allocation_committed", extra={"amount": "1200.00"})
"""

__all__ = [
    "CONTEXT_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

LOGGER_NAMESPACE = "billing_kernel"

CONTEXT_FIELDS = ("correlation_id", "account_id", "actor_id", "customer_key", "contract_id")

# Bound fields; each bind() installs a fresh dict and restores the old one.
_bound: ContextVar[dict[str, str]] = ContextVar("billing_log_context", default={})


class LogContext:
    """Request-scoped log fields, local to the current thread or task."""

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """
        Add ``fields`` to every record logged inside the block.

        ``None`` values are skipped; everything else is stored as ``str``.
        Outer bindings are restored on exit.

        Raises:
            TypeError: for a field outside ``CONTEXT_FIELDS``.
        """
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")

        merged = dict(_bound.get())
        merged.update({k: str(v) for k, v in fields.items() if v is not None})
        token = _bound.set(merged)
        try:
            yield
        finally:
            _bound.reset(token)

    @staticmethod
    def current() -> dict[str, str]:
        """Fields bound at this point, as a copy."""
        return dict(_bound.get())


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    return str(value)


def _error_fields(exc: BaseException) -> dict[str, Any]:
    # BillingKernelError subclasses carry a code plus structured attributes
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    fields.update(
        (f"exc_{name}", value)
        for name, value in vars(exc).items()
        if not name.startswith("_")
    )
    return fields


_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """Envelope, bound context, ``extra`` fields and error details as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_bound.get(),
        }
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in entry
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry.update(_error_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``billing_kernel`` namespace."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


_setup_lock = threading.Lock()
_installed: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install one JSON handler on the billing namespace.  Later calls are no-ops."""
    global _installed
    with _setup_lock:
        if _installed is not None:
            return
        _installed = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        _installed.setFormatter(StructuredFormatter())

        root = logging.getLogger(LOGGER_NAMESPACE)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(_installed)


def reset_logging() -> None:
    """Remove the installed handler. FOR TESTING ONLY."""
    global _installed
    with _setup_lock:
        root = logging.getLogger(LOGGER_NAMESPACE)
        if _installed is not None:
            root.removeHandler(_installed)
        _installed = None
        root.setLevel(logging.WARNING)
