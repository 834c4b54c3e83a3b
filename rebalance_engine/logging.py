"""
Logging setup for the rebalance engine.

Every record is stamped with the active orchestrator cycle and account (when
set) so the lines of one cycle, or of one account's turn within it, can be
pulled out of the stream. Production emits one JSON object per line; a
bounded in-memory buffer backs the /logs endpoint.
"""

import json
import logging
import sys
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

current_cycle_id: ContextVar[str | None] = ContextVar("current_cycle_id", default=None)
current_account: ContextVar[str | None] = ContextVar("current_account", default=None)

SENSITIVE_KEYS = (
    "api_key",
    "apikey",
    "secret",
    "token",
    "password",
    "authorization",
    "private_key",
)

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def redact_sensitive(data: Any, depth: int = 0) -> Any:
    """Replace values under sensitive-looking keys with "[REDACTED]", recursively."""
    if depth > 10:
        return data
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if any(s in str(key).lower() for s in SENSITIVE_KEYS)
            else redact_sensitive(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list | tuple):
        return [redact_sensitive(item, depth + 1) for item in data]
    return data


class ContextFilter(logging.Filter):
    """Stamps records with an ISO timestamp, the cycle id and the account."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.timestamp = datetime.fromtimestamp(record.created, UTC).isoformat()
        record.cycle_id = current_cycle_id.get()
        record.account = current_account.get()
        record.context = "".join(
            f"[{value}] " for value in (record.cycle_id, record.account) if value
        )
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": getattr(record, "timestamp", None),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("cycle_id", "account"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


TEXT_FORMAT = "%(timestamp)s | %(levelname)-8s | %(name)s | %(context)s%(message)s"


class InMemoryHandler(logging.Handler):
    """Ring buffer of recent records for the operator API."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.records: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.records.append({
                "timestamp": getattr(record, "timestamp", None),
                "level": record.levelname,
                "level_no": record.levelno,
                "logger": record.name,
                "cycle_id": getattr(record, "cycle_id", None),
                "account": getattr(record, "account", None),
                "message": record.getMessage(),
                "extra": redact_sensitive(record.args) if isinstance(record.args, dict) else {},
            })
        except Exception:
            self.handleError(record)


_in_memory_handler = InMemoryHandler()


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: One JSON object per line instead of the text format

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.handlers.clear()
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    context = ContextFilter()

    stream = logging.StreamHandler(sys.stdout)
    stream.setLevel(numeric_level)
    stream.addFilter(context)
    stream.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(stream)

    _in_memory_handler.setLevel(numeric_level)
    _in_memory_handler.filters.clear()
    _in_memory_handler.addFilter(context)
    root.addHandler(_in_memory_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific module."""
    return logging.getLogger(name)


def get_in_memory_logs(
    level: str = "INFO",
    limit: int = 50,
    cycle_id: str | None = None,
) -> list[dict[str, Any]]:
    """Recent buffered records at or above level, optionally for one cycle."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    selected = [
        r
        for r in _in_memory_handler.records
        if r["level_no"] >= numeric_level and (cycle_id is None or r["cycle_id"] == cycle_id)
    ]
    return selected[-limit:]


def set_cycle_id(cycle_id: str) -> None:
    current_cycle_id.set(cycle_id)


def clear_cycle_id() -> None:
    current_cycle_id.set(None)


@contextmanager
def account_context(account: str) -> Iterator[None]:
    """Tag log records emitted inside the block with an account."""
    token = current_account.set(account)
    try:
        yield
    finally:
        current_account.reset(token)
