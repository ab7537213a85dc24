"""
JSON logging for storage operations.

Every line is one JSON object:

    {"@timestamp": ..., "level": "WARNING", "logger": "mediavault.storage.store",
     "message": "Delete failed", "event": "storage.delete_failed",
     "key": "posts/a.jpg", "reason": "backend_error"}

Fields come from three places, later ones winning:
the ambient operation context (`StructuredLogger.context`), the logger's
bound fields (`with_extra`) and the call's own keyword arguments.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO, Union


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: Union[str, int, LogLevel]) -> LogLevel:
        """Accept "warning", 30 or a LogLevel; unknown names raise KeyError."""
        if isinstance(value, str):
            return cls[value.strip().upper()]
        return cls(int(value))


_operation_fields: ContextVar[dict[str, Any]] = ContextVar("mediavault_log_fields", default={})

# Stock LogRecord attributes; anything else arrived through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_PLAIN_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_QUIET_LOGGERS = ("botocore", "aiobotocore", "boto3", "aioboto3", "urllib3", "asyncio")


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON with context and extras merged in."""

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(_operation_fields.get())
        fields.update(
            (name, value) for name, value in vars(record).items() if name not in _STANDARD_ATTRS
        )
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = fields.pop("event", None)
        if event:
            payload["event"] = event
        payload.update(fields)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """
    Keyword-argument logger over a stdlib logger.

        log = StructuredLogger("mediavault.storage")
        with log.context(op="read", key="posts/a.mp4"):
            log.info("Serving range", event="storage.read", status=206)
    """

    __slots__ = ("_logger", "_bound")

    def __init__(self, name: str, bound: Optional[dict[str, Any]] = None) -> None:
        self._logger = logging.getLogger(name)
        self._bound: dict[str, Any] = dict(bound or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.ERROR, message, **fields)

    def critical(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.CRITICAL, message, **fields)

    def log(self, level: LogLevel, message: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        # Context is copied into `extra` so non-JSON handlers (and caplog) see it
        extra = {**_operation_fields.get(), **self._bound, **fields}
        self._logger.log(level, message, extra=extra)

    def with_extra(self, **fields: Any) -> StructuredLogger:
        """Child logger that adds `fields` to every line."""
        return StructuredLogger(self._logger.name, {**self._bound, **fields})

    @staticmethod
    def context(**fields: Any) -> OperationContext:
        return OperationContext(fields)


class OperationContext:
    """Adds fields to every line logged inside the `with` block (task-local)."""

    __slots__ = ("_fields", "_token")

    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token: Optional[Token] = None

    def __enter__(self) -> OperationContext:
        self._token = _operation_fields.set({**_operation_fields.get(), **self._fields})
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _operation_fields.reset(self._token)
            self._token = None


def current_context() -> dict[str, Any]:
    return dict(_operation_fields.get())


def setup_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Install a single root handler.

    Args:
        level: Minimum level for the root logger and handler
        json_output: JSON lines when True, a pipe-separated text format otherwise
        stream: Destination (stderr by default)
    """
    level = LogLevel.parse(level)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT))
    root.addHandler(handler)

    # SDK and transport chatter
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
