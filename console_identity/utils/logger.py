"""
Structured JSON logging.

Modules obtain loggers through ``get_logger``. Keyword arguments of a log
call become top-level keys of the JSON line::

    logger.warning("Directory bind rejected", event="auth.bind_rejected", dn=dn)

``logging_context`` adds keys to every line written inside its block, which
the admin CLI uses to tag each line with the running command.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = ["EventFormatter", "EventLogger", "configure", "get_logger", "logging_context"]

# attributes every LogRecord carries; anything else on a record is an event field
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_CALL_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

_scope: ContextVar[Mapping[str, Any]] = ContextVar("console_identity_log_scope", default={})


class EventFormatter(logging.Formatter):
    """One JSON object per record: fixed header keys, then the event fields."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(_scope.get())
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            line[key] = value
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class EventLogger(logging.LoggerAdapter):
    """Moves the keyword fields of each call into the record's ``extra``."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        fields = dict(self.extra or {})
        for key in [key for key in kwargs if key not in _CALL_KWARGS]:
            fields[key] = kwargs.pop(key)
        fields.update(kwargs.get("extra") or {})
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str, **static_fields: Any) -> EventLogger:
    """Logger for ``name``; ``static_fields`` are added to every line it writes."""
    return EventLogger(logging.getLogger(name), static_fields)


def configure(*, level: int | str = logging.INFO, handlers: list[logging.Handler] | None = None) -> None:
    """Route the root logger to JSON lines on stderr, or to ``handlers``."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root = logging.getLogger()
    root.handlers = []
    for handler in handlers or [logging.StreamHandler()]:
        if handler.formatter is None:
            handler.setFormatter(EventFormatter())
        root.addHandler(handler)
    root.setLevel(level)


@contextmanager
def logging_context(**fields: Any) -> Iterator[None]:
    """Add ``fields`` to every line logged inside the block."""
    token = _scope.set({**_scope.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _scope.reset(token)
