"""Logging setup for the engine.

Modules log through ``get_logger(__name__)`` and attach run context with
``extra={"node_id": ...}``. Both formatters below carry that context through:
the text one appends it as ``key=value`` pairs, the JSON one as fields.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Every LogRecord has these; anything else arrived through `extra=`
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """The ``extra=`` fields attached to ``record``, made JSON friendly."""
    context = {}
    for key, value in vars(record).items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        if isinstance(value, Enum):
            value = value.value
        elif is_dataclass(value) and not isinstance(value, type):
            value = asdict(value)
        context[key] = value
    return context


class ContextFormatter(logging.Formatter):
    """Plain text with the record's context appended."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = record_context(record)
        if not context:
            return text
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = text.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, context included."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(*, level: str = "INFO", json_logs: bool = False) -> None:
    """Attach a single stream handler to the root logger.

    Does nothing if the application already configured logging.

    Args:
        level: Root level name, e.g. 'DEBUG'.
        json_logs: Emit JSON lines instead of text.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if json_logs else ContextFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
