"""Logging setup shared by the API process and its background workers.

Every record carries the identifiers of the request, calling user and
generation task it was emitted for. Request handlers bind the first two in
middleware; poll workers bind ``task_id`` for their whole lifetime, so a
provider call made three minutes after submission still logs the task it
belongs to.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Mapping

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent

CONTEXT_FIELDS = ("request_id", "user_id", "task_id")

_CONTEXT: Dict[str, contextvars.ContextVar[str | None]] = {
    name: contextvars.ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")

_configured = False


def bind_context(**values: str | None) -> Dict[str, contextvars.Token[str | None]]:
    """Bind context identifiers; pass the returned tokens to ``unbind_context``."""
    return {name: _CONTEXT[name].set(value) for name, value in values.items()}


def unbind_context(tokens: Mapping[str, contextvars.Token[str | None]]) -> None:
    for name, token in tokens.items():
        _CONTEXT[name].reset(token)


def current_context(name: str) -> str | None:
    return _CONTEXT[name].get()


def get_request_id() -> str | None:
    return current_context("request_id")


class ContextFilter(logging.Filter):
    """Copy bound identifiers onto the record unless the caller set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: standard fields, context, then ``extra``."""

    _STANDARD = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in self._STANDARD and not key.startswith("_") and value is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _log_file_path() -> pathlib.Path:
    path = pathlib.Path(os.getenv("LOG_FILE", "logs/genorch.jsonl"))
    if not path.is_absolute():
        path = BASE_DIR.parent / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _console_handler(context_filter: logging.Filter) -> logging.Handler:
    level_name = os.getenv("LOG_LEVEL", "WARNING").upper()
    handler = logging.StreamHandler()
    handler.setLevel(getattr(logging, level_name, logging.WARNING))
    handler.addFilter(context_filter)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s "
            "(request_id=%(request_id)s user_id=%(user_id)s task_id=%(task_id)s)"
        )
    )
    return handler


def _file_handler(context_filter: logging.Filter) -> logging.Handler:
    handler = RotatingFileHandler(_log_file_path(), maxBytes=10_000_000, backupCount=5)
    handler.setLevel(logging.INFO)
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter())
    return handler


def configure_logging() -> None:
    """Install console and JSON-lines handlers on the root logger once."""
    global _configured
    if _configured:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()
    root_logger.addHandler(_console_handler(context_filter))
    root_logger.addHandler(_file_handler(context_filter))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


__all__ = [
    "CONTEXT_FIELDS",
    "bind_context",
    "configure_logging",
    "current_context",
    "get_request_id",
    "unbind_context",
]
