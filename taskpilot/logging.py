"""
TaskPilot Structured Logging

Services log snake_case event names and attach ids through ``extra=``::

    logger.info("task_selected", extra=log_extra(project_id=1, task_id=7))

Ids bound with :func:`log_context` (request, project, task, requirements,
workspace) are copied onto every record emitted inside the block, so a
scheduler tick or review pass does not need to thread them through every call.
"""

import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlsplit, urlunsplit

CONTEXT_FIELDS = ("request_id", "project_id", "task_id", "requirements_id", "workspace_id")

EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2

_REDACTED = "[REDACTED]"
_SENSITIVE_MARKERS = ("token", "secret", "password", "passwd", "api_key", "apikey", "credential", "private_key")

_BUILTIN_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"asctime", "message"}

_context: ContextVar[Dict[str, Any]] = ContextVar("taskpilot_log_context", default={})


def get_logger(name: str = "taskpilot") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context() -> Dict[str, Any]:
    return dict(_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ids for every record logged inside the block; None values are ignored."""
    merged = get_log_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def log_extra(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping None so context and defaults still apply."""
    return {k: v for k, v in fields.items() if v is not None}


def _redact(key: str, value: Any) -> Any:
    if any(marker in key.lower() for marker in _SENSITIVE_MARKERS):
        return _REDACTED
    if isinstance(value, dict):
        return {k: _redact(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(key, v) for v in value]
    if isinstance(value, str) and "@" in value:
        # user:pass@ in remote urls
        parts = urlsplit(value)
        if parts.scheme and "@" in parts.netloc:
            host = parts.netloc.rsplit("@", 1)[1]
            return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))
    return value


class RequestIdFilter(logging.Filter):
    """Copy bound context ids onto records and default missing ones to "-"."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if key not in _BUILTIN_ATTRS and not hasattr(record, key):
                setattr(record, key, value)
        for key in CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, "-")
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, extras included, secrets redacted."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _BUILTIN_ATTRS and key not in payload:
                payload[key] = _redact(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_TEXT_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s "
    "req=%(request_id)s project=%(project_id)s task=%(task_id)s"
)


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """Replace root handlers with a single stderr handler using the TaskPilot format."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return get_logger()


def init_cli_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> logging.Logger:
    """Set up logging from TASKPILOT_LOG_LEVEL / TASKPILOT_LOG_JSON unless overridden."""
    if json_output is None:
        json_output = os.environ.get("TASKPILOT_LOG_JSON", "").lower() in ("1", "true", "yes", "on")
    return setup_logging(level or os.environ.get("TASKPILOT_LOG_LEVEL") or "INFO", json_output=json_output)
