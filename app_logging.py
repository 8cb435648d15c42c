"""Structured JSON logging for the lecture and payroll engine.

Every record is rendered as one JSON line. Records are enriched with the
per-request context kept in ``contextvars`` (correlation ID, actor role,
database time) and with the lecture, course and trainer ids that the engine
modules pass through ``extra=``, so a single postponement or payroll run can
be followed across log lines. Payment secrets are redacted before a record
is written.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_request_context_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = (
    contextvars.ContextVar("request_context", default=None)
)

_REDACTED = "[REDACTED]"
_SENSITIVE_FIELDS = {
    field.strip().lower()
    for field in os.environ.get(
        "SENSITIVE_FIELDS",
        "password,token,pin,payment_pin,account_number,payment_account_number",
    ).split(",")
    if field.strip()
}
# Payout accounts keep their last digits so finance can tell them apart.
_MASKED_FIELDS = {"account_number", "payment_account_number"}
_VISIBLE_SUFFIX = 4

# Request-level attributes, then the domain ids the engine logs with.
_RECORD_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "client_ip",
    "route",
    "actor_role",
    "db_time_ms",
    "lecture_id",
    "course_id",
    "trainer_id",
    "error_type",
    "error",
)
_JSON_LOG_FIELDS = ("ts", "level", "logger", "msg", "request_id") + _RECORD_FIELDS + (
    "stack",
    "extra_context",
)

# Everything logging.LogRecord sets by itself; the rest came in via ``extra=``.
_LOG_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    """Bind the correlation ID to the current context and its log records."""

    _request_id_ctx.set(request_id)
    merge_request_context(request_id=request_id)


def clear_request_id() -> None:
    _request_id_ctx.set(None)


def get_request_context() -> Dict[str, Any]:
    ctx = _request_context_ctx.get()
    if ctx is None:
        ctx = {}
        _request_context_ctx.set(ctx)
    return ctx


def merge_request_context(**kwargs: Any) -> None:
    """Add non-empty values to the request context (copy on write)."""

    ctx = dict(get_request_context())
    ctx.update({key: value for key, value in kwargs.items() if value is not None})
    _request_context_ctx.set(ctx)


def clear_request_context() -> None:
    _request_context_ctx.set({})


def sensitive_fields() -> Iterable[str]:
    return _SENSITIVE_FIELDS


def _mask(key: str, value: Any) -> str:
    text = "" if value is None else str(value)
    if key in _MASKED_FIELDS and len(text) > _VISIBLE_SUFFIX:
        return "*" * (len(text) - _VISIBLE_SUFFIX) + text[-_VISIBLE_SUFFIX:]
    return _REDACTED


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Return a copy of ``data`` with sensitive values hidden.

    Mappings and sequences are walked recursively and keys are matched
    case-insensitively. PINs and passwords are replaced outright, payout
    account numbers keep their last four characters::

        >>> redact_sensitive_data({"method": "qi_card", "account_number": "4000111122223333"})
        {'method': 'qi_card', 'account_number': '************3333'}
    """

    fields_set = {field.lower() for field in (fields or sensitive_fields())}

    if isinstance(data, Mapping):
        redacted: Dict[Any, Any] = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in fields_set:
                redacted[key] = _mask(lowered, value)
            else:
                redacted[key] = redact_sensitive_data(value, fields_set)
        return redacted
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, fields_set) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object with a fixed set of keys."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = dict.fromkeys(_JSON_LOG_FIELDS)
        payload.update({
            "ts": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
        })

        for key, value in get_request_context().items():
            if payload.get(key) is None:
                payload[key] = value

        for field in _RECORD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__
            payload["error"] = str(record.exc_info[1])
            payload["stack"] = self.formatException(record.exc_info)
        elif record.stack_info:
            payload["stack"] = record.stack_info

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_ATTRS and key not in payload and not key.startswith("_")
        }
        if extra:
            payload["extra_context"] = redact_sensitive_data(extra)

        return json.dumps(payload, default=_json_default, separators=(",", ":"))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


_configured = False


def configure_logging() -> None:
    """Install the JSON handler on the root logger once per process."""

    global _configured
    if _configured:
        return

    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    logging.captureWarnings(True)

    # Request lines come from the request logging middleware.
    for name in ("werkzeug", "gunicorn.access", "sqlalchemy.engine"):
        quiet = logging.getLogger(name)
        quiet.handlers = []
        quiet.propagate = True
        quiet.setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


class DBTimer:
    """Add the time spent inside a transaction to the request's ``db_time_ms``."""

    def __enter__(self) -> "DBTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        elapsed = (time.perf_counter() - self._start) * 1000
        total = get_request_context().get("db_time_ms") or 0.0
        merge_request_context(db_time_ms=round(total + elapsed, 2))


__all__ = [
    "DBTimer",
    "JSONFormatter",
    "clear_request_context",
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "merge_request_context",
    "redact_sensitive_data",
    "sensitive_fields",
    "set_request_id",
]
