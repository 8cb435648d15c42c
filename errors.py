"""Engine error types and their JSON rendering.

Every engine failure derives from :class:`EngineError`. Each carries an HTTP
status, a short title and structured details (conflict lists, limit counts)
so that callers can decide how to proceed, for example by offering a forced
override to a privileged user.

Errors are rendered as problem-details JSON::

    {"type": "conflict", "title": "Conflict", "status": 409,
     "detail": "...", "request_id": "...", "conflicts": [...]}
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from app_logging import get_logger, get_request_id

_logger = get_logger("app.errors")


class EngineError(Exception):
    """Base class for failures raised by the engine."""

    status_code = 500
    error_type = "engine_error"
    title = "Engine error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.error_type,
            "title": self.title,
            "status": self.status_code,
            "detail": self.message,
        }
        payload.update(self.details)
        return payload


class ValidationError(EngineError):
    """Malformed input, e.g. an empty weekday set."""

    status_code = 400
    error_type = "validation_error"
    title = "Invalid request"


class AuthorizationError(EngineError):
    """The caller's role does not permit the action."""

    status_code = 403
    error_type = "authorization_error"
    title = "Forbidden"


class NotFoundError(EngineError):
    status_code = 404
    error_type = "not_found"
    title = "Not found"


class ConflictError(EngineError):
    """Trainer double-booking or a state that changed under the caller."""

    status_code = 409
    error_type = "conflict"
    title = "Conflict"


class ModificationError(EngineError):
    """The lecture is locked against modification."""

    status_code = 422
    error_type = "modification_error"
    title = "Lecture locked"


class LimitExceededError(EngineError):
    """The postponement cap has been reached."""

    status_code = 422
    error_type = "limit_exceeded"
    title = "Postponement limit reached"

    def __init__(self, message: str, count: int, max: int) -> None:  # noqa: A002
        super().__init__(message, count=count, max=max)
        self.count = count
        self.max = max


def _problem(status: int, title: str, detail: str, error_type: str, **extra: Any):
    payload: Dict[str, Any] = {
        "type": error_type,
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": get_request_id(),
    }
    payload.update(extra)
    response = jsonify(payload)
    response.status_code = status
    return response


def init_error_handlers(app: Flask) -> None:
    """Register handlers that render every failure as problem details."""

    @app.errorhandler(EngineError)
    def _handle_engine_error(error: EngineError):
        _logger.warning(
            "request rejected",
            extra={"error_type": type(error).__name__, "error": error.message},
        )
        payload = error.to_dict()
        payload["request_id"] = get_request_id()
        response = jsonify(payload)
        response.status_code = error.status_code
        return response

    @app.errorhandler(HTTPException)
    def _handle_http_error(error: HTTPException):
        return _problem(
            error.code or 500,
            error.name,
            error.description or error.name,
            "http_error",
        )

    @app.errorhandler(SQLAlchemyError)
    def _handle_db_error(error: SQLAlchemyError):
        _logger.error("Database operation failed", exc_info=error)
        return _problem(
            503,
            "Database temporarily unavailable",
            "The data store could not complete the request.",
            "database_unavailable",
        )


__all__ = [
    "AuthorizationError",
    "ConflictError",
    "EngineError",
    "LimitExceededError",
    "ModificationError",
    "NotFoundError",
    "ValidationError",
    "init_error_handlers",
]
