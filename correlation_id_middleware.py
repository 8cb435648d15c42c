"""Correlation ID middleware.

Every request carries an ``X-Request-ID``. A well-formed incoming ID is
reused so that gateway, engine and client logs can be joined; otherwise a
fresh UUID is issued. The ID is echoed on the response and attached to every
log line and problem-details body emitted while the request is handled.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

from flask import Flask, g, request

from actors import ROLE_HEADER, TRAINER_HEADER
from app_logging import clear_request_context, clear_request_id, merge_request_context, set_request_id

HEADER_NAME = "X-Request-ID"

_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_request_id() -> Optional[str]:
    header_val = request.headers.get(HEADER_NAME, "").strip()
    if header_val and _VALID_ID.match(header_val):
        return header_val
    return None


def init_correlation_id(app: Flask) -> None:
    """Register handlers that attach a correlation ID to each request."""

    @app.before_request
    def _assign_request_id() -> None:
        request_id = _incoming_request_id() or str(uuid.uuid4())
        set_request_id(request_id)
        g.request_id = request_id
        # Unverified caller hints; actors.current_actor() is the authority.
        merge_request_context(
            request_id=request_id,
            claimed_role=request.headers.get(ROLE_HEADER) or None,
            claimed_trainer_id=request.headers.get(TRAINER_HEADER) or None,
        )

    @app.after_request
    def _append_request_id(response):
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _teardown_request(_exc):
        clear_request_id()
        clear_request_context()


__all__ = ["HEADER_NAME", "init_correlation_id"]
