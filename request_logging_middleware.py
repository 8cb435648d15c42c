"""Request/response logging middleware.

Emits one ``request_start`` and one ``request_end`` JSON line per sampled
request. Bodies are redacted (payment PINs and account numbers never reach
the logs) and response bodies are truncated. ``request_end`` also reports
the time spent in database transactions and the resolved actor role.
"""

from __future__ import annotations

import json
import random
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, current_app, g, request

from app_logging import get_logger, get_request_context, merge_request_context, redact_sensitive_data

_request_logger = get_logger("app.request")

_SKIPPED_PATHS = {"/health"}


def _sample_rate() -> float:
    rate = float(current_app.config.get("REQUEST_LOG_SAMPLE_RATE", 1.0))
    return max(0.0, min(1.0, rate))


def _max_response_bytes() -> int:
    return max(0, int(current_app.config.get("RESPONSE_BODY_MAX_BYTES", 2048)))


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _should_log_request(path: str) -> bool:
    if path in _SKIPPED_PATHS or path.startswith("/static"):
        return False
    sample_rate = _sample_rate()
    return sample_rate >= 1.0 or random.random() <= sample_rate


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        json_body = request.get_json(silent=True)
        if json_body is not None:
            payload["json"] = redact_sensitive_data(json_body)
    return payload


def _response_body(resp: Response) -> Optional[str]:
    limit = _max_response_bytes()
    if limit == 0 or resp.direct_passthrough:
        return None
    body = resp.get_data(as_text=True)
    if body and resp.is_json:
        try:
            body = json.dumps(redact_sensitive_data(json.loads(body)))
        except ValueError:
            body = "<invalid json>"
    if body and len(body) > limit:
        return body[:limit] + f"... truncated {len(body) - limit} bytes"
    return body


def init_request_logging(app: Flask) -> None:
    """Register Flask hooks that emit structured request/response logs."""

    @app.before_request
    def _log_request_start() -> None:
        g._log_request = _should_log_request(request.path)
        g._request_start = time.perf_counter()
        route = request.url_rule.rule if request.url_rule else None
        merge_request_context(method=request.method, path=request.path, route=route,
                              client_ip=_client_ip())
        if not g._log_request:
            return
        _request_logger.info(
            "request_start",
            extra={
                "event": "request_start",
                "user_agent": request.headers.get("User-Agent"),
                "request_payload": _request_payload(),
            },
        )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = round((time.perf_counter() - g._request_start) * 1000, 2) \
            if hasattr(g, "_request_start") else None
        merge_request_context(status=response.status_code, duration_ms=duration_ms)
        if not getattr(g, "_log_request", False):
            return response

        context = get_request_context()
        level = _request_logger.warning if response.status_code >= 500 else _request_logger.info
        level(
            "request_end",
            extra={
                "event": "request_end",
                "db_time_ms": context.get("db_time_ms"),
                "actor_role": context.get("actor_role"),
                "response_body": _response_body(response),
            },
        )
        return response


__all__ = ["init_request_logging"]
