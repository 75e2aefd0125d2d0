"""
Request timing middleware.

Stamps every response with X-Request-ID (echoed from the caller when
present) and X-Request-Duration-Ms, and writes one access-log line per
API request. Workflow action calls also log the action name, so a refused
transition can be found by application id and action.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probes hit these constantly
_QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000


def _workflow_fields() -> dict:
    view_args = request.view_args or {}
    fields = {"application_id": view_args.get("application_id")}
    if request.endpoint == "workflow_bp.execute_action":
        body = request.get_json(silent=True) or {}
        fields["action"] = body.get("action") if isinstance(body, dict) else None
    return fields


def init_request_timing(app: Flask):
    """Register the before/after hooks on *app*."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_and_log(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        if response.status_code >= 500:
            level = logging.ERROR
        elif elapsed_ms > SLOW_THRESHOLD_MS:
            level = logging.WARNING
        elif response.status_code >= 400:
            level = logging.INFO
        else:
            level = logging.DEBUG
        logger.log(
            level, "%s %s -> %d (%.0fms)", request.method, request.path, response.status_code, elapsed_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed_ms,
                "remote_addr": request.remote_addr,
                "request_id": g.request_id,
                **_workflow_fields(),
            },
        )
        return response
