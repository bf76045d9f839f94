"""
Per-request correlation id and duration.

Every response carries ``X-Request-ID`` (echoed from the caller when sent,
otherwise a fresh 12-char hex id) and ``X-Request-Duration-Ms``. The same
id is attached to the access log record so a slow sync trigger can be
followed from the HTTP line to the job logs.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

# Health probes and job-progress polling would drown the access log
QUIET_PATHS = ("/api/v1/health/", "/api/v1/sync/jobs/")


def _incoming_request_id() -> str:
    supplied = (request.headers.get("X-Request-ID") or "").strip()
    return supplied[:64] if supplied else uuid.uuid4().hex[:12]


def _log_level(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _open_request():
        g.request_id = _incoming_request_id()
        g.request_started = time.perf_counter()

    @app.after_request
    def _close_request(response):
        started = g.get("request_started")
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if not request.path.startswith(QUIET_PATHS):
            logger.log(
                _log_level(response.status_code, elapsed),
                "%s %s -> %d", request.method, request.path, response.status_code,
                extra={
                    "request_id": g.request_id,
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed,
                    "remote_addr": request.remote_addr,
                },
            )
        return response
