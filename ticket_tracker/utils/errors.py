"""JSON error bodies shared by every blueprint.

Every non-2xx response from the API has the shape::

    {"error": "<human text>", "code": "<machine code>", "details": {...}}

``details`` is omitted when empty. Views call ``api_error(E.X, "...")`` and
get the HTTP status that belongs to the code unless they pass ``status``.
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes. ``ERR_*`` for general failures, ``SYNC_*`` for the orchestrator."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # missing field
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # malformed field
    VALIDATION_RULE = "ERR_VALIDATION_RULE"           # well-formed but rejected
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    FORBIDDEN = "ERR_FORBIDDEN"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    SYNC_BUSY = "SYNC_BUSY"
    SYNC_SOURCE_DISABLED = "SYNC_SOURCE_DISABLED"


STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.SYNC_SOURCE_DISABLED: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.SYNC_BUSY: 409,
    E.VALIDATION_RULE: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def error_body(code: str, message: str, details: dict | None = None) -> dict:
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return body


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None):
    """Build ``(response, status)`` for a Flask view; unknown codes map to 400."""
    return jsonify(error_body(code, message, details)), status or STATUS_BY_CODE.get(code, 400)
