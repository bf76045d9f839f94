"""
Capability checks for mutating endpoints.

The identity provider in front of this service forwards the caller's
permission document as a JSON header::

    X-Capabilities: {"flags": ["sync.trigger"], "project_ids": [3, 7]}

It is parsed at the request boundary into a typed CapabilitySet.
Nothing downstream touches the raw document.

Usage:
    @bp.route("/api/v1/work-items/<int:item_id>/estimate", methods=["PUT"])
    @require_capability("estimates.update")
    def update_estimate(item_id):
        ...

When API_AUTH_ENABLED is false (development, testing) the decorator
passes through.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass, field

from flask import current_app, request

from ticket_tracker.core.exceptions import ValidationError
from ticket_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

KNOWN_FLAGS = frozenset({
    "sync.trigger",
    "sync.cancel",
    "estimates.update",
    "movements.justify",
    "teams.manage",
    "aggregations.recalculate",
    "admin",
})

_HEADER = "X-Capabilities"


@dataclass(frozen=True)
class CapabilitySet:
    """Named capability flags plus the project ids they are scoped to.

    An empty ``project_ids`` set means "all projects".
    """

    flags: frozenset[str] = field(default_factory=frozenset)
    project_ids: frozenset[int] = field(default_factory=frozenset)

    @classmethod
    def from_document(cls, doc) -> "CapabilitySet":
        """Validate a loosely-typed permission document.

        Raises:
            ValidationError: unknown flag, wrong shape, non-integer id.
        """
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise ValidationError("Capability document must be an object")

        raw_flags = doc.get("flags", [])
        raw_ids = doc.get("project_ids", [])
        if not isinstance(raw_flags, list) or not isinstance(raw_ids, list):
            raise ValidationError("flags and project_ids must be lists")

        unknown = [f for f in raw_flags if f not in KNOWN_FLAGS]
        if unknown:
            raise ValidationError(
                "Unknown capability flags", details={"flags": sorted(map(str, unknown))},
            )
        if any(isinstance(p, bool) or not isinstance(p, int) for p in raw_ids):
            raise ValidationError("project_ids must be integers")

        return cls(flags=frozenset(raw_flags), project_ids=frozenset(raw_ids))

    def allows(self, flag: str, project_id: int | None = None) -> bool:
        if "admin" in self.flags:
            return True
        if flag not in self.flags:
            return False
        if project_id is None or not self.project_ids:
            return True
        return project_id in self.project_ids


def _auth_enabled() -> bool:
    return str(current_app.config.get("API_AUTH_ENABLED", "false")).lower() == "true"


def current_capabilities() -> CapabilitySet:
    """Parse the caller's CapabilitySet from the request header."""
    raw = request.headers.get(_HEADER)
    try:
        doc = json.loads(raw) if raw else None
    except ValueError as exc:
        raise ValidationError(f"{_HEADER} header is not valid JSON") from exc
    return CapabilitySet.from_document(doc)


def require_capability(flag: str, project_arg: str | None = None):
    """
    Decorator: require ``flag`` in the caller's CapabilitySet.

    Args:
        flag: Capability name, e.g. "sync.trigger".
        project_arg: Optional view kwarg holding a project id to scope-check.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not _auth_enabled():
                return f(*args, **kwargs)

            try:
                caps = current_capabilities()
            except ValidationError as exc:
                return api_error(E.FORBIDDEN, str(exc), status=403, details=exc.details)

            project_id = kwargs.get(project_arg) if project_arg else None
            if not caps.allows(flag, project_id):
                logger.warning("Capability '%s' denied on %s", flag, f.__name__)
                return api_error(E.FORBIDDEN, "Permission denied", details={"required": flag})

            return f(*args, **kwargs)
        return decorated
    return decorator
