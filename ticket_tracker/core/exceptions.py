"""
Errors raised by services and adapters.

Blueprints never catch these individually: ``register_error_handlers``
maps each class to its status code (NotFoundError 404, ValidationError
422, ConflictError and SyncBusyError 409).

Adapters distinguish two failure scopes:

    SourceUnreachableError   the external system as a whole is unusable;
                             the sync run fails
    MalformedItemError       one payload could not be normalised; it is
                             skipped and listed in the run summary
"""


class TrackerError(Exception):
    """Base class; ``details`` ends up in the JSON error body."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class NotFoundError(TrackerError):
    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        suffix = "" if resource_id is None else f" {resource_id}"
        super().__init__(f"{resource}{suffix} not found")
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(TrackerError):
    """Input is well-formed but breaks a domain rule."""


class ConflictError(TrackerError):
    """A uniqueness rule would be broken, e.g. a second team with the same name."""

    def __init__(self, resource: str, field: str, value=None) -> None:
        super().__init__(f"{resource} with {field}={value!r} already exists")
        self.resource = resource
        self.field = field
        self.value = value


class SyncBusyError(TrackerError):
    """start_sync refused: ``job_id`` is already running for ``source_type``."""

    def __init__(self, source_type: str, job_id: str | None = None) -> None:
        super().__init__(
            f"A {source_type} sync is already running (job {job_id})",
            details={"source_type": source_type, "job_id": job_id},
        )
        self.source_type = source_type
        self.job_id = job_id


class SourceUnreachableError(TrackerError):
    def __init__(self, source_type: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{source_type} unreachable: {message}")
        self.source_type = source_type
        self.status_code = status_code


class MalformedItemError(TrackerError):
    def __init__(self, external_key: str | None, message: str) -> None:
        self.external_key = external_key or "?"
        super().__init__(f"{self.external_key}: {message}")
