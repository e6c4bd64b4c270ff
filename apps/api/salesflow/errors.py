from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error for pipeline operations. Carries a stable code and the HTTP status it maps to."""

    code = "error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationFailed(PipelineError):
    """Malformed input or a precondition on the request itself does not hold."""

    code = "validation"
    status_code = 422


class InvalidStage(ValidationFailed):
    code = "invalid_stage"


class NotFound(PipelineError):
    code = "not_found"
    status_code = 404


class Conflict(PipelineError):
    """The stored state moved on since the caller read it. Nothing was written."""

    code = "conflict"
    status_code = 409


class NoAvailableOwner(PipelineError):
    code = "no_available_owner"
    status_code = 409


class Unauthorized(PipelineError):
    code = "unauthorized"
    status_code = 401


class Forbidden(PipelineError):
    code = "forbidden"
    status_code = 403


class ExternalFailure(PipelineError):
    """A messaging, calendar, payment or inference capability failed or timed out."""

    code = "external_failure"
    status_code = 502


class StorageFailure(PipelineError):
    """The database rejected or lost the write. The transaction was rolled back and is safe to retry."""

    code = "storage_error"
    status_code = 503
