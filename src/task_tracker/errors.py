"""
Error taxonomy for the Task Tracker core.

Every failure the core surfaces to a caller is a TaskTrackerError carrying a
stable ``kind`` string and an HTTP status code so the API layer can render a
structured error without inspecting exception types.
"""

from typing import Any, Dict, Optional


class TaskTrackerError(Exception):
    """Base class for structured Task Tracker errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(TaskTrackerError):
    """Referenced task, subtask or owned entity does not exist."""

    kind = "not_found"
    status_code = 404


class ForbiddenError(TaskTrackerError):
    """Caller is not the owner of the referenced entity."""

    kind = "forbidden"
    status_code = 403


class ValidationError(TaskTrackerError):
    """Missing required field, malformed patch or malformed recurrence pattern."""

    kind = "validation_error"
    status_code = 422


class ConflictError(TaskTrackerError):
    """A concurrent mutation changed the task between read and write."""

    kind = "conflict"
    status_code = 409


class DependencyError(TaskTrackerError):
    """The task store or notification sink is unavailable."""

    kind = "dependency_error"
    status_code = 503


def validation_error_from(exc: Exception) -> ValidationError:
    """
    Convert a pydantic validation error into a ValidationError.

    The first reported problem becomes the message, prefixed with its field
    location.
    """
    errors = exc.errors() if hasattr(exc, "errors") else []
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", str(exc))
    return ValidationError(
        f"{location}: {message}" if location else message,
        {"field": location} if location else None,
    )
