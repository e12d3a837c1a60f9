"""
Service-layer exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``kpiboard.blueprints.register_error_handlers``) and get consistent
HTTP status codes everywhere.

Usage:
    from kpiboard.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Kpi", resource_id=42)
    raise ValidationError("newScore must be between 0 and 100", details={"newScore": "out of range"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Kpi", "Deliverable").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a rule (score out of range, unknown status,
    missing resolution notes). Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised when the caller's role, department or ownership check fails.

    Maps to HTTP 403. Always raised before any document is touched.
    """


class ConflictError(Exception):
    """Raised when a write cannot be committed because of a concurrent change.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value conflicted (e.g. "revision").
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} {field}={value!r} was modified concurrently"
        super().__init__(msg)


class EvidenceStorageError(Exception):
    """Raised when an evidence file cannot be written to storage."""
