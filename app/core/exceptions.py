"""
Change-management exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``app.utils.errors.register_error_handlers``) and get consistent HTTP
status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProjectVersion", resource_id=42)
    raise ValidationError("Unknown target_action", details={"target_action": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested project, version, event, workflow or rule does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "ChangeEvent").
        resource_id: The PK that was looked up. Included in logs and message.
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
    """Raised when input is well-formed but violates a business rule.

    Malformed propagation rules, field mappings, trigger conditions and
    invalid state transitions all land here. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Duplicate version numbers, a restore already running on the same
    project, and decisions on steps that are already closed. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field (or lock) in conflict.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None,
                 message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class TransientError(Exception):
    """A retry-eligible failure, e.g. a dependency lookup that timed out.

    Maps to HTTP 503. Callers record the failure and leave the work
    eligible for a later retry.
    """


class FatalError(Exception):
    """A failure that must never be retried automatically.

    Surfaced to an operator for manual intervention.
    """


class SnapshotCorruptedError(FatalError):
    """A stored snapshot blob cannot be decoded.

    Raised for unknown schema versions and structurally invalid records.
    """

    def __init__(self, version_id: int | None, reason: str) -> None:
        self.version_id = version_id
        self.reason = reason
        super().__init__(f"Snapshot of version id={version_id} is unreadable: {reason}")


class RestoreFailedError(Exception):
    """Raised after a restore has been rolled back.

    The source version is untouched. ``fatal`` is True when the cause was a
    corrupted snapshot rather than a store error.
    """

    def __init__(self, version_id: int, reason: str, *, fatal: bool = False) -> None:
        self.version_id = version_id
        self.reason = reason
        self.fatal = fatal
        super().__init__(f"Restore of version id={version_id} failed: {reason}")
