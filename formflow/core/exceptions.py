"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from formflow.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="FormInstance", resource_id=42)
    raise InvalidTransitionError("COMPLETED", "IN_PROGRESS")
"""


class NotFoundError(Exception):
    """Raised when a referenced instance, phase, project or template does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "FormInstance", "Phase").
        resource_id: The PK that was looked up.
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
    """Raised when input is malformed (empty batch, unknown status literal, ...).

    Rejected before any read or write.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(Exception):
    """Raised when the requested status is not reachable from the current one.

    Carries both statuses so the caller can name the offending pair. Never
    auto-corrected to the nearest legal state.
    """

    def __init__(
        self,
        from_status: str,
        to_status: str,
        instance_id: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.instance_id = instance_id
        self.reason = reason
        msg = f"Invalid transition: {from_status} → {to_status}"
        if instance_id is not None:
            msg += f" (instance={instance_id})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DependenciesNotSatisfiedError(InvalidTransitionError):
    """Raised when COMPLETED is requested while prerequisite forms are still open."""

    def __init__(
        self,
        from_status: str,
        instance_id: int,
        missing_requirements: list[dict],
    ) -> None:
        self.missing_requirements = missing_requirements
        super().__init__(
            from_status,
            "COMPLETED",
            instance_id=instance_id,
            reason=f"{len(missing_requirements)} prerequisite form(s) not completed",
        )


class RequiredItemsMissingError(InvalidTransitionError):
    """Raised when COMPLETED is requested before the latest response answers every required item."""

    def __init__(
        self,
        from_status: str,
        instance_id: int,
        missing_items: list[dict],
    ) -> None:
        self.missing_items = missing_items
        super().__init__(
            from_status,
            "COMPLETED",
            instance_id=instance_id,
            reason=f"{len(missing_items)} required item(s) unanswered",
        )


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness or graph rule.

    Also used when a concurrent writer changed an instance's status between
    read and compare-and-update.

    Args:
        resource: Model name.
        field: The field that conflicts.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} conflicts with existing state"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when the underlying store fails (connection, constraint violation).

    Propagated as-is; the engine never retries.
    """

    def __init__(self, operation: str, original: Exception | None = None) -> None:
        self.operation = operation
        self.original = original
        msg = f"Persistence failure during {operation}"
        if original is not None:
            msg += f": {original.__class__.__name__}"
        super().__init__(msg)
