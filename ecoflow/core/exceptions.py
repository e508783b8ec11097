"""
Engine-wide exception hierarchy.

Every service in ``ecoflow.services`` raises one of these types so that a
thin request-handling layer (HTTP, RPC, CLI) can map them to responses once
instead of catching ad-hoc errors per call site.

Usage:
    from ecoflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ChangeOrder", resource_id=chain_id)
    raise ValidationError("title is required", details={"title": "required"})

Mapping used by callers:
    NotFoundError           → 404
    ValidationError         → 422
    InvalidTransitionError  → 422 (carries ``allowed``)
    ForbiddenError          → 403
    ConflictError           → 409
    ServiceUnavailableError → 503
    TransientStoreError     → 503 (safe to retry the whole operation)
"""


class NotFoundError(Exception):
    """Raised when a change-order chain or a referenced entity does not exist.

    Args:
        resource: Human-readable entity name (e.g. "ChangeOrder", "Product").
        resource_id: The id that was looked up.
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

    Examples: editing content while the ECO is under review, deleting a
    chain that already has several versions, an unknown priority value.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """Raised when a status change is not in the transition table.

    ``allowed`` lists the legal targets from ``current`` (possibly empty for
    terminal states) so the caller can present an actionable message.
    """

    def __init__(self, current: str, requested: str, allowed: list[str]) -> None:
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)
        msg = (
            f"Invalid status transition from {current} to {requested}. "
            f"Allowed transitions: {', '.join(self.allowed) or 'none'}"
        )
        super().__init__(
            msg,
            details={"current": current, "requested": requested, "allowed": self.allowed},
        )


class ForbiddenError(Exception):
    """Raised when the actor does not own the resource for a requester-only operation."""

    def __init__(self, message: str, actor_id: str | None = None) -> None:
        self.actor_id = actor_id
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a concurrent writer changed the chain between load and write.

    Args:
        resource: Model name.
        field: The guarded field (``is_latest``, ``status``, ``version``).
        value: The value that no longer matched.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} {field}={value!r} was modified concurrently"
        super().__init__(msg)


class ServiceUnavailableError(Exception):
    """Raised when an external collaborator exhausted every provider.

    The workflow never lets this escape a status transition; it only reaches
    callers who explicitly ask for a scored result.
    """

    def __init__(self, service: str, reason: str | None = None) -> None:
        self.service = service
        self.reason = reason
        msg = f"{service} unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class TransientStoreError(Exception):
    """Raised when the store kept failing after the repository's retries.

    The transaction was rolled back; no partial write is visible.
    """

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} attempt(s); nothing was written")
