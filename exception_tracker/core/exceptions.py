"""
Tracker-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
translate them into HTTP status codes. Four kinds are distinguishable by
callers: not found, forbidden, validation and internal.

Usage:
    from exception_tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Exception", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.

    Always raised before any access check so a missing id never leaks
    policy information.

    Args:
        resource: Human-readable entity name (e.g. "Exception", "SLARule").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the acting principal may not perform an action.

    Covers both vertical isolation and role restrictions. Maps to HTTP 403.

    Args:
        action: The action that was refused (e.g. "close").
        reason: Short human-readable explanation.
    """

    def __init__(self, action: str, reason: str = "not permitted") -> None:
        self.action = action
        self.reason = reason
        super().__init__(f"Forbidden: {action} ({reason})")


class ValidationError(Exception):
    """Raised when input or a requested state change violates a business rule.

    Examples: empty required field, disallowed status transition, escalation
    beyond the maximum level. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured context (field errors, current vs
                 requested state).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InternalError(Exception):
    """Raised when persistence fails after the session has been rolled back.

    Maps to HTTP 500. The original database exception is chained as
    ``__cause__`` and logged, never returned to the client.
    """
