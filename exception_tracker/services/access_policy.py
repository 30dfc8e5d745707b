"""
Operational Exception Tracker
Access Policy — role and vertical scoped capability checks.

One capability table keyed by (action, role) yields a scope rule; a single
check function evaluates that rule against the target exception (or target
user) once per operation.

Usage:
    from exception_tracker.services.access_policy import Action, check_access

    # Raises ForbiddenError if not allowed
    check_access(principal, Action.CLOSE, record)

    # Boolean check
    if is_allowed(principal, Action.RESOLVE, record):
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from exception_tracker.core.exceptions import ForbiddenError, ValidationError

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class Role(str, Enum):
    """Closed set of principal roles."""
    GLOBAL_ADMIN = "global_admin"
    SECONDARY_GLOBAL = "secondary_global"
    VERTICAL_LEAD = "vertical_lead"
    STAFF = "staff"

    @property
    def is_global(self) -> bool:
        return self in (Role.GLOBAL_ADMIN, Role.SECONDARY_GLOBAL)

    @classmethod
    def parse(cls, value) -> Role:
        """Return the Role for an enum member or its string value.

        Raises:
            ValidationError: If value names no known role.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown role '{value}'",
                details={"role": f"must be one of: {', '.join(r.value for r in cls)}"},
            ) from None


class Action(str, Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    UPDATE_STATUS = "update_status"
    RESOLVE = "resolve"
    COMMENT = "comment"
    ASSIGN = "assign"
    REASSIGN = "reassign"
    CLOSE = "close"
    ESCALATE = "escalate"
    DELETE = "delete"
    VIEW_WORKLOAD = "view_workload"
    MANAGE_SLA = "manage_sla"


class Scope(str, Enum):
    """How far a granted action reaches."""
    ANY = "any"              # every vertical
    VERTICAL = "vertical"    # principal's own vertical only
    ASSIGNED = "assigned"    # own vertical and assigned_to == principal.id
    SELF = "self"            # target user must be the principal
    DENY = "deny"


@dataclass(frozen=True)
class Principal:
    """Authenticated actor as resolved by the identity layer."""
    id: int
    role: Role
    vertical_id: int | None = None

    @property
    def is_global(self) -> bool:
        return self.role.is_global


# ═════════════════════════════════════════════════════════════════════════════
# Capability table
# ═════════════════════════════════════════════════════════════════════════════

_A = Scope.ANY
_V = Scope.VERTICAL
_S = Scope.ASSIGNED
_D = Scope.DENY

#                     GLOBAL_ADMIN, SECONDARY_GLOBAL, VERTICAL_LEAD, STAFF
_MATRIX: dict[Action, tuple[Scope, Scope, Scope, Scope]] = {
    Action.VIEW:          (_A, _A, _V, _V),
    Action.CREATE:        (_A, _A, _V, _V),
    Action.COMMENT:       (_A, _A, _V, _V),
    Action.ASSIGN:        (_A, _A, _V, _V),
    Action.UPDATE:        (_A, _A, _V, _S),
    Action.UPDATE_STATUS: (_A, _A, _V, _S),
    Action.RESOLVE:       (_A, _A, _V, _S),
    Action.REASSIGN:      (_A, _A, _V, _D),
    Action.CLOSE:         (_A, _A, _V, _D),
    Action.ESCALATE:      (_A, _A, _V, _D),
    Action.DELETE:        (_A, _D, _D, _D),
    Action.MANAGE_SLA:    (_A, _D, _D, _D),
    Action.VIEW_WORKLOAD: (_A, _A, Scope.SELF, Scope.SELF),
}

_ROLE_COLUMN = {
    Role.GLOBAL_ADMIN: 0,
    Role.SECONDARY_GLOBAL: 1,
    Role.VERTICAL_LEAD: 2,
    Role.STAFF: 3,
}


def scope_for(action: Action, role: Role) -> Scope:
    """Return the scope rule granted to role for action (DENY if unlisted)."""
    row = _MATRIX.get(Action(action))
    if row is None:
        return Scope.DENY
    return row[_ROLE_COLUMN[Role(role)]]


def _denial_reason(
    principal: Principal,
    action: Action,
    vertical_id: int | None,
    assigned_to: int | None,
    target_user_id: int | None,
) -> str | None:
    """Return None when allowed, otherwise a short reason string."""
    scope = scope_for(action, principal.role)

    if scope is Scope.DENY:
        return f"role {principal.role.value} may not {action.value}"
    if scope is Scope.ANY:
        return None
    if scope is Scope.SELF:
        if target_user_id is not None and target_user_id != principal.id:
            return "only your own records are visible"
        return None

    if vertical_id is not None and vertical_id != principal.vertical_id:
        return "exception belongs to another vertical"
    if scope is Scope.ASSIGNED and assigned_to != principal.id:
        return "exception is not assigned to you"
    return None


def is_allowed(
    principal: Principal,
    action: Action,
    record=None,
    *,
    vertical_id: int | None = None,
    target_user_id: int | None = None,
) -> bool:
    """
    Check whether principal may perform action.

    Args:
        principal: Acting principal.
        action: Action being attempted.
        record: Target ExceptionRecord, if the action has one. Its vertical
                and assignee take precedence over the keyword arguments.
        vertical_id: Target vertical when there is no record (create, list).
        target_user_id: Target user for SELF-scoped actions (workload).

    Returns:
        True if the capability table grants the action in this scope.
    """
    assigned_to = None
    if record is not None:
        vertical_id = record.vertical_id
        assigned_to = record.assigned_to
    return _denial_reason(
        principal, Action(action), vertical_id, assigned_to, target_user_id,
    ) is None


def check_access(
    principal: Principal,
    action: Action,
    record=None,
    *,
    vertical_id: int | None = None,
    target_user_id: int | None = None,
) -> None:
    """
    Assert principal may perform action; raise ForbiddenError if not.

    Raises:
        ForbiddenError: If the capability table refuses the action.
    """
    action = Action(action)
    assigned_to = None
    if record is not None:
        vertical_id = record.vertical_id
        assigned_to = record.assigned_to
    reason = _denial_reason(principal, action, vertical_id, assigned_to, target_user_id)
    if reason is not None:
        logger.info(
            "Access denied",
            extra={
                "principal_id": principal.id,
                "role": principal.role.value,
                "action": action.value,
                "vertical_id": vertical_id,
            },
        )
        raise ForbiddenError(action.value, reason)


def allowed_actions(principal: Principal, record) -> set[Action]:
    """Return every action principal may perform on record."""
    return {
        action for action in Action
        if action not in (Action.CREATE, Action.VIEW_WORKLOAD, Action.MANAGE_SLA)
        and is_allowed(principal, action, record)
    }


def resolve_vertical_scope(principal: Principal, requested_vertical_id: int | None = None) -> int | None:
    """Return the vertical a listing or aggregate must be restricted to.

    Global roles get the requested vertical (None = all verticals). Everyone
    else is pinned to their own vertical; asking for a different one is
    refused rather than silently rewritten.

    Raises:
        ForbiddenError: If a non-global principal requests another vertical.
    """
    if principal.is_global:
        return requested_vertical_id
    if principal.vertical_id is None:
        raise ForbiddenError(Action.VIEW.value, "principal has no vertical scope")
    if requested_vertical_id is not None and requested_vertical_id != principal.vertical_id:
        raise ForbiddenError(Action.VIEW.value, "exception belongs to another vertical")
    return principal.vertical_id
