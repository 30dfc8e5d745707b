"""
Tests: Access Policy — capability table per (action, role, relationship).

Pure checks against lightweight stand-in records; no database rows needed.
"""

from types import SimpleNamespace

import pytest

from exception_tracker.core.exceptions import ForbiddenError, ValidationError
from exception_tracker.services.access_policy import (
    Action,
    Principal,
    Role,
    Scope,
    allowed_actions,
    check_access,
    is_allowed,
    resolve_vertical_scope,
    scope_for,
)

VERTICAL_A = 5
VERTICAL_B = 7


def _record(vertical_id=VERTICAL_A, assigned_to=None):
    return SimpleNamespace(vertical_id=vertical_id, assigned_to=assigned_to)


# ── Role parsing ──────────────────────────────────────────────────────────────


def test_role_parse_accepts_values_case_insensitively():
    assert Role.parse("Vertical_Lead") is Role.VERTICAL_LEAD
    assert Role.parse(Role.STAFF) is Role.STAFF


def test_role_parse_rejects_unknown_role():
    with pytest.raises(ValidationError, match="Unknown role"):
        Role.parse("superuser")


def test_only_admin_roles_are_global():
    assert Role.GLOBAL_ADMIN.is_global
    assert Role.SECONDARY_GLOBAL.is_global
    assert not Role.VERTICAL_LEAD.is_global
    assert not Role.STAFF.is_global


# ── Capability table ──────────────────────────────────────────────────────────


@pytest.mark.parametrize("action", [Action.REASSIGN, Action.CLOSE, Action.ESCALATE, Action.DELETE])
def test_staff_is_denied_elevated_actions_even_when_assigned(staff, action):
    record = _record(assigned_to=staff.id)
    with pytest.raises(ForbiddenError):
        check_access(staff, action, record)


@pytest.mark.parametrize("action", [Action.UPDATE, Action.UPDATE_STATUS, Action.RESOLVE])
def test_staff_may_act_only_on_own_assignments(staff, action):
    assert is_allowed(staff, action, _record(assigned_to=staff.id))
    assert not is_allowed(staff, action, _record(assigned_to=999))
    assert not is_allowed(staff, action, _record(assigned_to=None))


def test_staff_may_view_and_comment_within_vertical(staff):
    record = _record(assigned_to=None)
    assert is_allowed(staff, Action.VIEW, record)
    assert is_allowed(staff, Action.COMMENT, record)


def test_staff_cross_vertical_view_is_forbidden(staff):
    with pytest.raises(ForbiddenError, match="another vertical"):
        check_access(staff, Action.VIEW, _record(vertical_id=VERTICAL_B, assigned_to=staff.id))


@pytest.mark.parametrize("action", [
    Action.VIEW, Action.UPDATE, Action.RESOLVE, Action.ASSIGN,
    Action.REASSIGN, Action.CLOSE, Action.ESCALATE,
])
def test_vertical_lead_full_rights_in_own_vertical_only(lead, action):
    assert is_allowed(lead, action, _record(vertical_id=VERTICAL_A))
    assert not is_allowed(lead, action, _record(vertical_id=VERTICAL_B))


def test_vertical_lead_cannot_delete(lead):
    with pytest.raises(ForbiddenError):
        check_access(lead, Action.DELETE, _record())


def test_global_admin_bypasses_isolation_including_delete(admin):
    record = _record(vertical_id=VERTICAL_B, assigned_to=42)
    for action in Action:
        assert is_allowed(admin, action, record), f"admin should be allowed {action.value}"


def test_secondary_global_sees_all_verticals_but_never_deletes(secondary):
    record = _record(vertical_id=VERTICAL_B)
    assert is_allowed(secondary, Action.CLOSE, record)
    assert is_allowed(secondary, Action.ESCALATE, record)
    assert not is_allowed(secondary, Action.DELETE, record)
    assert scope_for(Action.DELETE, Role.SECONDARY_GLOBAL) is Scope.DENY


def test_workload_is_self_scoped_for_non_global(staff, admin):
    assert is_allowed(staff, Action.VIEW_WORKLOAD, target_user_id=staff.id)
    assert not is_allowed(staff, Action.VIEW_WORKLOAD, target_user_id=999)
    assert is_allowed(admin, Action.VIEW_WORKLOAD, target_user_id=999)


def test_create_in_foreign_vertical_is_forbidden(lead):
    with pytest.raises(ForbiddenError):
        check_access(lead, Action.CREATE, vertical_id=VERTICAL_B)
    check_access(lead, Action.CREATE, vertical_id=VERTICAL_A)


def test_allowed_actions_for_assigned_staff(staff):
    actions = allowed_actions(staff, _record(assigned_to=staff.id))
    assert actions == {
        Action.VIEW, Action.COMMENT, Action.ASSIGN,
        Action.UPDATE, Action.UPDATE_STATUS, Action.RESOLVE,
    }


# ── Listing scope ─────────────────────────────────────────────────────────────


def test_resolve_vertical_scope_for_global_roles_passes_request_through(admin, secondary):
    assert resolve_vertical_scope(admin) is None
    assert resolve_vertical_scope(secondary, VERTICAL_B) == VERTICAL_B


def test_resolve_vertical_scope_pins_non_global_to_own_vertical(lead):
    assert resolve_vertical_scope(lead) == VERTICAL_A
    assert resolve_vertical_scope(lead, VERTICAL_A) == VERTICAL_A
    with pytest.raises(ForbiddenError):
        resolve_vertical_scope(lead, VERTICAL_B)


def test_resolve_vertical_scope_rejects_non_global_without_vertical():
    orphan = Principal(id=99, role=Role.STAFF, vertical_id=None)
    with pytest.raises(ForbiddenError, match="no vertical"):
        resolve_vertical_scope(orphan)
