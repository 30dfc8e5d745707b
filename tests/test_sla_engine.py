"""
Tests: SLA Engine — due-date computation, breach sweep, rule management.

All test data created via ORM helpers or the workflow service.
The `session` autouse fixture rolls back and recreates tables after every test.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import exception_tracker.services.exception_workflow as wf
import exception_tracker.services.sla_engine as sla
from exception_tracker.core.exceptions import ForbiddenError, InternalError, ValidationError
from exception_tracker.models import db as _db
from exception_tracker.models.exception import ExceptionRecord, SLARule
from exception_tracker.utils.helpers import as_utc


# ── ORM helpers ───────────────────────────────────────────────────────────────


def _make_exception(number: str, *, status="open", due_in_hours=-1, sla_breach=False, vertical_id=5):
    now = datetime.now(timezone.utc)
    exc = ExceptionRecord(
        exception_number=number,
        title=f"Exception {number}",
        description="desc",
        severity="high",
        status=status,
        vertical_id=vertical_id,
        created_by=1,
        due_date=now + timedelta(hours=due_in_hours) if due_in_hours is not None else None,
        sla_breach=sla_breach,
    )
    _db.session.add(exc)
    _db.session.flush()
    return exc


# ── Due dates ─────────────────────────────────────────────────────────────────


def test_compute_due_date_uses_active_rule(sla_rules):
    created = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert sla.compute_due_date("critical", created) == created + timedelta(hours=24)
    assert sla.compute_due_date("low", created) == created + timedelta(hours=120)


def test_compute_due_date_ignores_inactive_rule():
    _db.session.add(SLARule(severity="high", resolution_time_hours=48, active=False))
    _db.session.flush()
    created = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert sla.compute_due_date("high", created) is None, "inactive rule must not produce a due date"


def test_compute_due_date_without_rule_is_none():
    assert sla.compute_due_date("medium", datetime.now(timezone.utc)) is None


def test_critical_exception_due_24h_then_breached_after_25h(sla_rules, admin):
    """Create critical in vertical 5 → due +24h; sweep at +25h flags it once."""
    result = wf.create_exception(admin, {
        "title": "Payment feed down",
        "description": "No files since 06:00",
        "severity": "critical",
        "vertical_id": 5,
    })
    record = _db.session.get(ExceptionRecord, result["id"])
    created = as_utc(record.created_at)
    assert as_utc(record.due_date) == created + timedelta(hours=24)

    later = created + timedelta(hours=25)
    first = sla.check_sla_breach(now=later)
    assert first == [record.id]
    assert _db.session.get(ExceptionRecord, record.id).sla_breach is True

    updated_at = _db.session.get(ExceptionRecord, record.id).updated_at
    second = sla.check_sla_breach(now=later)
    assert second == [], "second sweep must not flag anything new"
    again = _db.session.get(ExceptionRecord, record.id)
    assert again.sla_breach is True
    assert again.updated_at == updated_at, "idempotent sweep must not touch the row"


# ── Breach sweep ──────────────────────────────────────────────────────────────


def test_sweep_only_flags_open_or_in_progress_past_due():
    overdue_open = _make_exception("EXC-T-1", status="open")
    overdue_wip = _make_exception("EXC-T-2", status="in_progress")
    overdue_resolved = _make_exception("EXC-T-3", status="resolved")
    overdue_closed = _make_exception("EXC-T-4", status="closed")
    not_due = _make_exception("EXC-T-5", status="open", due_in_hours=5)
    no_due = _make_exception("EXC-T-6", status="open", due_in_hours=None)

    flagged = sla.check_sla_breach()

    assert sorted(flagged) == sorted([overdue_open.id, overdue_wip.id])
    for exc in (overdue_resolved, overdue_closed, not_due, no_due):
        assert _db.session.get(ExceptionRecord, exc.id).sla_breach is False


def test_sweep_never_resets_breach_flag():
    exc = _make_exception("EXC-T-7", status="open", due_in_hours=48, sla_breach=True)
    assert sla.check_sla_breach() == []
    assert _db.session.get(ExceptionRecord, exc.id).sla_breach is True, "flag is monotonic"


def test_sweep_skips_already_flagged_rows():
    _make_exception("EXC-T-8", sla_breach=True)
    assert sla.check_sla_breach() == []


def test_sweep_commit_failure_leaves_flags_unset(break_commit):
    exc_id = _make_exception("EXC-T-9").id
    _db.session.commit()
    break_commit()

    with pytest.raises(InternalError, match="SLA breach flags"):
        sla.check_sla_breach()

    assert _db.session.get(ExceptionRecord, exc_id).sla_breach is False


# ── Rule management ───────────────────────────────────────────────────────────


def test_set_sla_rule_creates_and_replaces(admin):
    created = sla.set_sla_rule(admin, "critical", 8)
    assert created["resolution_time_hours"] == 8

    replaced = sla.set_sla_rule(admin, "critical", 12, active=False)
    assert replaced["id"] == created["id"]
    assert replaced["resolution_time_hours"] == 12
    assert replaced["active"] is False
    assert sla.get_resolution_hours("critical") is None


def test_set_sla_rule_requires_global_admin(secondary, lead):
    for principal in (secondary, lead):
        with pytest.raises(ForbiddenError):
            sla.set_sla_rule(principal, "high", 10)


@pytest.mark.parametrize("severity,hours", [("urgent", 4), ("high", 0), ("high", "abc")])
def test_set_sla_rule_validates_input(admin, severity, hours):
    with pytest.raises(ValidationError):
        sla.set_sla_rule(admin, severity, hours)


def test_changing_rule_does_not_recompute_existing_due_dates(sla_rules, admin):
    result = wf.create_exception(admin, {
        "title": "t", "description": "d", "severity": "high", "vertical_id": 5,
    })
    before = result["due_date"]
    sla.set_sla_rule(admin, "high", 1)
    assert wf.get_exception(admin, result["id"])["due_date"] == before


def test_seed_default_rules_is_idempotent(sla_rules):
    assert sla.seed_default_sla_rules(sla_rules) == 0
    rules = sla.list_sla_rules()
    assert [r["severity"] for r in rules] == ["low", "medium", "high", "critical"]


def test_set_sla_rule_commit_failure_raises_internal_error(admin, break_commit):
    break_commit()
    with pytest.raises(InternalError, match="Failed to persist SLA rule"):
        sla.set_sla_rule(admin, "high", 10)
    assert sla.list_sla_rules() == []


def test_seed_commit_failure_raises_internal_error(break_commit):
    break_commit()
    with pytest.raises(InternalError, match="Failed to seed SLA rules"):
        sla.seed_default_sla_rules({"high": 48})
    assert sla.list_sla_rules() == []
