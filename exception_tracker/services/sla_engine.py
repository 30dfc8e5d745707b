"""
Operational Exception Tracker
SLA Engine — due-date computation, breach sweeping and rule management.

Architecture:
  Due dates are computed once at creation from the *active* SLARule for the
  exception's severity and never recalculated afterwards. Breach detection is
  a periodic sweep (scheduled job or CLI), never a side effect of reads.

  check_sla_breach() is idempotent: it only touches rows still open or in
  progress, past due and not yet flagged, and it never clears a flag.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select

from exception_tracker.core.exceptions import ValidationError
from exception_tracker.models import db
from exception_tracker.models.exception import (
    OPEN_STATUSES,
    SEVERITIES,
    ExceptionRecord,
    SLARule,
)
from exception_tracker.services.access_policy import Action, Principal, check_access
from exception_tracker.services.helpers.persistence import commit_or_raise
from exception_tracker.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def _validate_severity(severity: str) -> str:
    if severity not in SEVERITIES:
        raise ValidationError(
            f"Invalid severity '{severity}'. Must be one of: {', '.join(SEVERITIES)}",
            details={"severity": "invalid"},
        )
    return severity


# ═════════════════════════════════════════════════════════════════════════════
# Due dates
# ═════════════════════════════════════════════════════════════════════════════


def get_resolution_hours(severity: str) -> int | None:
    """Return the active resolution budget for severity, or None if no active rule."""
    return db.session.execute(
        select(SLARule.resolution_time_hours).where(
            SLARule.severity == severity,
            SLARule.active.is_(True),
        )
    ).scalar_one_or_none()


def compute_due_date(severity: str, created_at: datetime) -> datetime | None:
    """Return created_at + the active SLA budget for severity.

    Args:
        severity: low | medium | high | critical.
        created_at: Creation timestamp of the exception.

    Returns:
        Aware UTC datetime, or None when no active rule matches the severity.
    """
    hours = get_resolution_hours(severity)
    if hours is None:
        return None
    return as_utc(created_at) + timedelta(hours=hours)


# ═════════════════════════════════════════════════════════════════════════════
# Breach sweep
# ═════════════════════════════════════════════════════════════════════════════


def check_sla_breach(now: datetime | None = None) -> list[int]:
    """Flag every open or in-progress exception whose due date has lapsed.

    Args:
        now: Reference time (defaults to current UTC time).

    Returns:
        Ids of the exceptions flagged by this run. A second run with no
        intervening change returns an empty list and writes nothing.
    """
    now = as_utc(now) if now is not None else utcnow()
    rows = db.session.execute(
        select(ExceptionRecord).where(
            ExceptionRecord.status.in_(OPEN_STATUSES),
            ExceptionRecord.due_date.is_not(None),
            ExceptionRecord.due_date < now,
            ExceptionRecord.sla_breach.is_(False),
        )
    ).scalars().all()

    flagged = []
    for record in rows:
        record.sla_breach = True
        flagged.append(record.id)

    if flagged:
        commit_or_raise("Failed to persist SLA breach flags", event_type="sla_breach")
        logger.info(
            "SLA sweep flagged %d exception(s)", len(flagged),
            extra={"event_type": "sla_breach", "exception_ids": flagged},
        )
    return flagged


# ═════════════════════════════════════════════════════════════════════════════
# Rule management
# ═════════════════════════════════════════════════════════════════════════════


def list_sla_rules() -> list[dict]:
    """Return every SLA rule ordered by severity rank."""
    rules = db.session.execute(select(SLARule)).scalars().all()
    rank = {s: i for i, s in enumerate(SEVERITIES)}
    return [r.to_dict() for r in sorted(rules, key=lambda r: rank.get(r.severity, len(rank)))]


def set_sla_rule(
    principal: Principal,
    severity: str,
    resolution_time_hours,
    active: bool = True,
) -> dict:
    """Create or replace the SLA rule for a severity.

    Existing exceptions keep their due dates; only later creations use the
    new budget.

    Raises:
        ForbiddenError: If principal may not manage SLA rules.
        ValidationError: On unknown severity or non-positive hours.
    """
    check_access(principal, Action.MANAGE_SLA)
    _validate_severity(severity)
    try:
        hours = int(resolution_time_hours)
    except (TypeError, ValueError):
        hours = 0
    if hours <= 0:
        raise ValidationError(
            "resolution_time_hours must be a positive integer",
            details={"resolution_time_hours": "must be > 0"},
        )

    rule = db.session.execute(
        select(SLARule).where(SLARule.severity == severity)
    ).scalar_one_or_none()
    if rule is None:
        rule = SLARule(severity=severity)
        db.session.add(rule)
    rule.resolution_time_hours = hours
    rule.active = bool(active)
    commit_or_raise("Failed to persist SLA rule", severity=severity)
    logger.info(
        "SLA rule set",
        extra={"severity": severity, "hours": hours, "active": rule.active, "principal_id": principal.id},
    )
    return rule.to_dict()


def seed_default_sla_rules(defaults: dict[str, int] | None = None) -> int:
    """Insert default rules for severities that have none. Idempotent.

    Returns:
        Number of rules created.
    """
    if defaults is None:
        defaults = current_app.config.get("DEFAULT_SLA_HOURS", {})
    existing = set(db.session.execute(select(SLARule.severity)).scalars().all())
    created = 0
    for severity, hours in defaults.items():
        if severity in existing or severity not in SEVERITIES:
            continue
        db.session.add(SLARule(severity=severity, resolution_time_hours=int(hours), active=True))
        created += 1
    if created:
        commit_or_raise("Failed to seed SLA rules")
        logger.info("Seeded %d default SLA rule(s)", created)
    return created
