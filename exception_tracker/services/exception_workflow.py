"""
Operational Exception Tracker
Exception Workflow — creation, assignment, resolution, closure, escalation.

Business logic for the exception state machine:
  - Creation with SLA due-date calculation (once, never recomputed)
  - Assignment (forces in_progress) and reassignment (status unchanged)
  - Generic status update through STATUS_TRANSITIONS
  - Resolve / close with audit fields
  - Escalation with level cap and an Escalation record
  - Partial update capturing only changed fields, hard delete

Every operation follows the same sequence:
  load (NotFoundError) → access policy (ForbiddenError) → validation and
  transition table (ValidationError) → primary commit → history entry.
The history entry is written only after the primary commit succeeded.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from exception_tracker.core.exceptions import ForbiddenError, InternalError, ValidationError
from exception_tracker.models import db
from exception_tracker.models.exception import (
    MAX_ESCALATION_LEVEL,
    SEVERITIES,
    STATUS_TRANSITIONS,
    STATUSES,
    UPDATABLE_FIELDS,
    ExceptionEscalation,
    ExceptionRecord,
    next_status_for_event,
    validate_status_transition,
)
from exception_tracker.services import exception_query
from exception_tracker.services.access_policy import Action, Principal, allowed_actions, check_access
from exception_tracker.services.helpers.exception_lookup import load_exception
from exception_tracker.services.helpers.persistence import commit_or_raise
from exception_tracker.services.history_log import record_history
from exception_tracker.services.sla_engine import compute_due_date
from exception_tracker.utils.helpers import as_utc, parse_bool, parse_datetime, utcnow

logger = logging.getLogger(__name__)

_NUMBER_ATTEMPTS = 3


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def next_exception_number(created_at: datetime) -> str:
    """Generate the next sequential number for the creation year: EXC-2026-00001 ...

    Uniqueness is enforced by the column's unique constraint; create_exception
    retries with a fresh number when two creations race for the same one.
    """
    prefix = f"{current_app.config.get('EXCEPTION_NUMBER_PREFIX', 'EXC')}-{created_at.year}-"
    last = db.session.execute(
        select(func.max(ExceptionRecord.exception_number)).where(
            ExceptionRecord.exception_number.like(f"{prefix}%")
        )
    ).scalar()
    seq = 1
    if last:
        try:
            seq = int(last.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = 1
    return f"{prefix}{seq:05d}"


def _commit(record_id: int | None = None) -> None:
    commit_or_raise("Failed to persist exception change", exception_id=record_id)


def _require_text(data: dict, field: str) -> str:
    value = str(data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


def _optional_int(value, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from None


def _required_int(value, field: str) -> int:
    result = _optional_int(value, field)
    if result is None:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return result


def _parse_flag(value, field: str) -> bool:
    if value is None or value == "":
        return False
    flag = parse_bool(value)
    if flag is None:
        raise ValidationError(f"{field} must be a boolean", details={field: "invalid"})
    return flag


def _validate_severity(severity: str) -> str:
    if severity not in SEVERITIES:
        raise ValidationError(
            f"Invalid severity '{severity}'. Must be one of: {', '.join(SEVERITIES)}",
            details={"severity": "invalid"},
        )
    return severity


def _validate_tags(tags):
    if tags is None:
        return None
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be a list of strings", details={"tags": "invalid"})
    return [str(t) for t in tags]


def _transition_error(current: str, requested: str, event: str | None = None) -> ValidationError:
    verb = event or "change status"
    return ValidationError(
        f"Cannot {verb} from '{current}' to '{requested}'",
        details={
            "current_status": current,
            "requested_status": requested,
            "allowed": STATUS_TRANSITIONS.get(current, []),
        },
    )


def _log_change(message: str, record: ExceptionRecord, principal: Principal, **extra) -> None:
    logger.info(
        message,
        extra={
            "exception_id": record.id,
            "exception_number": record.exception_number,
            "vertical_id": record.vertical_id,
            "principal_id": principal.id,
            **extra,
        },
    )


# ═════════════════════════════════════════════════════════════════════════════
# Create / read
# ═════════════════════════════════════════════════════════════════════════════


def create_exception(
    principal: Principal,
    data: dict,
    *,
    number_generator: Callable[[datetime], str] | None = None,
) -> dict:
    """Create an exception in state ``open``.

    due_date defaults to created_at + the active SLA budget for the severity
    and is left unset when no active rule exists. An explicit due_date is
    kept as supplied.

    Non-global principals always create in their own vertical; global
    principals must name the vertical.

    Args:
        principal: Acting principal (becomes created_by).
        data: title, description, category, severity, vertical_id,
              program_id, assigned_to, priority, due_date, tags, notes.
        number_generator: Optional callable (created_at) -> unique number.

    Returns:
        Serialized exception dict.

    Raises:
        ForbiddenError: If a non-global principal names another vertical.
        ValidationError: On missing title/description or invalid fields.
    """
    requested_vertical = _optional_int(data.get("vertical_id"), "vertical_id")
    if principal.is_global:
        if requested_vertical is None:
            raise ValidationError("vertical_id is required", details={"vertical_id": "required"})
        vertical_id = requested_vertical
    else:
        vertical_id = requested_vertical if requested_vertical is not None else principal.vertical_id
    check_access(principal, Action.CREATE, vertical_id=vertical_id)
    if vertical_id is None:
        raise ValidationError("vertical_id is required", details={"vertical_id": "required"})

    title = _require_text(data, "title")
    description = _require_text(data, "description")
    severity = _validate_severity(data.get("severity") or "medium")
    assigned_to = _optional_int(data.get("assigned_to"), "assigned_to")
    program_id = _optional_int(data.get("program_id"), "program_id")
    priority = _parse_flag(data.get("priority"), "priority")
    tags = _validate_tags(data.get("tags"))
    explicit_due = parse_datetime(data.get("due_date"))

    generate = number_generator or next_exception_number
    now = utcnow()
    due_date = explicit_due or compute_due_date(severity, now)

    record = None
    for attempt in range(1, _NUMBER_ATTEMPTS + 1):
        record = ExceptionRecord(
            exception_number=generate(now),
            title=title,
            description=description,
            category=data.get("category"),
            severity=severity,
            status="open",
            vertical_id=vertical_id,
            program_id=program_id,
            created_by=principal.id,
            assigned_to=assigned_to,
            assigned_date=now if assigned_to is not None else None,
            priority=priority,
            due_date=due_date,
            tags=tags,
            notes=data.get("notes"),
            created_at=now,
            updated_at=now,
        )
        db.session.add(record)
        try:
            db.session.commit()
            break
        except IntegrityError as exc:
            db.session.rollback()
            logger.warning(
                "Exception number collision on attempt %d: %s",
                attempt, record.exception_number,
            )
            if attempt == _NUMBER_ATTEMPTS:
                raise InternalError("Could not allocate a unique exception number") from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Exception create failed", exc_info=True)
            raise InternalError("Failed to persist exception") from exc

    _log_change("Exception created", record, principal, severity=severity)
    record_history(
        record.id, "create", principal.id,
        new_values={
            "exception_number": record.exception_number,
            "title": title,
            "severity": severity,
            "status": "open",
            "vertical_id": vertical_id,
            "assigned_to": assigned_to,
            "due_date": due_date,
        },
        description=f"Exception {record.exception_number} created",
    )
    return record.to_dict()


def get_exception(principal: Principal, exception_id: int) -> dict:
    """Return one exception with derived age / SLA fields, log counts and
    the actions the principal may perform on it.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not view it.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.VIEW, record)
    result = exception_query.annotate(record.to_dict(), record)
    result["comments_count"] = record.comments.count()
    result["escalations_count"] = record.escalations.count()
    result["allowed_actions"] = sorted(a.value for a in allowed_actions(principal, record))
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Field updates
# ═════════════════════════════════════════════════════════════════════════════


def _normalize_update(principal: Principal, record: ExceptionRecord, field: str, value):
    if field in ("title", "description"):
        return _require_text({field: value}, field)
    if field == "severity":
        return _validate_severity(value)
    if field == "vertical_id":
        vertical_id = _required_int(value, "vertical_id")
        if vertical_id != record.vertical_id and not principal.is_global:
            raise ForbiddenError(Action.UPDATE.value, "moving an exception to another vertical requires a global role")
        return vertical_id
    if field in ("program_id", "assigned_to"):
        return _optional_int(value, field)
    if field == "priority":
        return _parse_flag(value, "priority")
    if field == "due_date":
        return parse_datetime(value)
    if field == "tags":
        return _validate_tags(value)
    return value


def _differs(old, new) -> bool:
    if isinstance(old, datetime) or isinstance(new, datetime):
        return as_utc(old) != as_utc(new)
    return old != new


def update_exception(principal: Principal, exception_id: int, data: dict) -> dict:
    """Update any subset of the editable fields; status is never touched here.

    Keys outside UPDATABLE_FIELDS (including status) are ignored. Only fields
    whose value actually changes are written and recorded in history; an
    update that changes nothing writes nothing.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not update it.
        ValidationError: If no updatable field was supplied or a value is invalid.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.UPDATE, record)

    supplied = {k: data[k] for k in UPDATABLE_FIELDS if k in data}
    if not supplied:
        raise ValidationError(
            "No updatable fields supplied",
            details={"allowed_fields": list(UPDATABLE_FIELDS)},
        )

    old_values, new_values = {}, {}
    for field, raw in supplied.items():
        value = _normalize_update(principal, record, field, raw)
        current = getattr(record, field)
        if _differs(current, value):
            old_values[field] = current
            new_values[field] = value

    if not new_values:
        return record.to_dict()

    for field, value in new_values.items():
        setattr(record, field, value)
    if "assigned_to" in new_values and new_values["assigned_to"] is not None:
        record.assigned_date = utcnow()
    _commit(record.id)

    _log_change("Exception updated", record, principal, fields=sorted(new_values))
    record_history(
        record.id, "update", principal.id,
        old_values=old_values, new_values=new_values,
        description=f"Updated {', '.join(sorted(new_values))}",
    )
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Status transitions
# ═════════════════════════════════════════════════════════════════════════════


def update_status(principal: Principal, exception_id: int, new_status: str) -> dict:
    """Move an exception along STATUS_TRANSITIONS.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not change its status.
        ValidationError: If new_status is unknown or the transition is not allowed.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.UPDATE_STATUS, record)

    if new_status not in STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(STATUSES)}",
            details={"status": "invalid"},
        )
    old_status = record.status
    if not validate_status_transition(old_status, new_status):
        raise _transition_error(old_status, new_status)

    record.status = new_status
    _commit(record.id)

    _log_change("Exception status changed", record, principal, old_status=old_status, new_status=new_status)
    record_history(
        record.id, "update", principal.id,
        old_values={"status": old_status}, new_values={"status": new_status},
        description=f"Status changed from {old_status} to {new_status}",
    )
    return record.to_dict()


def assign_exception(principal: Principal, exception_id: int, assigned_to) -> dict:
    """Assign an exception; status becomes ``in_progress`` from any state.

    Concurrent assignments are last-write-wins; each still logs its own entry.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not assign it.
        ValidationError: If assigned_to is missing.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.ASSIGN, record)
    assignee = _required_int(assigned_to, "assigned_to")

    target = next_status_for_event(record.status, "assign")
    if target is None:
        raise _transition_error(record.status, "in_progress", "assign")

    old_values = {"assigned_to": record.assigned_to, "status": record.status}
    record.assigned_to = assignee
    record.assigned_date = utcnow()
    record.status = target
    _commit(record.id)

    _log_change("Exception assigned", record, principal, assigned_to=assignee)
    record_history(
        record.id, "assign", principal.id,
        old_values=old_values,
        new_values={"assigned_to": assignee, "status": target},
        description=f"Assigned to user {assignee}",
    )
    return record.to_dict()


def reassign_exception(principal: Principal, exception_id: int, assigned_to) -> dict:
    """Hand an exception to another user without changing its status.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not reassign (Staff never may).
        ValidationError: If assigned_to is missing or equals the current assignee.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.REASSIGN, record)
    assignee = _required_int(assigned_to, "assigned_to")

    if assignee == record.assigned_to:
        raise ValidationError(
            "Exception is already assigned to this user",
            details={"assigned_to": assignee},
        )
    target = next_status_for_event(record.status, "reassign")
    if target is None:
        raise _transition_error(record.status, record.status, "reassign")

    previous = record.assigned_to
    record.assigned_to = assignee
    record.assigned_date = utcnow()
    record.status = target
    _commit(record.id)

    _log_change("Exception reassigned", record, principal, previous_assignee=previous, assigned_to=assignee)
    record_history(
        record.id, "reassign", principal.id,
        old_values={"assigned_to": previous},
        new_values={"assigned_to": assignee},
        description=f"Reassigned from user {previous} to user {assignee}",
    )
    return record.to_dict()


def resolve_exception(principal: Principal, exception_id: int, resolution_notes: str) -> dict:
    """Mark an open or in-progress exception resolved.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not resolve it.
        ValidationError: If notes are empty or it is already resolved/closed.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.RESOLVE, record)

    notes = str(resolution_notes or "").strip()
    if not notes:
        raise ValidationError(
            "resolution_notes is required",
            details={"resolution_notes": "required"},
        )
    target = next_status_for_event(record.status, "resolve")
    if target is None:
        raise _transition_error(record.status, "resolved", "resolve")

    old_status = record.status
    now = utcnow()
    record.status = target
    record.resolution_notes = notes
    record.resolved_at = now
    record.resolved_by = principal.id
    _commit(record.id)

    _log_change("Exception resolved", record, principal)
    record_history(
        record.id, "resolve", principal.id,
        old_values={"status": old_status},
        new_values={"status": target, "resolution_notes": notes, "resolved_at": now},
        description="Exception resolved",
    )
    return record.to_dict()


def close_exception(principal: Principal, exception_id: int) -> dict:
    """Close a resolved exception.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not close (Staff never may).
        ValidationError: Unless the exception is currently resolved.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.CLOSE, record)

    target = next_status_for_event(record.status, "close")
    if target is None:
        raise _transition_error(record.status, "closed", "close")

    now = utcnow()
    record.status = target
    record.closed_at = now
    record.closed_by = principal.id
    _commit(record.id)

    _log_change("Exception closed", record, principal)
    record_history(
        record.id, "close", principal.id,
        old_values={"status": "resolved"},
        new_values={"status": target, "closed_at": now},
        description="Exception closed",
    )
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Escalation
# ═════════════════════════════════════════════════════════════════════════════


def escalate_exception(
    principal: Principal,
    exception_id: int,
    reason: str,
    *,
    target_level=None,
    escalated_to=None,
) -> dict:
    """Raise an exception's escalation level and optionally hand it over.

    new level = target_level, or current level + 1. The level/count change
    is a single conditional UPDATE guarded by the level that was read, so
    two concurrent escalations cannot both apply on top of the same level.
    The Escalation record is committed in the same transaction. Status is
    never changed; due_date is never recomputed.

    Args:
        principal: Acting principal.
        exception_id: Exception to escalate.
        reason: Required justification.
        target_level: Optional explicit level (current..3); 0 counts as not supplied.
        escalated_to: Optional new assignee.

    Returns:
        Serialized exception dict including the new escalation state.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not escalate (Staff never may).
        ValidationError: Missing reason, level above the maximum or below
            the current level, or a concurrent escalation won the race.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.ESCALATE, record)

    reason = str(reason or "").strip()
    if not reason:
        raise ValidationError("reason is required", details={"reason": "required"})

    current_level = record.escalation_level or 0
    requested = _optional_int(target_level, "escalation_level")
    new_level = requested or current_level + 1
    if new_level > MAX_ESCALATION_LEVEL:
        raise ValidationError(
            f"Maximum escalation level ({MAX_ESCALATION_LEVEL}) reached",
            details={"current_level": current_level, "requested_level": new_level},
        )
    if new_level < max(current_level, 1):
        raise ValidationError(
            "Escalation level cannot be lowered",
            details={"current_level": current_level, "requested_level": new_level},
        )
    new_assignee = _optional_int(escalated_to, "escalated_to")

    target = next_status_for_event(record.status, "escalate")
    if target is None:
        raise _transition_error(record.status, record.status, "escalate")

    now = utcnow()
    previous_assignee = record.assigned_to
    old_count = record.escalation_count or 0
    values = {
        "escalation_level": new_level,
        "escalation_count": ExceptionRecord.escalation_count + 1,
        "last_escalated_at": now,
        "status": target,
    }
    if new_assignee is not None:
        values["assigned_to"] = new_assignee
        values["assigned_date"] = now

    try:
        result = db.session.execute(
            update(ExceptionRecord)
            .where(
                ExceptionRecord.id == record.id,
                ExceptionRecord.escalation_level == current_level,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise ValidationError(
                "Exception was escalated concurrently; reload and retry",
                details={"expected_level": current_level},
            )
        db.session.add(ExceptionEscalation(
            exception_id=record.id,
            escalated_from=previous_assignee,
            escalated_to=new_assignee,
            escalated_by=principal.id,
            level=new_level,
            reason=reason,
            status="pending",
            escalated_at=now,
        ))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Escalation write failed", exc_info=True, extra={"exception_id": record.id})
        raise InternalError("Failed to persist escalation") from exc

    db.session.refresh(record)
    _log_change("Exception escalated", record, principal, level=new_level)

    old_values = {"escalation_level": current_level, "escalation_count": old_count}
    new_values = {"escalation_level": new_level, "escalation_count": record.escalation_count}
    if new_assignee is not None:
        old_values["assigned_to"] = previous_assignee
        new_values["assigned_to"] = new_assignee
    record_history(
        record.id, "escalate", principal.id,
        old_values=old_values, new_values=new_values,
        description=f"Escalated to level {new_level}: {reason}",
    )
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Delete
# ═════════════════════════════════════════════════════════════════════════════


def delete_exception(principal: Principal, exception_id: int) -> dict:
    """Hard-delete an exception with its comments, history and escalations.

    Bypasses the status graph entirely. The caller receives the deleted
    snapshot for its own audit trail.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: Unless principal is a GlobalAdmin.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.DELETE, record)

    snapshot = record.to_dict()
    db.session.delete(record)
    _commit(snapshot["id"])

    logger.warning(
        "Exception deleted",
        extra={
            "exception_id": snapshot["id"],
            "exception_number": snapshot["exception_number"],
            "vertical_id": snapshot["vertical_id"],
            "principal_id": principal.id,
        },
    )
    return snapshot
