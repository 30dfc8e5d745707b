"""
Operational Exception Tracker
Query & Statistics Engine — read-only listings and aggregate reports.

Scope:
  Global roles see every vertical and may filter to one. Everyone else is
  pinned to their own vertical by access_policy.resolve_vertical_scope(); an
  explicit request for another vertical is refused, never rewritten.

Derived fields (computed per row at read time, never stored):
  age_days            calendar days since creation
  days_until_due      calendar days until due_date (negative when overdue)
  resolution_age_days days taken to resolve/close, or days past due
  hours_to_resolve    whole hours taken to resolve/close, or elapsed while overdue

Nothing in this module writes; SLA breach flags are maintained by the sweeper.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from math import ceil

from flask import current_app
from sqlalchemy import case, func, or_, select

from exception_tracker.core.exceptions import ValidationError
from exception_tracker.models import db
from exception_tracker.models.exception import (
    MAX_ESCALATION_LEVEL,
    OPEN_STATUSES,
    SEVERITIES,
    STATUSES,
    ExceptionEscalation,
    ExceptionRecord,
)
from exception_tracker.services.access_policy import (
    Action,
    Principal,
    check_access,
    resolve_vertical_scope,
)
from exception_tracker.utils.helpers import as_utc, parse_bool, parse_date, utcnow

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITIES, start=1)}

SORT_FIELDS = {
    "created_at": ExceptionRecord.created_at,
    "updated_at": ExceptionRecord.updated_at,
    "due_date": ExceptionRecord.due_date,
    "severity": case(_SEVERITY_RANK, value=ExceptionRecord.severity, else_=0),
    "status": ExceptionRecord.status,
    "escalation_level": ExceptionRecord.escalation_level,
    "exception_number": ExceptionRecord.exception_number,
    "title": ExceptionRecord.title,
    "priority": ExceptionRecord.priority,
}


# ═════════════════════════════════════════════════════════════════════════════
# Derived fields
# ═════════════════════════════════════════════════════════════════════════════


def _day_diff(later: datetime | None, earlier: datetime | None) -> int | None:
    if later is None or earlier is None:
        return None
    return (as_utc(later).date() - as_utc(earlier).date()).days


def _hour_diff(later: datetime | None, earlier: datetime | None) -> int | None:
    if later is None or earlier is None:
        return None
    return int((as_utc(later) - as_utc(earlier)).total_seconds() // 3600)


def annotate(row: dict, record: ExceptionRecord, now: datetime | None = None) -> dict:
    """Add read-only age and SLA fields to a serialized exception."""
    now = now or utcnow()
    due = as_utc(record.due_date)

    if record.status == "closed":
        resolution_age = _day_diff(record.closed_at, record.created_at)
        hours = _hour_diff(record.closed_at, record.created_at)
    elif record.status == "resolved":
        resolution_age = _day_diff(record.resolved_at, record.created_at)
        hours = _hour_diff(record.resolved_at, record.created_at)
    else:
        resolution_age = _day_diff(now, due) if due is not None else 0
        hours = _hour_diff(now, record.created_at) if due is not None and due < now else None

    row["age_days"] = _day_diff(now, record.created_at)
    row["days_until_due"] = _day_diff(due, now)
    row["resolution_age_days"] = resolution_age
    row["hours_to_resolve"] = hours
    row["is_overdue"] = bool(due is not None and due < now and record.status in OPEN_STATUSES)
    return row


# ═════════════════════════════════════════════════════════════════════════════
# Filters & pagination
# ═════════════════════════════════════════════════════════════════════════════


def _as_list(value) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [v for v in value if v not in (None, "")]
    return [v.strip() for v in str(value).split(",") if v.strip()]


def _check_members(values: list, allowed, field: str) -> list:
    bad = [v for v in values if v not in allowed]
    if bad:
        raise ValidationError(
            f"Invalid {field} '{bad[0]}'. Must be one of: {', '.join(allowed)}",
            details={field: "invalid"},
        )
    return values


def _int_filter(value, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from None


def _overdue_condition(now: datetime):
    return (
        ExceptionRecord.due_date.is_not(None)
        & (ExceptionRecord.due_date < now)
        & ExceptionRecord.status.in_(OPEN_STATUSES)
    )


def _date_range_conditions(start_date, end_date) -> list:
    conds = []
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start_date and start is None:
        raise ValidationError("start_date is not a valid date", details={"start_date": "invalid"})
    if end_date and end is None:
        raise ValidationError("end_date is not a valid date", details={"end_date": "invalid"})
    if start is not None:
        conds.append(ExceptionRecord.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc))
    if end is not None:
        upper = datetime.combine(end, time.min, tzinfo=timezone.utc) + timedelta(days=1)
        conds.append(ExceptionRecord.created_at < upper)
    return conds


def _filter_conditions(filters: dict, vertical_id: int | None, now: datetime) -> list:
    conds = []
    if vertical_id is not None:
        conds.append(ExceptionRecord.vertical_id == vertical_id)

    statuses = _check_members(_as_list(filters.get("status")), STATUSES, "status")
    if statuses:
        conds.append(ExceptionRecord.status.in_(statuses))
    severities = _check_members(_as_list(filters.get("severity")), SEVERITIES, "severity")
    if severities:
        conds.append(ExceptionRecord.severity.in_(severities))

    for field in ("assigned_to", "created_by", "program_id"):
        value = _int_filter(filters.get(field), field)
        if value is not None:
            conds.append(getattr(ExceptionRecord, field) == value)

    if filters.get("category"):
        conds.append(ExceptionRecord.category == filters["category"])

    priority = parse_bool(filters.get("priority"))
    if priority is not None:
        conds.append(ExceptionRecord.priority.is_(priority))

    conds.extend(_date_range_conditions(filters.get("start_date"), filters.get("end_date")))

    search = str(filters.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        conds.append(or_(
            ExceptionRecord.title.ilike(pattern),
            ExceptionRecord.description.ilike(pattern),
            ExceptionRecord.exception_number.ilike(pattern),
        ))

    if parse_bool(filters.get("overdue_only"), False):
        conds.append(_overdue_condition(now))
    if parse_bool(filters.get("sla_breach_only"), False):
        conds.append(ExceptionRecord.sla_breach.is_(True))
    return conds


def _page_params(page, limit) -> tuple[int, int]:
    max_limit = current_app.config.get("MAX_PAGE_LIMIT", 100)
    if limit is None or limit == "":
        limit = current_app.config.get("DEFAULT_PAGE_LIMIT", 20)
    try:
        page = 1 if page in (None, "") else int(page)
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers", details={"page": page, "limit": limit}) from None
    if page < 1:
        raise ValidationError("page must be >= 1", details={"page": page})
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}", details={"limit": limit})
    return page, limit


# ═════════════════════════════════════════════════════════════════════════════
# Listings
# ═════════════════════════════════════════════════════════════════════════════


def list_exceptions(
    principal: Principal,
    filters: dict | None = None,
    *,
    page=1,
    limit=None,
    sort: str = "created_at",
    order: str = "desc",
    now: datetime | None = None,
) -> dict:
    """List exceptions visible to principal with filters, sorting and pagination.

    Args:
        principal: Acting principal; determines vertical scope.
        filters: status, severity, vertical_id, assigned_to, created_by,
                 program_id, priority, category, start_date, end_date,
                 search, overdue_only, sla_breach_only. Status and severity
                 accept a single value, a list or a comma-separated string.
        page: 1-based page number.
        limit: Page size (defaults to DEFAULT_PAGE_LIMIT, capped at MAX_PAGE_LIMIT).
        sort: One of SORT_FIELDS.
        order: asc | desc.
        now: Reference time for overdue and derived fields.

    Returns:
        {"items": [...], "pagination": {"page", "limit", "total", "total_pages"}}

    Raises:
        ForbiddenError: If a non-global principal filters on another vertical.
        ValidationError: On invalid filter values, sort field, order or paging.
    """
    filters = filters or {}
    now = as_utc(now) if now is not None else utcnow()
    page, limit = _page_params(page, limit)

    sort_col = SORT_FIELDS.get(sort or "created_at")
    if sort_col is None:
        raise ValidationError(
            f"Invalid sort field '{sort}'. Must be one of: {', '.join(sorted(SORT_FIELDS))}",
            details={"sort": "invalid"},
        )
    order = (order or "desc").lower()
    if order not in ("asc", "desc"):
        raise ValidationError("order must be 'asc' or 'desc'", details={"order": "invalid"})

    vertical_id = resolve_vertical_scope(principal, _int_filter(filters.get("vertical_id"), "vertical_id"))
    conds = _filter_conditions(filters, vertical_id, now)

    total = db.session.execute(
        select(func.count()).select_from(ExceptionRecord).where(*conds)
    ).scalar() or 0

    ordering = sort_col.asc() if order == "asc" else sort_col.desc()
    records = db.session.execute(
        select(ExceptionRecord)
        .where(*conds)
        .order_by(ordering, ExceptionRecord.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()

    return {
        "items": [annotate(r.to_dict(), r, now) for r in records],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": ceil(total / limit) if total else 0,
        },
    }


def list_overdue(principal: Principal, *, vertical_id=None, page=1, limit=None, now=None) -> dict:
    """Open or in-progress exceptions past their due date, soonest-due first."""
    return list_exceptions(
        principal,
        {"vertical_id": vertical_id, "overdue_only": True},
        page=page, limit=limit, sort="due_date", order="asc", now=now,
    )


def list_assigned_to_user(
    principal: Principal,
    user_id: int,
    *,
    status=None,
    page=1,
    limit=None,
    now=None,
) -> dict:
    """Exceptions assigned to user_id. Non-global principals may only list their own."""
    check_access(principal, Action.VIEW_WORKLOAD, target_user_id=user_id)
    return list_exceptions(
        principal,
        {"assigned_to": user_id, "status": status},
        page=page, limit=limit, now=now,
    )


def search_exceptions(principal: Principal, term: str, *, page=1, limit=None, now=None) -> dict:
    """Free-text search over title, description and exception number."""
    term = str(term or "").strip()
    if not term:
        raise ValidationError("Search term is required", details={"q": "required"})
    return list_exceptions(principal, {"search": term}, page=page, limit=limit, now=now)


# ═════════════════════════════════════════════════════════════════════════════
# Aggregates
# ═════════════════════════════════════════════════════════════════════════════


def _count(*conds) -> int:
    return db.session.execute(
        select(func.count()).select_from(ExceptionRecord).where(*conds)
    ).scalar() or 0


def _grouped(column, conds: list) -> dict:
    rows = db.session.execute(
        select(column, func.count()).where(*conds).group_by(column)
    ).all()
    return {key: count for key, count in rows}


def _avg_resolution_hours(conds: list) -> float | None:
    """Mean created→resolved time over resolved exceptions, in hours (2 dp)."""
    rows = db.session.execute(
        select(ExceptionRecord.created_at, ExceptionRecord.resolved_at).where(
            *conds,
            ExceptionRecord.status == "resolved",
            ExceptionRecord.resolved_at.is_not(None),
        )
    ).all()
    if not rows:
        return None
    total_seconds = sum(
        (as_utc(resolved) - as_utc(created)).total_seconds() for created, resolved in rows
    )
    return round(total_seconds / len(rows) / 3600, 2)


def _stats(conds: list, now: datetime) -> dict:
    by_status = _grouped(ExceptionRecord.status, conds)
    by_severity = _grouped(ExceptionRecord.severity, conds)
    by_category = _grouped(ExceptionRecord.category, conds)
    return {
        "total": sum(by_status.values()),
        "open": by_status.get("open", 0),
        "in_progress": by_status.get("in_progress", 0),
        "resolved": by_status.get("resolved", 0),
        "closed": by_status.get("closed", 0),
        "overdue": _count(*conds, _overdue_condition(now)),
        "sla_breach": _count(*conds, ExceptionRecord.sla_breach.is_(True)),
        "priority": _count(*conds, ExceptionRecord.priority.is_(True)),
        "escalated": _count(*conds, ExceptionRecord.escalation_level > 0),
        "avg_resolution_hours": _avg_resolution_hours(conds),
        "by_status": {s: by_status.get(s, 0) for s in STATUSES},
        "by_severity": {s: by_severity.get(s, 0) for s in SEVERITIES},
        "by_category": {(k or "uncategorized"): v for k, v in by_category.items()},
    }


def get_stats(principal: Principal, vertical_id=None, *, now: datetime | None = None) -> dict:
    """Backlog health counters for every visible exception (optionally one vertical).

    Returns:
        total, open, in_progress, resolved, closed, overdue, sla_breach,
        priority, escalated, avg_resolution_hours, by_status, by_severity,
        by_category.
    """
    now = as_utc(now) if now is not None else utcnow()
    scope = resolve_vertical_scope(principal, _int_filter(vertical_id, "vertical_id"))
    conds = [ExceptionRecord.vertical_id == scope] if scope is not None else []
    result = _stats(conds, now)
    result["vertical_id"] = scope
    return result


def get_vertical_summary(principal: Principal, vertical_id, *, now: datetime | None = None) -> dict:
    """get_stats() for exactly one vertical plus critical/high counts."""
    now = as_utc(now) if now is not None else utcnow()
    requested = _int_filter(vertical_id, "vertical_id")
    if requested is None:
        raise ValidationError("vertical_id is required", details={"vertical_id": "required"})
    scope = resolve_vertical_scope(principal, requested)
    conds = [ExceptionRecord.vertical_id == scope]
    result = _stats(conds, now)
    result["vertical_id"] = scope
    result["critical"] = result["by_severity"]["critical"]
    result["high"] = result["by_severity"]["high"]
    return result


def get_user_workload(principal: Principal, user_id, status=None, *, now: datetime | None = None) -> dict:
    """Workload counters for exceptions assigned to user_id.

    avg_age_days is the mean calendar age of the user's open and in-progress
    exceptions (None when there are none).

    Raises:
        ForbiddenError: If a non-global principal asks for another user.
        ValidationError: On an invalid user id or status.
    """
    now = as_utc(now) if now is not None else utcnow()
    user_id = _int_filter(user_id, "user_id")
    if user_id is None:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    check_access(principal, Action.VIEW_WORKLOAD, target_user_id=user_id)

    conds = [ExceptionRecord.assigned_to == user_id]
    if status:
        conds.append(ExceptionRecord.status == _check_members([status], STATUSES, "status")[0])

    by_status = _grouped(ExceptionRecord.status, conds)
    open_created = db.session.execute(
        select(ExceptionRecord.created_at).where(*conds, ExceptionRecord.status.in_(OPEN_STATUSES))
    ).scalars().all()
    avg_age = None
    if open_created:
        avg_age = round(sum(_day_diff(now, c) for c in open_created) / len(open_created), 2)

    return {
        "user_id": user_id,
        "total_assigned": sum(by_status.values()),
        "open": by_status.get("open", 0),
        "in_progress": by_status.get("in_progress", 0),
        "resolved": by_status.get("resolved", 0),
        "closed": by_status.get("closed", 0),
        "priority": _count(*conds, ExceptionRecord.priority.is_(True)),
        "overdue": _count(*conds, _overdue_condition(now)),
        "avg_age_days": avg_age,
    }


def get_escalation_report(
    principal: Principal,
    *,
    vertical_id=None,
    severity=None,
    start_date=None,
    end_date=None,
    now: datetime | None = None,
) -> dict:
    """Every escalated exception (level > 0) matching the filters.

    Rows are ordered by escalation level (highest first), then newest first,
    and carry total_escalations and age_days.

    Returns:
        {"items": [...], "summary": {"total", "by_severity", "by_level"}}
    """
    now = as_utc(now) if now is not None else utcnow()
    scope = resolve_vertical_scope(principal, _int_filter(vertical_id, "vertical_id"))
    conds = [ExceptionRecord.escalation_level > 0]
    if scope is not None:
        conds.append(ExceptionRecord.vertical_id == scope)
    if severity:
        conds.append(ExceptionRecord.severity == _check_members([severity], SEVERITIES, "severity")[0])
    conds.extend(_date_range_conditions(start_date, end_date))

    records = db.session.execute(
        select(ExceptionRecord)
        .where(*conds)
        .order_by(ExceptionRecord.escalation_level.desc(), ExceptionRecord.created_at.desc())
    ).scalars().all()

    ids = [r.id for r in records]
    counts = {}
    if ids:
        counts = dict(db.session.execute(
            select(ExceptionEscalation.exception_id, func.count())
            .where(ExceptionEscalation.exception_id.in_(ids))
            .group_by(ExceptionEscalation.exception_id)
        ).all())

    items = []
    by_severity = {s: 0 for s in SEVERITIES}
    by_level = {level: 0 for level in range(1, MAX_ESCALATION_LEVEL + 1)}
    for record in records:
        row = record.to_dict()
        row["total_escalations"] = counts.get(record.id, 0)
        row["age_days"] = _day_diff(now, record.created_at)
        items.append(row)
        by_severity[record.severity] = by_severity.get(record.severity, 0) + 1
        by_level[record.escalation_level] = by_level.get(record.escalation_level, 0) + 1

    return {
        "items": items,
        "summary": {
            "total": len(items),
            "by_severity": by_severity,
            "by_level": by_level,
        },
    }
