"""
Operational Exception Tracker
History / Comment Log — append-only audit trail and annotations.

Ordering guarantee:
  The workflow commits its primary write first and only then calls
  record_history(). A failed history write is rolled back and logged; it
  can lose an audit entry but never undoes or corrupts the exception itself.

Comments are independent of workflow state: any status accepts comments.
Each comment also produces a "comment" history entry.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from exception_tracker.core.exceptions import ValidationError
from exception_tracker.models import db
from exception_tracker.models.exception import (
    HISTORY_ACTIONS,
    ExceptionComment,
    ExceptionEscalation,
    ExceptionHistory,
)
from exception_tracker.services.access_policy import Action, Principal, check_access
from exception_tracker.services.helpers.exception_lookup import load_exception
from exception_tracker.services.helpers.persistence import commit_or_raise

logger = logging.getLogger(__name__)


def _jsonable(values: dict | None) -> dict | None:
    """Return a copy of values with datetimes rendered as ISO strings."""
    if values is None:
        return None
    out = {}
    for key, val in values.items():
        out[key] = val.isoformat() if hasattr(val, "isoformat") else val
    return out


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════


def record_history(
    exception_id: int,
    action: str,
    performed_by: int,
    *,
    old_values: dict | None = None,
    new_values: dict | None = None,
    description: str | None = None,
) -> dict | None:
    """Append one history entry in its own commit. Best effort.

    Args:
        exception_id: Exception the entry belongs to.
        action: One of HISTORY_ACTIONS.
        performed_by: Acting principal id.
        old_values: Partial snapshot of touched fields before the change.
        new_values: Partial snapshot of touched fields after the change.
        description: Free-text summary.

    Returns:
        Serialized entry, or None if the write failed.
    """
    if action not in HISTORY_ACTIONS:
        raise ValueError(f"Unknown history action '{action}'")

    try:
        entry = ExceptionHistory(
            exception_id=exception_id,
            action=action,
            performed_by=performed_by,
            old_values=_jsonable(old_values),
            new_values=_jsonable(new_values),
            description=description,
        )
        db.session.add(entry)
        db.session.commit()
        return entry.to_dict()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning(
            "History write failed for exception %s action=%s",
            exception_id, action, exc_info=True,
            extra={"exception_id": exception_id},
        )
        return None


def list_history(principal: Principal, exception_id: int) -> list[dict]:
    """Return the audit trail of an exception, oldest first.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not view it.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.VIEW, record)
    rows = db.session.execute(
        select(ExceptionHistory)
        .where(ExceptionHistory.exception_id == exception_id)
        .order_by(ExceptionHistory.created_at.asc(), ExceptionHistory.id.asc())
    ).scalars().all()
    return [r.to_dict() for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


def add_comment(
    principal: Principal,
    exception_id: int,
    text: str,
    *,
    is_internal: bool = False,
) -> dict:
    """Attach a comment to an exception and log a "comment" history entry.

    Raises:
        NotFoundError: If the exception does not exist.
        ForbiddenError: If principal may not comment on it.
        ValidationError: If the comment text is empty.
        InternalError: If the comment cannot be persisted.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.COMMENT, record)

    text = (text or "").strip()
    if not text:
        raise ValidationError("Comment text is required", details={"comment": "required"})

    comment = ExceptionComment(
        exception_id=record.id,
        author_id=principal.id,
        comment=text,
        is_internal=bool(is_internal),
    )
    db.session.add(comment)
    commit_or_raise("Failed to persist comment", exception_id=record.id)

    record_history(
        record.id, "comment", principal.id,
        new_values={"comment_id": comment.id, "is_internal": comment.is_internal},
        description="Comment added",
    )
    return comment.to_dict()


def list_comments(principal: Principal, exception_id: int, *, internal_only: bool = False) -> list[dict]:
    """Return comments on an exception, oldest first.

    Args:
        internal_only: When True, return only internal comments.
    """
    record = load_exception(exception_id)
    check_access(principal, Action.VIEW, record)

    stmt = select(ExceptionComment).where(ExceptionComment.exception_id == exception_id)
    if internal_only:
        stmt = stmt.where(ExceptionComment.is_internal.is_(True))
    stmt = stmt.order_by(ExceptionComment.created_at.asc(), ExceptionComment.id.asc())
    return [c.to_dict() for c in db.session.execute(stmt).scalars().all()]


# ═════════════════════════════════════════════════════════════════════════════
# Escalations
# ═════════════════════════════════════════════════════════════════════════════


def list_escalations(principal: Principal, exception_id: int) -> list[dict]:
    """Return escalation records of an exception, newest first."""
    record = load_exception(exception_id)
    check_access(principal, Action.VIEW, record)
    rows = db.session.execute(
        select(ExceptionEscalation)
        .where(ExceptionEscalation.exception_id == exception_id)
        .order_by(ExceptionEscalation.escalated_at.desc(), ExceptionEscalation.id.desc())
    ).scalars().all()
    return [r.to_dict() for r in rows]
