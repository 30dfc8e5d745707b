"""
Operational Exception Tracker
Exception domain models.

Models:
    - ExceptionRecord:      tracked operational issue with SLA due date and escalation state
    - ExceptionComment:     append-only annotation (internal or shared)
    - ExceptionHistory:     append-only audit entry, one per successful mutation
    - ExceptionEscalation:  append-only record of every escalation step
    - SLARule:              severity → resolution-time budget (hours)

Architecture:
    ExceptionRecord ──1:N──▶ ExceptionComment
    ExceptionRecord ──1:N──▶ ExceptionHistory
    ExceptionRecord ──1:N──▶ ExceptionEscalation
    SLARule is configuration, looked up by severity at creation time only.

Lifecycle states:
    ExceptionRecord:  open → in_progress → resolved → closed
                      (re-open allowed from in_progress, resolved, closed)
"""

from datetime import datetime, timezone

from exception_tracker.models import db
from exception_tracker.models.base import VerticalScopedModel


# ── Constants ────────────────────────────────────────────────────────────────

SEVERITIES = ("low", "medium", "high", "critical")

STATUSES = ("open", "in_progress", "resolved", "closed")

OPEN_STATUSES = ("open", "in_progress")

MAX_ESCALATION_LEVEL = 3

HISTORY_ACTIONS = {
    "create", "update", "assign", "reassign",
    "resolve", "close", "escalate", "comment",
}

UPDATABLE_FIELDS = (
    "title", "description", "category", "severity",
    "vertical_id", "program_id", "assigned_to", "priority",
    "due_date", "tags", "notes",
)


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

STATUS_TRANSITIONS = {
    "open":        ["in_progress", "resolved", "closed"],
    "in_progress": ["resolved", "closed", "open"],
    "resolved":    ["closed", "open"],
    "closed":      ["open"],
}

# Event-driven transitions: event -> {current_status: resulting_status}.
# A current status missing from an event's map means the event is refused.
EVENT_TRANSITIONS = {
    "assign":   {s: "in_progress" for s in STATUSES},
    "resolve":  {"open": "resolved", "in_progress": "resolved"},
    "close":    {"resolved": "closed"},
    "reassign": {s: s for s in STATUSES},
    "escalate": {s: s for s in STATUSES},
}


def validate_status_transition(old_status, new_status):
    """Return True if a generic ExceptionRecord status change is valid."""
    return new_status in STATUS_TRANSITIONS.get(old_status, [])


def next_status_for_event(current_status, event):
    """Return the status an event leads to from current_status, or None if refused."""
    return EVENT_TRANSITIONS.get(event, {}).get(current_status)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. ExceptionRecord
# ═════════════════════════════════════════════════════════════════════════════


class ExceptionRecord(VerticalScopedModel):
    """
    Operational exception (incident) tracked through a resolution workflow.
    Number format: EXC-2026-00001 (assigned once by the number generator).
    due_date is set at creation from the active SLA rule unless supplied.
    """

    __tablename__ = "exceptions"

    id = db.Column(db.Integer, primary_key=True)
    exception_number = db.Column(
        db.String(40), nullable=False, unique=True,
        comment="Human-readable identifier, e.g. EXC-2026-00001",
    )

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=True)
    severity = db.Column(
        db.String(10), nullable=False, default="medium",
        comment="low | medium | high | critical",
    )
    status = db.Column(
        db.String(20), nullable=False, default="open",
        comment="open | in_progress | resolved | closed",
    )
    priority = db.Column(db.Boolean, nullable=False, default=False)
    tags = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Ownership
    program_id = db.Column(db.Integer, nullable=True, index=True)
    created_by = db.Column(db.Integer, nullable=False)
    assigned_to = db.Column(db.Integer, nullable=True, index=True)
    assigned_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # SLA and escalation
    due_date = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="created_at + SLARule.resolution_time_hours unless supplied",
    )
    sla_breach = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set by the breach sweeper; never reset automatically",
    )
    escalation_level = db.Column(
        db.Integer, nullable=False, default=0,
        comment="0 = not escalated, max 3",
    )
    escalation_count = db.Column(db.Integer, nullable=False, default=0)
    last_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Resolution / closure audit
    resolution_notes = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    comments = db.relationship(
        "ExceptionComment", backref="exception", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "ExceptionHistory", backref="exception", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    escalations = db.relationship(
        "ExceptionEscalation", backref="exception", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint(
            "severity IN ('low','medium','high','critical')",
            name="ck_exceptions_severity",
        ),
        db.CheckConstraint(
            "status IN ('open','in_progress','resolved','closed')",
            name="ck_exceptions_status",
        ),
        db.CheckConstraint(
            "escalation_level >= 0 AND escalation_level <= 3",
            name="ck_exceptions_escalation_level",
        ),
        db.Index("ix_exceptions_vertical_status", "vertical_id", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "exception_number": self.exception_number,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "priority": self.priority,
            "tags": self.tags or [],
            "notes": self.notes,
            "vertical_id": self.vertical_id,
            "program_id": self.program_id,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "assigned_date": _iso(self.assigned_date),
            "due_date": _iso(self.due_date),
            "sla_breach": self.sla_breach,
            "escalation_level": self.escalation_level,
            "escalation_count": self.escalation_count,
            "last_escalated_at": _iso(self.last_escalated_at),
            "resolution_notes": self.resolution_notes,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "closed_at": _iso(self.closed_at),
            "closed_by": self.closed_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ExceptionRecord {self.exception_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ExceptionComment
# ═════════════════════════════════════════════════════════════════════════════


class ExceptionComment(db.Model):
    """Annotation on an exception, independent of its workflow state.

    is_internal marks notes meant for the handling team only.
    """

    __tablename__ = "exception_comments"

    id = db.Column(db.Integer, primary_key=True)
    exception_id = db.Column(
        db.Integer, db.ForeignKey("exceptions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    author_id = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exception_id": self.exception_id,
            "author_id": self.author_id,
            "comment": self.comment,
            "is_internal": self.is_internal,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ExceptionComment {self.id} on exception={self.exception_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. ExceptionHistory
# ═════════════════════════════════════════════════════════════════════════════


class ExceptionHistory(db.Model):
    """Audit entry written after each successful mutation.

    old_values / new_values hold only the fields the operation touched.
    """

    __tablename__ = "exception_history"

    id = db.Column(db.Integer, primary_key=True)
    exception_id = db.Column(
        db.Integer, db.ForeignKey("exceptions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(
        db.String(20), nullable=False,
        comment="create | update | assign | reassign | resolve | close | escalate | comment",
    )
    performed_by = db.Column(db.Integer, nullable=False)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exception_id": self.exception_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ExceptionHistory {self.action} on exception={self.exception_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ExceptionEscalation
# ═════════════════════════════════════════════════════════════════════════════


class ExceptionEscalation(db.Model):
    """One escalation step. escalated_from is the assignee before the step."""

    __tablename__ = "exception_escalations"

    id = db.Column(db.Integer, primary_key=True)
    exception_id = db.Column(
        db.Integer, db.ForeignKey("exceptions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    escalated_from = db.Column(db.Integer, nullable=True)
    escalated_to = db.Column(db.Integer, nullable=True)
    escalated_by = db.Column(db.Integer, nullable=False)
    level = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | acknowledged",
    )
    escalated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exception_id": self.exception_id,
            "escalated_from": self.escalated_from,
            "escalated_to": self.escalated_to,
            "escalated_by": self.escalated_by,
            "level": self.level,
            "reason": self.reason,
            "status": self.status,
            "escalated_at": _iso(self.escalated_at),
        }

    def __repr__(self) -> str:
        return f"<ExceptionEscalation L{self.level} on exception={self.exception_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. SLARule
# ═════════════════════════════════════════════════════════════════════════════


class SLARule(db.Model):
    """
    Resolution-time budget per severity.
    Only active rules are consulted when computing a due date.
    """

    __tablename__ = "exception_sla_rules"

    id = db.Column(db.Integer, primary_key=True)
    severity = db.Column(
        db.String(10), nullable=False, unique=True,
        comment="low | medium | high | critical",
    )
    resolution_time_hours = db.Column(db.Integer, nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "severity": self.severity,
            "resolution_time_hours": self.resolution_time_hours,
            "active": self.active,
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<SLARule {self.severity}={self.resolution_time_hours}h active={self.active}>"
