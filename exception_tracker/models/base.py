"""
VerticalScopedModel — abstract base class for vertical-scoped models.

Every record that belongs to a business unit (vertical) inherits from this
instead of db.Model directly. Vertical isolation itself is enforced by the
access policy; this base only guarantees the indexed, non-null column.
"""

from exception_tracker.models import db


class VerticalScopedModel(db.Model):
    """Abstract base for vertical-scoped tables."""
    __abstract__ = True

    vertical_id = db.Column(
        db.Integer,
        nullable=False,
        index=True,
        comment="Owning business unit; isolates reads and writes",
    )
