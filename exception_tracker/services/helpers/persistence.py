"""
Commit helper shared by every service that writes primary data.

A failed commit is rolled back, logged with its context and re-raised as
InternalError so callers and blueprints only ever see the typed taxonomy.
Best-effort writes (history entries) do not use this; they swallow and log.

Usage:
    record.status = "closed"
    commit_or_raise("Failed to persist exception change", exception_id=record.id)
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from exception_tracker.core.exceptions import InternalError
from exception_tracker.models import db

logger = logging.getLogger(__name__)


def commit_or_raise(message: str = "Failed to persist change", **log_extra) -> None:
    """Commit the current session; roll back and raise InternalError on failure."""
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Commit failed: %s", message, exc_info=True, extra=log_extra)
        raise InternalError(message) from exc
