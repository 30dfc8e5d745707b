"""
Exception lookup helpers shared by the workflow, log and query services.

Every operation that targets one exception loads it through
load_exception() first. A missing id raises NotFoundError *before* the
access policy is consulted; vertical isolation is then enforced by
access_policy.check_access(), which raises ForbiddenError.

Usage:
    record = load_exception(exception_id)
    check_access(principal, Action.RESOLVE, record)
"""

import logging

from exception_tracker.core.exceptions import NotFoundError
from exception_tracker.models import db
from exception_tracker.models.exception import ExceptionRecord

logger = logging.getLogger(__name__)


def load_exception(exception_id: int) -> ExceptionRecord:
    """Fetch an exception by primary key or raise NotFoundError."""
    record = db.session.get(ExceptionRecord, exception_id)
    if record is None:
        raise NotFoundError(resource="Exception", resource_id=exception_id)
    return record
