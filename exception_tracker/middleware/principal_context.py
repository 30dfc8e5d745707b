"""
Principal Context Middleware — resolves the acting principal per API request.

Authentication happens upstream (gateway or identity service). By the time
a request reaches this app, the identity layer has attached:

    X-User-Id      integer user id
    X-User-Role    global_admin | secondary_global | vertical_lead | staff
    X-Vertical-Id  integer vertical id (optional for global roles)

This middleware turns those headers into g.principal. It does NOT reject
requests on its own; handlers that need a principal call
require_principal(), which answers 401 when none could be resolved.

Chain order:
  timing.py  →  principal_context.py  →  route handler
"""

import logging

from flask import abort, g, request

from exception_tracker.core.exceptions import ValidationError
from exception_tracker.services.access_policy import Principal, Role

logger = logging.getLogger(__name__)

# Paths that skip principal resolution (unauthenticated paths only)
PRINCIPAL_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _parse_principal():
    raw_id = request.headers.get("X-User-Id")
    raw_role = request.headers.get("X-User-Role")
    if not raw_id or not raw_role:
        return None
    try:
        user_id = int(raw_id)
        raw_vertical = request.headers.get("X-Vertical-Id")
        vertical_id = int(raw_vertical) if raw_vertical not in (None, "") else None
        role = Role.parse(raw_role)
    except (ValueError, ValidationError):
        logger.warning(
            "Rejected principal headers",
            extra={"path": request.path, "request_id": getattr(g, "request_id", None)},
        )
        return None
    return Principal(id=user_id, role=role, vertical_id=vertical_id)


def init_principal_context(app):
    """Register principal resolution as a before_request hook."""

    @app.before_request
    def _principal_context():
        g.principal = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in PRINCIPAL_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        g.principal = _parse_principal()
        return None


def require_principal() -> Principal:
    """Return g.principal or abort with 401."""
    principal = getattr(g, "principal", None)
    if principal is None:
        abort(401, description="Missing or invalid principal headers")
    return principal
