"""
Operational Exception Tracker
Exception Blueprint.

HTTP boundary for the exception workflow, logs, reports and SLA rules.
Every route resolves the principal, calls exactly one service operation
and wraps the result in the standard envelope.

Routes:
    GET    /api/v1/exceptions
    POST   /api/v1/exceptions
    GET    /api/v1/exceptions/search?q=
    GET    /api/v1/exceptions/overdue
    GET    /api/v1/exceptions/statistics
    GET    /api/v1/exceptions/escalation-report
    GET    /api/v1/exceptions/severity/<severity>
    GET    /api/v1/exceptions/status/<status>
    GET    /api/v1/exceptions/assigned/<user_id>
    GET    /api/v1/exceptions/workload/<user_id>
    GET    /api/v1/exceptions/vertical/<vertical_id>
    GET    /api/v1/exceptions/<exception_id>
    PUT    /api/v1/exceptions/<exception_id>
    DELETE /api/v1/exceptions/<exception_id>
    PUT    /api/v1/exceptions/<exception_id>/status
    PUT    /api/v1/exceptions/<exception_id>/assign
    PUT    /api/v1/exceptions/<exception_id>/reassign
    PUT    /api/v1/exceptions/<exception_id>/resolve
    PUT    /api/v1/exceptions/<exception_id>/close
    PUT    /api/v1/exceptions/<exception_id>/escalate
    GET    /api/v1/exceptions/<exception_id>/comments
    POST   /api/v1/exceptions/<exception_id>/comments
    GET    /api/v1/exceptions/<exception_id>/history
    GET    /api/v1/exceptions/<exception_id>/escalations
    GET    /api/v1/exceptions/sla-rules
    PUT    /api/v1/exceptions/sla-rules/<severity>
    POST   /api/v1/exceptions/sla-check
"""

from __future__ import annotations

import logging

from flask import Blueprint, request
from werkzeug.exceptions import HTTPException

import exception_tracker.services.exception_query as query
import exception_tracker.services.exception_workflow as workflow
import exception_tracker.services.history_log as log
import exception_tracker.services.sla_engine as sla
from exception_tracker.blueprints import filter_args, page_args
from exception_tracker.core.exceptions import (
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from exception_tracker.middleware.principal_context import require_principal
from exception_tracker.services.access_policy import Action, check_access
from exception_tracker.utils.errors import E, api_error, api_success
from exception_tracker.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

exception_bp = Blueprint("exceptions", __name__, url_prefix="/api/v1/exceptions")


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "expected object"})
    return data


def _body_flag(data: dict, key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    flag = parse_bool(value)
    if flag is None:
        raise ValidationError(f"{key} must be a boolean", details={key: "invalid"})
    return flag


def _paged(result: dict):
    return api_success(result["items"], pagination=result["pagination"])


# ═════════════════════════════════════════════════════════════════════════════
# Error handlers
# ═════════════════════════════════════════════════════════════════════════════


@exception_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@exception_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action})


@exception_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION, str(error), details=error.details)


@exception_bp.errorhandler(InternalError)
def _handle_internal(error: InternalError):
    logger.error("Internal error in exception_bp endpoint=%s: %s", request.endpoint, error)
    return api_error(E.INTERNAL, "Internal server error")


@exception_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    codes = {400: E.BAD_REQUEST, 401: E.UNAUTHORIZED, 404: E.NOT_FOUND, 405: E.METHOD_NOT_ALLOWED}
    return api_error(codes.get(error.code, E.BAD_REQUEST), error.description, status=error.code)


@exception_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in exception_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════════
# Listings & reports
# ═════════════════════════════════════════════════════════════════════════════


@exception_bp.route("", methods=["GET"])
def list_exceptions():
    """List exceptions with filters, sorting and pagination."""
    page, limit = page_args()
    result = query.list_exceptions(
        require_principal(),
        filter_args(),
        page=page,
        limit=limit,
        sort=request.args.get("sort", "created_at"),
        order=request.args.get("order", "desc"),
    )
    return _paged(result)


@exception_bp.route("/search", methods=["GET"])
def search_exceptions():
    page, limit = page_args()
    result = query.search_exceptions(
        require_principal(), request.args.get("q", ""), page=page, limit=limit,
    )
    return _paged(result)


@exception_bp.route("/overdue", methods=["GET"])
def list_overdue():
    page, limit = page_args()
    result = query.list_overdue(
        require_principal(),
        vertical_id=request.args.get("vertical_id"),
        page=page, limit=limit,
    )
    return _paged(result)


@exception_bp.route("/statistics", methods=["GET"])
def statistics():
    """Backlog counters for the caller's scope."""
    return api_success(query.get_stats(require_principal(), request.args.get("vertical_id")))


@exception_bp.route("/escalation-report", methods=["GET"])
def escalation_report():
    report = query.get_escalation_report(
        require_principal(),
        vertical_id=request.args.get("vertical_id"),
        severity=request.args.get("severity"),
        start_date=request.args.get("start_date"),
        end_date=request.args.get("end_date"),
    )
    return api_success(report)


@exception_bp.route("/severity/<severity>", methods=["GET"])
def list_by_severity(severity: str):
    page, limit = page_args()
    filters = filter_args()
    filters["severity"] = severity
    return _paged(query.list_exceptions(require_principal(), filters, page=page, limit=limit))


@exception_bp.route("/status/<status>", methods=["GET"])
def list_by_status(status: str):
    page, limit = page_args()
    filters = filter_args()
    filters["status"] = status
    return _paged(query.list_exceptions(require_principal(), filters, page=page, limit=limit))


@exception_bp.route("/assigned/<int:user_id>", methods=["GET"])
def list_assigned(user_id: int):
    page, limit = page_args()
    result = query.list_assigned_to_user(
        require_principal(), user_id,
        status=request.args.get("status"), page=page, limit=limit,
    )
    return _paged(result)


@exception_bp.route("/workload/<int:user_id>", methods=["GET"])
def user_workload(user_id: int):
    return api_success(query.get_user_workload(require_principal(), user_id, request.args.get("status")))


@exception_bp.route("/vertical/<int:vertical_id>", methods=["GET"])
def vertical_summary(vertical_id: int):
    return api_success(query.get_vertical_summary(require_principal(), vertical_id))


# ═════════════════════════════════════════════════════════════════════════════
# Single exception
# ═════════════════════════════════════════════════════════════════════════════


@exception_bp.route("", methods=["POST"])
def create_exception():
    """Create an exception; due date comes from the SLA rule unless supplied."""
    result = workflow.create_exception(require_principal(), _body())
    return api_success(result, status=201, message="Exception created")


@exception_bp.route("/<int:exception_id>", methods=["GET"])
def get_exception(exception_id: int):
    return api_success(workflow.get_exception(require_principal(), exception_id))


@exception_bp.route("/<int:exception_id>", methods=["PUT"])
def update_exception(exception_id: int):
    """Update editable fields. Status changes go through /status."""
    return api_success(workflow.update_exception(require_principal(), exception_id, _body()))


@exception_bp.route("/<int:exception_id>", methods=["DELETE"])
def delete_exception(exception_id: int):
    snapshot = workflow.delete_exception(require_principal(), exception_id)
    return api_success(snapshot, message="Exception deleted")


@exception_bp.route("/<int:exception_id>/status", methods=["PUT"])
def update_status(exception_id: int):
    data = _body()
    return api_success(workflow.update_status(require_principal(), exception_id, data.get("status")))


@exception_bp.route("/<int:exception_id>/assign", methods=["PUT"])
def assign_exception(exception_id: int):
    data = _body()
    return api_success(workflow.assign_exception(require_principal(), exception_id, data.get("assigned_to")))


@exception_bp.route("/<int:exception_id>/reassign", methods=["PUT"])
def reassign_exception(exception_id: int):
    data = _body()
    return api_success(workflow.reassign_exception(require_principal(), exception_id, data.get("assigned_to")))


@exception_bp.route("/<int:exception_id>/resolve", methods=["PUT"])
def resolve_exception(exception_id: int):
    data = _body()
    return api_success(
        workflow.resolve_exception(require_principal(), exception_id, data.get("resolution_notes"))
    )


@exception_bp.route("/<int:exception_id>/close", methods=["PUT"])
def close_exception(exception_id: int):
    return api_success(workflow.close_exception(require_principal(), exception_id))


@exception_bp.route("/<int:exception_id>/escalate", methods=["PUT"])
def escalate_exception(exception_id: int):
    data = _body()
    result = workflow.escalate_exception(
        require_principal(),
        exception_id,
        data.get("reason"),
        target_level=data.get("escalation_level"),
        escalated_to=data.get("escalated_to"),
    )
    return api_success(result)


# ═════════════════════════════════════════════════════════════════════════════
# Comments, history, escalations
# ═════════════════════════════════════════════════════════════════════════════


@exception_bp.route("/<int:exception_id>/comments", methods=["GET"])
def list_comments(exception_id: int):
    internal_only = parse_bool(request.args.get("internal_only"), False)
    return api_success(log.list_comments(require_principal(), exception_id, internal_only=internal_only))


@exception_bp.route("/<int:exception_id>/comments", methods=["POST"])
def add_comment(exception_id: int):
    data = _body()
    result = log.add_comment(
        require_principal(),
        exception_id,
        data.get("comment"),
        is_internal=_body_flag(data, "is_internal", False),
    )
    return api_success(result, status=201)


@exception_bp.route("/<int:exception_id>/history", methods=["GET"])
def list_history(exception_id: int):
    return api_success(log.list_history(require_principal(), exception_id))


@exception_bp.route("/<int:exception_id>/escalations", methods=["GET"])
def list_escalations(exception_id: int):
    return api_success(log.list_escalations(require_principal(), exception_id))


# ═════════════════════════════════════════════════════════════════════════════
# SLA rules & sweep
# ═════════════════════════════════════════════════════════════════════════════


@exception_bp.route("/sla-rules", methods=["GET"])
def list_sla_rules():
    require_principal()
    return api_success(sla.list_sla_rules())


@exception_bp.route("/sla-rules/<severity>", methods=["PUT"])
def set_sla_rule(severity: str):
    data = _body()
    result = sla.set_sla_rule(
        require_principal(),
        severity,
        data.get("resolution_time_hours"),
        active=_body_flag(data, "active", True),
    )
    return api_success(result)


@exception_bp.route("/sla-check", methods=["POST"])
def run_sla_check():
    """Run the breach sweep now (normally driven by the scheduler)."""
    check_access(require_principal(), Action.MANAGE_SLA)
    flagged = sla.check_sla_breach()
    return api_success({"flagged": len(flagged), "exception_ids": flagged})
