"""
Operational Exception Tracker
Blueprint registry and shared request helpers.
"""

from flask import request

LIST_FILTER_KEYS = (
    "status", "severity", "vertical_id", "assigned_to", "created_by",
    "program_id", "priority", "category", "start_date", "end_date",
    "search", "overdue_only", "sla_breach_only",
)


def page_args():
    """Read page/limit query params; validation happens in the query service.

    Query params:
        page  — 1-based page number (default 1)
        limit — page size (default from config)

    Returns:
        (page, limit) as raw strings or defaults
    """
    return request.args.get("page", 1), request.args.get("limit")


def filter_args(keys=LIST_FILTER_KEYS) -> dict:
    """Collect listing filters present in the query string."""
    filters = {}
    for key in keys:
        values = request.args.getlist(key)
        if not values:
            continue
        filters[key] = values if len(values) > 1 else values[0]
    return filters
