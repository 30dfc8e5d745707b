"""
Operational Exception Tracker
Scheduled Jobs.

Jobs:
    - sla_breach_sweep: flags open / in-progress exceptions past their due date
"""

from __future__ import annotations

from typing import Any

from exception_tracker.services.scheduler_service import register_job
from exception_tracker.services.sla_engine import check_sla_breach


# ═══════════════════════════════════════════════════════════════════════════
#  SLA Breach Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_breach_sweep")
def sweep_sla_breaches(app) -> dict[str, Any]:
    """Flag exceptions whose due date lapsed while open or in progress."""
    flagged = check_sla_breach()
    return {"flagged": len(flagged), "exception_ids": flagged}
