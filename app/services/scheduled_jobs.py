"""
Scheduled jobs.

Jobs:
    - approval_escalation_sweep: escalates overdue approval steps
    - risk_analytics_daily: recomputes today's risk analytics row per project
"""

from __future__ import annotations

import logging
from typing import Any

from app.core.exceptions import NotFoundError
from app.models.project import Project
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.risk_analytics import RiskAnalyticsService
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("approval_escalation_sweep", cron="*/15 * * * *")
def sweep_overdue_approvals(app) -> dict[str, Any]:
    """Escalate PENDING approval steps whose due date has passed."""
    escalated = ApprovalWorkflowService.escalate_overdue()
    if escalated:
        logger.info("Escalation sweep escalated %d step(s)", escalated,
                    extra={"job_name": "approval_escalation_sweep"})
    return {"escalated": escalated}


@register_job("risk_analytics_daily", cron="0 1 * * *")
def recompute_risk_analytics(app) -> dict[str, Any]:
    """Recompute today's risk analytics for every active project."""
    results = {"projects": 0, "failed": 0}
    project_ids = [pid for (pid,) in Project.query.with_entities(Project.id)
                   .filter(Project.status == "active").order_by(Project.id)]
    for project_id in project_ids:
        try:
            RiskAnalyticsService.recompute(project_id)
            results["projects"] += 1
        except NotFoundError:
            # Deleted between listing and recompute.
            results["failed"] += 1
    return results
