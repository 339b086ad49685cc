"""
Scheduler Service unit tests.

Tests cover:
  - job registry and ScheduledJob records
  - escalation sweep and daily risk analytics jobs
  - disabled jobs are skipped
  - failing jobs are recorded, not raised
"""
from datetime import timedelta

import pytest

from app.core.exceptions import NotFoundError
from app.models.approval import ApprovalStepInstance
from app.models.risk import RiskAnalyticsSnapshot
from app.models.scheduling import ScheduledJob
from app.services import change_log, scheduler_service
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.scheduler_service import SchedulerService
from app.utils.helpers import utcnow


class TestRegistry:
    def test_builtin_jobs_registered(self):
        jobs = scheduler_service.get_registered_jobs()
        assert {"approval_escalation_sweep", "risk_analytics_daily"} <= set(jobs)

    def test_records_created_once(self):
        created = SchedulerService.ensure_jobs_registered()
        assert {j.job_name for j in created} >= {"approval_escalation_sweep", "risk_analytics_daily"}
        assert SchedulerService.ensure_jobs_registered() == []
        record = ScheduledJob.query.filter_by(job_name="approval_escalation_sweep").one()
        assert record.cron_expression == "*/15 * * * *"

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        names = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert names["risk_analytics_daily"]["db_record"]["is_enabled"] is True


class TestRunJob:
    def test_escalation_sweep(self, graph):
        ApprovalWorkflowService.create_workflow(graph.project.id, {
            "name": "FMEA review",
            "trigger_conditions": {"entity_types": ["FAILURE_MODE"]},
            "approval_steps": [{"step_number": 1, "step_name": "Review", "approver_role": "QUALITY_ENGINEER"}],
        }, actor_id="admin")
        event = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                         {"severity_rating": 8}, {"severity_rating": 9},
                                         "jdoe", graph.project.id)
        step = ApprovalStepInstance.query.filter_by(change_event_id=event.id).one()
        ApprovalWorkflowService.override_due_date(step.id, utcnow() - timedelta(hours=1))
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("approval_escalation_sweep")
        assert result["status"] == "success"
        assert result["result"] == {"escalated": 1}
        record = ScheduledJob.query.filter_by(job_name="approval_escalation_sweep").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_risk_analytics_daily(self, graph):
        result = SchedulerService.run_job("risk_analytics_daily")
        assert result["result"] == {"projects": 1, "failed": 0}
        row = RiskAnalyticsSnapshot.query.filter_by(project_id=graph.project.id).one()
        assert row.analysis_date == utcnow().date()

    def test_unknown_job(self):
        with pytest.raises(NotFoundError):
            SchedulerService.run_job("defragment_everything")

    def test_disabled_job_skipped(self, graph):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("risk_analytics_daily", False)
        result = SchedulerService.run_job("risk_analytics_daily")
        assert result["status"] == "skipped"
        assert RiskAnalyticsSnapshot.query.count() == 0

    def test_toggle_unknown_job(self):
        with pytest.raises(NotFoundError):
            SchedulerService.toggle_job("defragment_everything", True)

    def test_failure_recorded(self, monkeypatch):
        def _broken(app):
            raise RuntimeError("mail relay unreachable")

        monkeypatch.setitem(scheduler_service._job_registry, "broken_job", _broken)
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("broken_job")
        assert result["status"] == "failed"
        assert "unreachable" in result["error"]
        record = ScheduledJob.query.filter_by(job_name="broken_job").one()
        assert record.error_count == 1
        assert record.last_error == "mail relay unreachable"
