"""
Approval Workflow Engine unit tests.

Tests cover:
  - workflow selection by trigger conditions, auto-approval
  - sequential steps: approve advances, reject stops
  - parallel steps and optional steps
  - lazy escalation of overdue steps on read, and the sweep
  - emergency bypass
  - pending-approval queries
  - workflow validation and administration
"""
from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import ApprovalStepInstance
from app.models.change import ChangeEvent
from app.models.notification import ChangeNotification
from app.services import change_log
from app.services.approval_workflow import ApprovalWorkflowService
from app.utils.helpers import utcnow


TWO_STEPS = [
    {"step_number": 1, "step_name": "Quality review", "approver_role": "QUALITY_ENGINEER",
     "escalation_roles": ["QUALITY_LEAD"]},
    {"step_number": 2, "step_name": "Manager sign-off", "approver_role": "QUALITY_MANAGER"},
]


def _workflow(project_id, **overrides):
    data = {
        "name": "FMEA change review",
        "trigger_conditions": {"entity_types": ["FAILURE_MODE"]},
        "approval_steps": TWO_STEPS,
    }
    data.update(overrides)
    return ApprovalWorkflowService.create_workflow(project_id, data, actor_id="admin")


def _severity_change(graph, new=9):
    return change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                    {"severity_rating": 8}, {"severity_rating": new},
                                    "jdoe", graph.project.id)


def _steps(event_id):
    return (ApprovalStepInstance.query.filter_by(change_event_id=event_id)
            .order_by(ApprovalStepInstance.step_number).all())


# ═════════════════════════════════════════════════════════════════════════
# SELECTION
# ═════════════════════════════════════════════════════════════════════════

class TestSelection:
    def test_no_matching_workflow_auto_approves(self, graph):
        _workflow(graph.project.id, trigger_conditions={"entity_types": ["CONTROL_ITEM"]})
        event = _severity_change(graph)
        assert event.approval_status == "AUTO_APPROVED"
        assert event.workflow_id is None
        assert _steps(event.id) == []

    def test_matching_workflow_opens_first_step(self, graph):
        wf = _workflow(graph.project.id)
        event = _severity_change(graph)
        assert event.approval_status == "PENDING"
        assert event.approval_required is True
        assert event.workflow_id == wf.id
        steps = _steps(event.id)
        assert [(s.step_number, s.status) for s in steps] == [(1, "PENDING")]
        assert steps[0].due_date is not None
        notes = ChangeNotification.query.filter_by(change_event_id=event.id,
                                                   notification_type="APPROVAL_REQUIRED").all()
        assert notes[0].recipient_criteria["roles"] == ["QUALITY_ENGINEER"]

    def test_impact_level_condition(self, graph):
        _workflow(graph.project.id, trigger_conditions={"impact_levels": ["HIGH", "CRITICAL"]})
        event = _severity_change(graph)
        assert event.impact_level == "LOW"
        assert event.approval_status == "AUTO_APPROVED"

    def test_auto_approve_conditions(self, graph):
        wf = _workflow(graph.project.id, auto_approve_conditions={"impact_levels": ["LOW"]})
        event = _severity_change(graph)
        assert event.approval_status == "AUTO_APPROVED"
        assert event.workflow_id == wf.id
        assert _steps(event.id) == []

    def test_inactive_workflow_ignored(self, graph):
        wf = _workflow(graph.project.id)
        ApprovalWorkflowService.deactivate_workflow(wf.id)
        assert _severity_change(graph).approval_status == "AUTO_APPROVED"

    def test_first_matching_workflow_wins(self, graph):
        first = _workflow(graph.project.id, name="First")
        _workflow(graph.project.id, name="Second")
        assert _severity_change(graph).workflow_id == first.id


# ═════════════════════════════════════════════════════════════════════════
# SEQUENTIAL DECISIONS
# ═════════════════════════════════════════════════════════════════════════

class TestSequential:
    def test_approve_advances_then_completes(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)

        ApprovalWorkflowService.approve_change_event(event.id, "qe1", "looks fine")
        steps = _steps(event.id)
        assert [(s.step_number, s.status) for s in steps] == [(1, "APPROVED"), (2, "PENDING")]
        assert db.session.get(ChangeEvent, event.id).approval_status == "PENDING"

        ApprovalWorkflowService.approve_change_event(event.id, "qm1")
        event = db.session.get(ChangeEvent, event.id)
        assert event.approval_status == "APPROVED"
        assert event.approved_by == "qm1"
        assert event.approved_at is not None

    def test_reject_first_step_stops_workflow(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        step = _steps(event.id)[0]

        ApprovalWorkflowService.decide_step(step.id, "REJECTED", "qe1", "RPN not re-rated")
        event = db.session.get(ChangeEvent, event.id)
        assert event.approval_status == "REJECTED"
        assert [(s.step_number, s.status) for s in _steps(event.id)] == [(1, "REJECTED")]
        note = ChangeNotification.query.filter_by(change_event_id=event.id,
                                                  notification_type="CHANGE_REJECTED").one()
        assert note.recipient_criteria["user_ids"] == ["jdoe"]

    def test_decided_step_cannot_be_decided_again(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        step = _steps(event.id)[0]
        ApprovalWorkflowService.decide_step(step.id, "APPROVED", "qe1")
        with pytest.raises(ConflictError):
            ApprovalWorkflowService.decide_step(step.id, "APPROVED", "qe1")

    def test_closed_event_refuses_decisions(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        ApprovalWorkflowService.reject_change_event(event.id, "qe1")
        with pytest.raises(ConflictError):
            ApprovalWorkflowService.approve_change_event(event.id, "qm1")

    def test_invalid_decision(self, graph):
        _workflow(graph.project.id)
        step = _steps(_severity_change(graph).id)[0]
        with pytest.raises(ValidationError):
            ApprovalWorkflowService.decide_step(step.id, "MAYBE", "qe1")

    def test_optional_trailing_step_is_not_required(self, graph):
        steps = [TWO_STEPS[0], {**TWO_STEPS[1], "is_optional": True}]
        _workflow(graph.project.id, approval_steps=steps)
        event = _severity_change(graph)
        ApprovalWorkflowService.approve_change_event(event.id, "qe1")
        assert db.session.get(ChangeEvent, event.id).approval_status == "APPROVED"
        assert len(_steps(event.id)) == 1

    def test_auto_approved_event_refuses_approval(self, graph):
        event = _severity_change(graph)
        with pytest.raises(ConflictError):
            ApprovalWorkflowService.approve_change_event(event.id, "qm1")


class TestParallel:
    def test_all_required_steps_open_at_once(self, graph):
        _workflow(graph.project.id, parallel_approval=True)
        event = _severity_change(graph)
        steps = _steps(event.id)
        assert [s.status for s in steps] == ["PENDING", "PENDING"]

        ApprovalWorkflowService.decide_step(steps[1].id, "APPROVED", "qm1")
        assert db.session.get(ChangeEvent, event.id).approval_status == "PENDING"
        ApprovalWorkflowService.decide_step(steps[0].id, "APPROVED", "qe1")
        assert db.session.get(ChangeEvent, event.id).approval_status == "APPROVED"

    def test_optional_step_closed_on_completion(self, graph):
        steps = [TWO_STEPS[0], {**TWO_STEPS[1], "is_optional": True}]
        _workflow(graph.project.id, approval_steps=steps, parallel_approval=True)
        event = _severity_change(graph)
        first = _steps(event.id)[0]
        ApprovalWorkflowService.decide_step(first.id, "APPROVED", "qe1")
        assert [s.status for s in _steps(event.id)] == ["APPROVED", "BYPASSED"]

    def test_one_rejection_rejects_event(self, graph):
        _workflow(graph.project.id, parallel_approval=True)
        event = _severity_change(graph)
        steps = _steps(event.id)
        ApprovalWorkflowService.decide_step(steps[0].id, "REJECTED", "qe1")
        assert db.session.get(ChangeEvent, event.id).approval_status == "REJECTED"
        with pytest.raises(ConflictError):
            ApprovalWorkflowService.decide_step(steps[1].id, "APPROVED", "qm1")


# ═════════════════════════════════════════════════════════════════════════
# ESCALATION
# ═════════════════════════════════════════════════════════════════════════

class TestEscalation:
    def test_overdue_step_escalates_on_read(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        step = _steps(event.id)[0]
        ApprovalWorkflowService.override_due_date(step.id, utcnow() - timedelta(hours=1))

        fetched = change_log.get_change_event(event.id)
        step = fetched.approval_steps[0]
        assert step.status == "ESCALATED"
        assert step.escalated_to_role == "QUALITY_LEAD"
        assert step.escalated_at is not None
        assert ChangeNotification.query.filter_by(change_event_id=event.id,
                                                  notification_type="APPROVAL_ESCALATED").count() == 1

        # Reading again does not escalate twice.
        change_log.get_change_event(event.id)
        assert ChangeNotification.query.filter_by(change_event_id=event.id,
                                                  notification_type="APPROVAL_ESCALATED").count() == 1

    def test_escalated_step_remains_decidable(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        step = _steps(event.id)[0]
        ApprovalWorkflowService.override_due_date(step.id, utcnow() - timedelta(minutes=5))
        ApprovalWorkflowService.decide_step(step.id, "APPROVED", "lead")
        assert db.session.get(ApprovalStepInstance, step.id).status == "APPROVED"

    def test_fallback_role_without_escalation_config(self, graph, app):
        steps = [{"step_number": 1, "step_name": "Review", "approver_role": "QUALITY_ENGINEER"}]
        _workflow(graph.project.id, approval_steps=steps)
        event = _severity_change(graph)
        step = _steps(event.id)[0]
        ApprovalWorkflowService.override_due_date(step.id, utcnow() - timedelta(hours=2))
        history = ApprovalWorkflowService.get_approval_history(event.id)
        assert history[0].escalated_to_role == app.config["ESCALATION_FALLBACK_ROLE"]

    def test_sweep_counts_escalations(self, graph):
        _workflow(graph.project.id)
        overdue = _severity_change(graph, new=9)
        fresh = _severity_change(graph, new=7)
        ApprovalWorkflowService.override_due_date(_steps(overdue.id)[0].id, utcnow() - timedelta(hours=1))

        assert ApprovalWorkflowService.escalate_overdue() == 1
        assert _steps(fresh.id)[0].status == "PENDING"
        assert ApprovalWorkflowService.escalate_overdue() == 0

    def test_due_date_override_on_closed_step(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        step = _steps(event.id)[0]
        ApprovalWorkflowService.decide_step(step.id, "APPROVED", "qe1")
        with pytest.raises(ConflictError):
            ApprovalWorkflowService.override_due_date(step.id, utcnow())


# ═════════════════════════════════════════════════════════════════════════
# BYPASS
# ═════════════════════════════════════════════════════════════════════════

class TestBypass:
    def test_default_bypass_role(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        ApprovalWorkflowService.bypass(event.id, "ops", "ADMIN", "Line down, containment change")
        event = db.session.get(ChangeEvent, event.id)
        assert event.approval_status == "APPROVED"
        assert [s.status for s in _steps(event.id)] == ["BYPASSED"]
        assert _steps(event.id)[0].comments == "Line down, containment change"

    def test_workflow_bypass_roles(self, graph):
        _workflow(graph.project.id, emergency_bypass_roles=["PLANT_MANAGER"])
        event = _severity_change(graph)
        with pytest.raises(ValidationError):
            ApprovalWorkflowService.bypass(event.id, "ops", "ADMIN", "urgent")
        ApprovalWorkflowService.bypass(event.id, "pm", "PLANT_MANAGER", "urgent")
        assert db.session.get(ChangeEvent, event.id).approval_status == "APPROVED"

    def test_reason_required(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        with pytest.raises(ValidationError):
            ApprovalWorkflowService.bypass(event.id, "ops", "ADMIN", "")


# ═════════════════════════════════════════════════════════════════════════
# QUERIES & ADMINISTRATION
# ═════════════════════════════════════════════════════════════════════════

class TestPendingApprovals:
    def test_filters_by_role_and_project(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        assert [s.change_event_id for s in ApprovalWorkflowService.get_pending_approvals(
            role="QUALITY_ENGINEER")] == [event.id]
        assert ApprovalWorkflowService.get_pending_approvals(role="QUALITY_MANAGER") == []
        assert ApprovalWorkflowService.get_pending_approvals(project_id=graph.project.id + 1) == []

    def test_escalated_step_visible_to_escalation_role(self, graph):
        _workflow(graph.project.id)
        event = _severity_change(graph)
        ApprovalWorkflowService.override_due_date(_steps(event.id)[0].id, utcnow() - timedelta(hours=1))
        pending = ApprovalWorkflowService.get_pending_approvals(role="QUALITY_LEAD")
        assert [s.status for s in pending] == ["ESCALATED"]


class TestWorkflowAdministration:
    def test_validation(self, project):
        with pytest.raises(ValidationError):
            _workflow(project.id, approval_steps=[])
        with pytest.raises(ValidationError):
            _workflow(project.id, approval_steps=[TWO_STEPS[0], {**TWO_STEPS[1], "step_number": 1}])
        with pytest.raises(ValidationError):
            _workflow(project.id, trigger_conditions={"entity_types": ["WIDGET"]})
        with pytest.raises(ValidationError):
            _workflow(project.id, approval_steps=[{**TWO_STEPS[0], "is_optional": True}])
        with pytest.raises(ValidationError):
            _workflow(project.id, name="")

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            _workflow(999)

    def test_update_and_list(self, project):
        wf = _workflow(project.id)
        ApprovalWorkflowService.update_workflow(wf.id, {"parallel_approval": True, "default_timeout_hours": 24})
        wf = ApprovalWorkflowService.get_workflow(wf.id)
        assert wf.parallel_approval is True
        assert wf.default_timeout_hours == 24

        ApprovalWorkflowService.deactivate_workflow(wf.id)
        assert ApprovalWorkflowService.list_workflows(project.id) == []
        assert len(ApprovalWorkflowService.list_workflows(project.id, include_inactive=True)) == 1

    def test_invalid_update_is_rolled_back(self, project):
        wf = _workflow(project.id)
        with pytest.raises(ValidationError):
            ApprovalWorkflowService.update_workflow(wf.id, {"default_timeout_hours": 0})
        assert ApprovalWorkflowService.get_workflow(wf.id).default_timeout_hours == 48

    def test_bound_event_keeps_its_workflow(self, graph):
        wf = _workflow(graph.project.id)
        event = _severity_change(graph)
        with pytest.raises(ConflictError):
            event.workflow_id = wf.id + 1
