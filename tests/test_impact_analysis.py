"""
Impact Analysis unit tests.

Tests cover:
  - score formula, clamping and level cut points
  - affected entity lists (self first, dependents after)
  - DELETE events resolving context from old values
  - RPN-over-threshold and flagged-field contributions
  - fixed HIGH assessment for RESTORE events
  - FAILED analyses and retry
"""
import pytest

from app.core.exceptions import NotFoundError, TransientError
from app.models import db
from app.models.change import ChangeEvent, ImpactAnalysis
from app.models.notification import ChangeNotification
from app.services import change_log, impact_analysis
from app.services.impact_analysis import ImpactAnalysisService, level_for_score, score_impact


class TestScoring:
    def test_per_dependent_weight(self):
        assert score_impact(4, False, False) == 2.0

    def test_dependents_are_capped(self):
        assert score_impact(50, False, False) == 5.0

    def test_rpn_and_flag_weights(self):
        assert score_impact(2, True, True) == 6.0

    def test_clamped_to_ten(self):
        assert score_impact(50, True, True) == 10.0

    @pytest.mark.parametrize("score, level", [
        (0.0, "LOW"), (2.99, "LOW"), (3.0, "MEDIUM"), (5.99, "MEDIUM"),
        (6.0, "HIGH"), (8.49, "HIGH"), (8.5, "CRITICAL"), (10.0, "CRITICAL"),
    ])
    def test_cut_points(self, score, level):
        assert level_for_score(score) == level


class TestAffectedEntities:
    def test_process_step_update(self, graph):
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "Turning"}, "jdoe", graph.project.id,
        )
        analysis = event.impact_analysis
        assert analysis.analysis_status == "COMPLETED"
        assert analysis.affected_process_steps[0]["id"] == graph.s1.id
        assert [m["id"] for m in analysis.affected_failure_modes] == [graph.m1.id]
        assert [i["id"] for i in analysis.affected_control_items] == [graph.i1.id]
        assert analysis.impact_score == 1.0
        assert analysis.risk_level == "LOW"
        assert event.impact_level == "LOW"

    def test_delete_resolves_dependents_from_old_values(self, graph):
        old = {"id": graph.s1.id, "process_flow_id": graph.flow.id, "step_number": 10, "name": "Machining"}
        event = change_log.record_change("PROCESS_STEP", graph.s1.id, "DELETE", old, None,
                                         "jdoe", graph.project.id)
        analysis = event.impact_analysis
        assert analysis.affected_process_steps[0]["id"] == graph.s1.id
        assert len(analysis.affected_failure_modes) >= 1
        assert len(analysis.affected_control_items) >= 1
        assert "Reassign or retire failure modes that referenced the deleted record" \
            in analysis.risk_mitigation_actions

    def test_delete_recorded_after_the_row_is_deleted(self, graph):
        from app.models.fmea import FailureMode
        from app.models.process_flow import ProcessStep

        s1_id, m1_id, i1_id = graph.s1.id, graph.m1.id, graph.i1.id
        old = {"id": s1_id, "process_flow_id": graph.flow.id, "step_number": 10, "name": "Machining"}
        db.session.delete(db.session.get(ProcessStep, s1_id))

        event = change_log.record_change("PROCESS_STEP", s1_id, "DELETE", old, None,
                                         "jdoe", graph.project.id)

        # The commit detached m1 from the step...
        assert db.session.get(FailureMode, m1_id).primary_process_step_id is None
        # ...but the dependents it had at delete time are still listed.
        analysis = event.impact_analysis
        assert analysis.affected_process_steps == [{"id": s1_id, "name": "Machining"}]
        assert [m["id"] for m in analysis.affected_failure_modes] == [m1_id]
        assert [i["id"] for i in analysis.affected_control_items] == [i1_id]
        assert event.dependent_refs == {"PROCESS_STEP": [], "FAILURE_MODE": [m1_id], "CONTROL_ITEM": [i1_id]}

    def test_snapshot_survives_record_deletion(self, graph):
        from app.models.control_plan import ControlPlanItem

        item_id = graph.i2.id
        event = change_log.record_change(
            "CONTROL_ITEM", item_id, "DELETE",
            {"id": item_id, "operation_description": "Final inspection",
             "process_step_id": graph.s2.id, "linked_failure_mode_id": graph.m2.id},
            None, "jdoe", graph.project.id,
        )
        db.session.delete(db.session.get(ControlPlanItem, item_id))
        db.session.commit()

        analysis = ImpactAnalysisService.get(event.id)
        assert analysis.affected_control_items[0] == {"id": item_id, "name": "Final inspection"}

    def test_flagged_field_raises_level(self, graph):
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"safety_requirements": None}, {"safety_requirements": "Wear gloves"},
            "jdoe", graph.project.id,
        )
        analysis = event.impact_analysis
        assert analysis.flagged_fields == ["safety_requirements"]
        assert analysis.impact_score == 3.0
        assert analysis.risk_level == "MEDIUM"
        assert "SAFETY_OFFICER" in analysis.affected_stakeholders

    def test_rpn_over_threshold(self, graph):
        graph.c1.occurrence_rating = 5   # 8 × 5 × 4 = 160 > 100
        db.session.commit()
        event = change_log.record_change(
            "FAILURE_CAUSE", graph.c1.id, "UPDATE",
            {"occurrence_rating": 3}, {"occurrence_rating": 5}, "jdoe", graph.project.id,
        )
        analysis = event.impact_analysis
        assert analysis.rpn_threshold_exceeded is True
        # m1 + i1 as dependents, plus the threshold weight
        assert analysis.impact_score == 4.0
        assert analysis.risk_level == "MEDIUM"

    def test_high_impact_enqueues_notification(self, graph, monkeypatch, app):
        monkeypatch.setitem(app.config, "IMPACT_RISK_CUT_POINTS", {"MEDIUM": 0.5, "HIGH": 1.0, "CRITICAL": 9.0})
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "Turning"}, "jdoe", graph.project.id,
        )
        assert event.impact_level == "HIGH"
        notes = ChangeNotification.query.filter_by(change_event_id=event.id,
                                                   notification_type="IMPACT_HIGH").all()
        assert len(notes) == 1
        assert "QUALITY_MANAGER" in notes[0].recipient_criteria["roles"]

    def test_batch_siblings_are_dependent_changes(self, graph):
        pid = graph.project.id
        first = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                         {"severity_rating": 8}, {"severity_rating": 7}, "a", pid, batch_id="ecn-7")
        second = change_log.record_change("FAILURE_MODE", graph.m2.id, "UPDATE",
                                          {"severity_rating": 5}, {"severity_rating": 4}, "a", pid, batch_id="ecn-7")
        assert second.impact_analysis.dependent_change_ids == [first.id]


class TestRestoreEvents:
    def test_restore_is_always_high(self, project):
        event = change_log.append_event(
            entity_type="PROJECT", entity_id=project.id, change_type="RESTORE",
            old_values={"version_id": 2}, new_values={"version_id": 1},
            actor_id="jdoe", project_id=project.id, impact_level="HIGH",
        )
        db.session.commit()
        analysis = ImpactAnalysisService.analyze(event)
        assert analysis.risk_level == "HIGH"
        assert analysis.impact_score == 6.0
        assert analysis.analysis_status == "COMPLETED"


class TestFailureAndRetry:
    def test_lookup_failure_is_recorded_then_retried(self, graph, monkeypatch):
        real = impact_analysis.related_for_event

        def _unavailable(*args, **kwargs):
            raise TransientError("dependency lookup timed out")

        monkeypatch.setattr(impact_analysis, "related_for_event", _unavailable)
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "Turning"}, "jdoe", graph.project.id,
        )
        analysis = ImpactAnalysisService.get(event.id)
        assert analysis.analysis_status == "FAILED"
        assert "timed out" in analysis.error_message
        # The originating write stays recorded.
        assert db.session.get(ChangeEvent, event.id) is not None

        monkeypatch.setattr(impact_analysis, "related_for_event", real)
        retried = ImpactAnalysisService.retry(event.id)
        assert retried.analysis_status == "COMPLETED"
        assert retried.attempt_count == 2

    def test_unexpected_error_is_recorded_and_pipeline_continues(self, graph, monkeypatch):
        def _broken(*args, **kwargs):
            raise KeyError("display_name")

        monkeypatch.setattr(impact_analysis, "related_for_event", _broken)
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "Turning"}, "jdoe", graph.project.id,
        )
        analysis = ImpactAnalysisService.get(event.id)
        assert analysis.analysis_status == "FAILED"
        assert "display_name" in analysis.error_message
        # Workflow selection and propagation still ran.
        assert event.approval_status == "AUTO_APPROVED"
        assert event.propagation_status == "NOT_REQUIRED"

    def test_completed_analysis_is_not_recomputed(self, graph):
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "Turning"}, "jdoe", graph.project.id,
        )
        again = ImpactAnalysisService.retry(event.id)
        assert again.attempt_count == 1
        assert ImpactAnalysis.query.filter_by(change_event_id=event.id).count() == 1

    def test_get_unknown_event(self):
        with pytest.raises(NotFoundError):
            ImpactAnalysisService.get(98765)
