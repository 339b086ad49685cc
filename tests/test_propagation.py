"""
Propagation Rule Engine unit tests.

Tests cover:
  - default rule seeding (idempotent)
  - VALIDATE / UPDATE / CREATE / NOTIFY dispatch
  - field pattern matching
  - rule-chain loop guard and hop ceiling
  - gated (requires_approval) actions: queue, release, cancel
  - all-or-nothing propagation on failure
  - rule validation and administration
  - control plan generation from FMEA controls
"""
import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.change import ChangeEvent, PropagationRule, QueuedRuleAction, ReviewFlag
from app.models.control_plan import ControlPlanItem
from app.models.fmea import FailureControl, FailureMode
from app.models.notification import ChangeNotification
from app.models.process_flow import ProcessStep
from app.services import change_log
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.control_plan_generation import generate_control_plan_items
from app.services.propagation import DEFAULT_RULES, PropagationEngine, seed_default_rules


def _rule(**overrides):
    data = {
        "rule_name": "Test rule",
        "source_entity_type": "FAILURE_MODE",
        "source_change_type": "UPDATE",
        "target_entity_type": "FAILURE_MODE",
        "target_action": "NOTIFY",
    }
    data.update(overrides)
    return PropagationEngine.create_rule(data, actor_id="admin")


# ═════════════════════════════════════════════════════════════════════════
# DEFAULT RULES
# ═════════════════════════════════════════════════════════════════════════

class TestDefaultRules:
    def test_seed_is_idempotent(self):
        assert seed_default_rules() == len(DEFAULT_RULES)
        assert seed_default_rules() == 0
        assert PropagationRule.query.count() == len(DEFAULT_RULES)

    def test_control_change_syncs_control_plan_before_return(self, graph):
        seed_default_rules()
        event = change_log.record_change(
            "FAILURE_CONTROL", graph.k1.id, "UPDATE",
            {"control_description": "Air gauge 100%"}, {"control_description": "Laser gauge 100%"},
            "jdoe", graph.project.id,
        )
        assert event.propagation_status == "COMPLETED"

        item = db.session.get(ControlPlanItem, graph.i1.id)
        assert item.control_method == "Laser gauge 100%"
        assert item.verification_status == "REQUIRES_UPDATE"
        # Unmapped source field leaves the target untouched.
        assert item.control_type == "DETECTION"

        chained = ChangeEvent.query.filter_by(parent_event_id=event.id).one()
        assert (chained.entity_type, chained.entity_id) == ("CONTROL_ITEM", graph.i1.id)
        assert chained.new_values == {"control_method": "Laser gauge 100%",
                                      "verification_status": "REQUIRES_UPDATE"}
        assert chained.old_values["verification_status"] == "VERIFIED"
        assert chained.rule_chain == [chained.origin_rule_id]
        assert chained.hop_count == 1
        assert chained.batch_id == f"evt-{event.id}"

    def test_step_delete_flags_failure_modes(self, graph):
        seed_default_rules()
        old = {"id": graph.s1.id, "process_flow_id": graph.flow.id, "name": "Machining"}
        event = change_log.record_change("PROCESS_STEP", graph.s1.id, "DELETE", old, None,
                                         "jdoe", graph.project.id)
        flags = ReviewFlag.query.filter_by(change_event_id=event.id).all()
        assert [(f.entity_type, f.entity_id) for f in flags] == [("FAILURE_MODE", graph.m1.id)]
        assert flags[0].status == "OPEN"
        assert flags[0].display_name == "Bore oversize"

    def test_step_delete_flags_failure_modes_when_recorded_after_delete(self, graph):
        seed_default_rules()
        s1_id, m1_id = graph.s1.id, graph.m1.id
        old = {"id": s1_id, "process_flow_id": graph.flow.id, "name": "Machining"}
        db.session.delete(db.session.get(ProcessStep, s1_id))

        event = change_log.record_change("PROCESS_STEP", s1_id, "DELETE", old, None,
                                         "jdoe", graph.project.id)
        flags = ReviewFlag.query.filter_by(change_event_id=event.id).all()
        assert [(f.entity_type, f.entity_id) for f in flags] == [("FAILURE_MODE", m1_id)]

    def test_step_update_pattern_match(self, graph):
        seed_default_rules()
        pid = graph.project.id
        hit = change_log.record_change("PROCESS_STEP", graph.s1.id, "UPDATE",
                                       {"quality_requirements": "Bore 42.00 ±0.02"},
                                       {"quality_requirements": "Bore 42.00 ±0.01"}, "jdoe", pid)
        miss = change_log.record_change("PROCESS_STEP", graph.s1.id, "UPDATE",
                                        {"position_x": 0.0}, {"position_x": 120.0}, "jdoe", pid)
        assert ReviewFlag.query.filter_by(change_event_id=hit.id).count() == 1
        assert ReviewFlag.query.filter_by(change_event_id=miss.id).count() == 0
        assert miss.propagation_status == "NOT_REQUIRED"

    def test_severity_change_notifies(self, graph):
        seed_default_rules()
        event = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                         {"severity_rating": 8}, {"severity_rating": 9},
                                         "jdoe", graph.project.id)
        note = ChangeNotification.query.filter_by(change_event_id=event.id,
                                                  notification_type="RULE_TRIGGERED").one()
        assert note.priority == "HIGH"
        assert note.recipient_criteria["roles"] == ["QUALITY_ENGINEER", "QUALITY_MANAGER"]

    def test_control_create_generates_item(self, graph):
        seed_default_rules()
        control = FailureControl(failure_cause_id=graph.c2.id, process_step_id=graph.s2.id,
                                 control_description="Go/no-go gauge", control_type="DETECTION",
                                 detection_rating=2)
        db.session.add(control)
        db.session.commit()
        event = change_log.record_change("FAILURE_CONTROL", control.id, "CREATE", None,
                                         control.to_dict(), "jdoe", graph.project.id)

        item = ControlPlanItem.query.filter_by(linked_failure_control_id=control.id).one()
        assert item.control_plan_id == graph.plan.id
        assert item.sequence_number == 3
        assert item.control_method == "Go/no-go gauge"
        assert item.linked_failure_mode_id == graph.m2.id
        chained = ChangeEvent.query.filter_by(parent_event_id=event.id).one()
        assert (chained.change_type, chained.entity_id) == ("CREATE", item.id)


# ═════════════════════════════════════════════════════════════════════════
# LOOP GUARDS
# ═════════════════════════════════════════════════════════════════════════

class TestLoopGuards:
    @pytest.fixture()
    def cycle(self, graph):
        mode_to_step = _rule(
            rule_name="Mode changed: touch step",
            source_entity_type="FAILURE_MODE", target_entity_type="PROCESS_STEP", target_action="UPDATE",
            target_field_mappings=[{"target": "description", "value": "Re-check after FMEA change"}],
            priority=1,
        )
        step_to_mode = _rule(
            rule_name="Step changed: touch mode",
            source_entity_type="PROCESS_STEP", target_entity_type="FAILURE_MODE", target_action="UPDATE",
            target_field_mappings=[{"target": "item_function", "value": "Bore diameter (reviewed)"}],
            priority=2,
        )
        return mode_to_step, step_to_mode

    def test_cycle_terminates(self, graph, cycle):
        mode_to_step, step_to_mode = cycle
        root = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                        {"severity_rating": 8}, {"severity_rating": 7},
                                        "jdoe", graph.project.id)
        assert root.propagation_status == "COMPLETED"

        events = ChangeEvent.query.order_by(ChangeEvent.id).all()
        assert len(events) == 3
        step_event, mode_event = events[1], events[2]
        assert step_event.entity_type == "PROCESS_STEP"
        assert step_event.rule_chain == [mode_to_step.id]
        assert mode_event.entity_type == "FAILURE_MODE"
        assert mode_event.rule_chain == [mode_to_step.id, step_to_mode.id]
        assert mode_event.hop_count == 2

        assert db.session.get(ProcessStep, graph.s1.id).description == "Re-check after FMEA change"
        assert db.session.get(FailureMode, graph.m1.id).item_function == "Bore diameter (reviewed)"

    def test_hop_ceiling(self, graph, cycle, app, monkeypatch):
        monkeypatch.setitem(app.config, "PROPAGATION_MAX_HOPS", 1)
        change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                 {"severity_rating": 8}, {"severity_rating": 7},
                                 "jdoe", graph.project.id)
        assert ChangeEvent.query.count() == 2
        assert db.session.get(FailureMode, graph.m1.id).item_function == "Bore diameter"


# ═════════════════════════════════════════════════════════════════════════
# GATED ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestGatedActions:
    @pytest.fixture()
    def gated(self, graph):
        return _rule(rule_name="Severity change needs sign-off", requires_approval=True,
                     action_config={"notification_type": "RULE_TRIGGERED", "recipient_roles": ["QE"]})

    def _record(self, graph):
        return change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                        {"severity_rating": 8}, {"severity_rating": 9},
                                        "jdoe", graph.project.id)

    def _rule_notes(self, event_id):
        return ChangeNotification.query.filter_by(change_event_id=event_id,
                                                  notification_type="RULE_TRIGGERED").count()

    def test_queued_until_approved(self, graph, gated):
        event = self._record(graph)
        assert event.approval_status == "PENDING"
        assert event.propagation_status == "PENDING"
        qa = QueuedRuleAction.query.filter_by(change_event_id=event.id).one()
        assert qa.status == "QUEUED"
        assert self._rule_notes(event.id) == 0

        ApprovalWorkflowService.approve_change_event(event.id, "qm", "ok")
        db.session.expire_all()
        assert db.session.get(QueuedRuleAction, qa.id).status == "RELEASED"
        assert db.session.get(ChangeEvent, event.id).propagation_status == "COMPLETED"
        assert self._rule_notes(event.id) == 1

    def test_cancelled_on_rejection(self, graph, gated):
        event = self._record(graph)
        ApprovalWorkflowService.reject_change_event(event.id, "qm", "not justified")
        db.session.expire_all()
        qa = QueuedRuleAction.query.filter_by(change_event_id=event.id).one()
        assert qa.status == "CANCELLED"
        assert db.session.get(ChangeEvent, event.id).approval_status == "REJECTED"
        assert self._rule_notes(event.id) == 0

    def test_deactivated_rule_is_not_released(self, graph, gated):
        event = self._record(graph)
        PropagationEngine.delete_rule(gated.id)
        ApprovalWorkflowService.approve_change_event(event.id, "qm")
        db.session.expire_all()
        assert QueuedRuleAction.query.filter_by(change_event_id=event.id).one().status == "CANCELLED"
        assert self._rule_notes(event.id) == 0


# ═════════════════════════════════════════════════════════════════════════
# FAILURE HANDLING
# ═════════════════════════════════════════════════════════════════════════

class TestPropagationFailure:
    def test_failure_rolls_back_every_action(self, graph, monkeypatch):
        _rule(rule_name="Flag modes", source_entity_type="PROCESS_STEP",
              target_entity_type="FAILURE_MODE", target_action="VALIDATE", priority=1)
        _rule(rule_name="Notify", source_entity_type="PROCESS_STEP", priority=2)

        def _broken(*args, **kwargs):
            raise RuntimeError("outbox unavailable")

        monkeypatch.setattr(PropagationEngine, "_apply_notify", staticmethod(_broken))
        event = change_log.record_change("PROCESS_STEP", graph.s1.id, "UPDATE",
                                         {"name": "Machining"}, {"name": "Turning"},
                                         "jdoe", graph.project.id)

        assert event.propagation_status == "FAILED"
        assert "outbox unavailable" in event.propagation_error
        assert ReviewFlag.query.count() == 0
        assert ChangeNotification.query.filter_by(change_event_id=event.id,
                                                  notification_type="PROPAGATION_FAILED").count() == 1
        # The originating change stays in the ledger.
        assert db.session.get(ChangeEvent, event.id).impact_analysis.analysis_status == "COMPLETED"


# ═════════════════════════════════════════════════════════════════════════
# RULE ADMINISTRATION
# ═════════════════════════════════════════════════════════════════════════

class TestRuleValidation:
    def test_missing_fields(self):
        with pytest.raises(ValidationError) as exc:
            PropagationEngine.create_rule({"rule_name": "x"})
        assert "target_action" in exc.value.details

    def test_validate_target_must_be_linked(self):
        with pytest.raises(ValidationError):
            _rule(target_entity_type="CONTROL_PLAN", target_action="VALIDATE")

    def test_invalid_pattern(self):
        with pytest.raises(ValidationError):
            _rule(source_field_patterns=["severity_(rating"])

    def test_mapping_needs_source_or_value(self):
        with pytest.raises(ValidationError):
            _rule(target_entity_type="CONTROL_ITEM", source_entity_type="FAILURE_CONTROL",
                  target_action="UPDATE",
                  target_field_mappings=[{"target": "control_method", "source": "a", "value": "b"}])

    def test_mapping_target_must_be_updatable(self):
        with pytest.raises(ValidationError):
            _rule(target_entity_type="CONTROL_ITEM", source_entity_type="FAILURE_CONTROL",
                  target_action="UPDATE", target_field_mappings=[{"target": "id", "source": "id"}])

    def test_create_only_generates_control_items(self):
        with pytest.raises(ValidationError):
            _rule(target_entity_type="FAILURE_MODE", target_action="CREATE")

    def test_unknown_notification_type(self):
        with pytest.raises(ValidationError):
            _rule(action_config={"notification_type": "SMS_BLAST"})

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            _rule(project_id=4040)


class TestRuleAdministration:
    def test_list_scopes_and_priority_order(self, project):
        global_rule = _rule(rule_name="Global", priority=50)
        scoped = _rule(rule_name="Scoped", priority=10, project_id=project.id)
        rules = PropagationEngine.list_rules(project.id)
        assert [r.id for r in rules] == [scoped.id, global_rule.id]

    def test_project_rule_does_not_leak(self, project):
        from app.models.project import Project

        other = Project(code="QMS-002", name="Other line")
        db.session.add(other)
        db.session.commit()
        _rule(rule_name="Scoped", project_id=project.id)
        assert PropagationEngine.list_rules(other.id) == []

    def test_soft_delete(self):
        rule = _rule()
        PropagationEngine.delete_rule(rule.id)
        assert PropagationEngine.list_rules() == []
        assert [r.id for r in PropagationEngine.list_rules(include_inactive=True)] == [rule.id]

    def test_update_rejects_invalid_change(self):
        rule = _rule()
        with pytest.raises(ValidationError):
            PropagationEngine.update_rule(rule.id, {"target_action": "EXPLODE"})
        assert PropagationEngine.get_rule(rule.id).target_action == "NOTIFY"

    def test_resolve_review_flag_once(self, graph):
        seed_default_rules()
        old = {"id": graph.s1.id, "process_flow_id": graph.flow.id, "name": "Machining"}
        change_log.record_change("PROCESS_STEP", graph.s1.id, "DELETE", old, None, "jdoe", graph.project.id)
        flag = PropagationEngine.list_review_flags(graph.project.id, "OPEN")[0]

        resolved = PropagationEngine.resolve_review_flag(flag.id, "qe")
        assert resolved.status == "RESOLVED"
        assert resolved.resolved_by == "qe"
        with pytest.raises(ConflictError):
            PropagationEngine.resolve_review_flag(flag.id, "qe")
        assert PropagationEngine.list_review_flags(graph.project.id, "OPEN") == []


# ═════════════════════════════════════════════════════════════════════════
# CONTROL PLAN GENERATION
# ═════════════════════════════════════════════════════════════════════════

class TestControlPlanGeneration:
    def test_generates_items_for_unlinked_controls(self, graph):
        result = generate_control_plan_items(graph.project.id, actor_id="jdoe")
        assert len(result.items) == 1
        item = result.items[0]
        assert item.linked_failure_control_id == graph.k0.id
        assert item.process_step_id == graph.s1.id
        assert item.operation_description == "Step 10: Machining"
        assert item.sequence_number == 3
        assert result.links[0].relationship == "PREVENTS"

        events = ChangeEvent.query.filter_by(batch_id=result.batch_id).all()
        assert [(e.change_type, e.entity_id) for e in events] == [("CREATE", item.id)]

    def test_second_run_creates_nothing(self, graph):
        generate_control_plan_items(graph.project.id)
        again = generate_control_plan_items(graph.project.id)
        assert again.items == []
        assert again.batch_id is None

    def test_plan_from_other_project(self, graph):
        from app.models.project import Project

        other = Project(code="QMS-002", name="Other line")
        db.session.add(other)
        db.session.commit()
        with pytest.raises(ValidationError):
            generate_control_plan_items(other.id, control_plan_id=graph.plan.id)

    def test_project_without_plan(self, project):
        with pytest.raises(ValidationError):
            generate_control_plan_items(project.id)
