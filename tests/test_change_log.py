"""
Change Event Log unit tests.

Tests cover:
  - changed_fields for CREATE / UPDATE / DELETE
  - per-entity sequence numbering
  - validation of entity / change types and actor
  - the pipeline running on record (analysis, approval status, propagation status)
  - filtering and paging of the ledger
  - restore lock refusing new changes
"""
from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.change import ChangeEvent
from app.services import change_log, project_lock
from app.utils.helpers import utcnow


class TestChangedFields:
    def test_create_lists_all_new_keys(self):
        assert change_log.compute_changed_fields("CREATE", None, {"b": 1, "a": 2}) == ["a", "b"]

    def test_delete_lists_all_old_keys(self):
        assert change_log.compute_changed_fields("DELETE", {"name": "x", "id": 3}, None) == ["id", "name"]

    def test_update_symmetric_difference_and_value_changes(self):
        old = {"name": "Mill", "description": "old", "gone": 1, "same": [1, 2]}
        new = {"name": "Mill", "description": "new", "added": True, "same": [1, 2]}
        assert change_log.compute_changed_fields("UPDATE", old, new) == ["added", "description", "gone"]

    def test_update_compares_nested_values_canonically(self):
        old = {"cfg": {"a": 1, "b": 2}}
        new = {"cfg": {"b": 2, "a": 1}}
        assert change_log.compute_changed_fields("UPDATE", old, new) == []


class TestRecordChange:
    def test_event_fields(self, graph):
        event = change_log.record_change(
            "PROCESS_STEP", graph.s1.id, "UPDATE",
            {"name": "Machining"}, {"name": "CNC machining"},
            actor_id="jdoe", project_id=graph.project.id,
        )
        assert event.id is not None
        assert event.entity_sequence == 1
        assert event.changed_fields == ["name"]
        assert event.change_action == "Updated process step"
        assert event.triggered_by == "jdoe"
        assert "fmea" in event.affected_modules
        assert event.approval_status == "AUTO_APPROVED"
        assert event.impact_analysis.analysis_status == "COMPLETED"
        assert event.propagation_status == "NOT_REQUIRED"

    def test_entity_sequence_is_monotonic_per_entity(self, graph):
        pid = graph.project.id
        first = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                         {"severity_rating": 8}, {"severity_rating": 9}, "a", pid)
        other = change_log.record_change("FAILURE_MODE", graph.m2.id, "UPDATE",
                                         {"severity_rating": 5}, {"severity_rating": 6}, "a", pid)
        second = change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                          {"severity_rating": 9}, {"severity_rating": 7}, "a", pid)
        assert (first.entity_sequence, second.entity_sequence) == (1, 2)
        assert other.entity_sequence == 1

    def test_sequence_collision_is_a_conflict(self, graph, monkeypatch):
        pid, m1_id = graph.project.id, graph.m1.id
        change_log.record_change("FAILURE_MODE", m1_id, "UPDATE",
                                 {"severity_rating": 8}, {"severity_rating": 9}, "a", pid)
        # A second writer that read the same max sequence before the first committed.
        monkeypatch.setattr(change_log, "_next_entity_sequence", lambda entity_type, entity_id: 1)
        with pytest.raises(ConflictError):
            change_log.record_change("FAILURE_MODE", m1_id, "UPDATE",
                                     {"severity_rating": 9}, {"severity_rating": 7}, "b", pid)
        assert ChangeEvent.query.filter_by(entity_type="FAILURE_MODE", entity_id=m1_id).count() == 1

    def test_unknown_entity_type(self, project):
        with pytest.raises(ValidationError):
            change_log.record_change("SUPPLIER", 1, "UPDATE", {}, {"x": 1}, "a", project.id)

    def test_unknown_change_type(self, project):
        with pytest.raises(ValidationError):
            change_log.record_change("FMEA", 1, "MERGE", {}, {"x": 1}, "a", project.id)

    def test_actor_required(self, project):
        with pytest.raises(ValidationError):
            change_log.record_change("FMEA", 1, "UPDATE", {}, {"x": 1}, "", project.id)

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            change_log.record_change("FMEA", 1, "UPDATE", {}, {"x": 1}, "a", 9999)

    def test_refused_while_project_is_being_restored(self, project):
        project_lock._held.add(project.id)
        with pytest.raises(ConflictError):
            change_log.record_change("FMEA", 1, "UPDATE", {}, {"x": 1}, "a", project.id)
        assert ChangeEvent.query.count() == 0

    def test_get_change_event_not_found(self):
        with pytest.raises(NotFoundError):
            change_log.get_change_event(424242)


class TestListChangeEvents:
    @pytest.fixture()
    def events(self, graph):
        pid = graph.project.id
        return [
            change_log.record_change("PROCESS_STEP", graph.s1.id, "UPDATE",
                                     {"name": "Machining"}, {"name": "Turning"}, "a", pid, batch_id="b-1"),
            change_log.record_change("FAILURE_MODE", graph.m1.id, "UPDATE",
                                     {"severity_rating": 8}, {"severity_rating": 9}, "a", pid, batch_id="b-1"),
            change_log.record_change("CONTROL_ITEM", graph.i2.id, "DELETE",
                                     {"id": graph.i2.id, "sequence_number": 2}, None, "b", pid),
        ]

    def test_newest_first(self, graph, events):
        items, total = change_log.list_change_events(graph.project.id)
        assert total == 3
        assert [e.id for e in items] == sorted((e.id for e in events), reverse=True)

    def test_filters(self, graph, events):
        pid = graph.project.id
        items, total = change_log.list_change_events(pid, {"entity_type": "FAILURE_MODE"})
        assert total == 1 and items[0].entity_id == graph.m1.id
        _, total = change_log.list_change_events(pid, {"batch_id": "b-1"})
        assert total == 2
        _, total = change_log.list_change_events(pid, {"change_type": "DELETE"})
        assert total == 1
        _, total = change_log.list_change_events(pid, {"entity_type": "PROCESS_STEP", "entity_id": graph.s1.id})
        assert total == 1

    def test_time_window(self, graph, events):
        pid = graph.project.id
        _, total = change_log.list_change_events(pid, {"since": utcnow() - timedelta(hours=1)})
        assert total == 3
        _, total = change_log.list_change_events(pid, {"until": utcnow() - timedelta(hours=1)})
        assert total == 0

    def test_paging(self, graph, events):
        items, total = change_log.list_change_events(graph.project.id, limit=2, offset=2)
        assert total == 3
        assert len(items) == 1

    def test_invalid_filter_value(self, graph):
        with pytest.raises(ValidationError):
            change_log.list_change_events(graph.project.id, {"impact_level": "SEVERE"})

    def test_ledger_survives_deleted_records(self, graph, events):
        from app.models.control_plan import ControlPlanItem

        item_id = graph.i2.id
        db.session.delete(db.session.get(ControlPlanItem, item_id))
        db.session.commit()
        items, _ = change_log.list_change_events(graph.project.id, {"entity_type": "CONTROL_ITEM"})
        assert items[0].entity_id == item_id
