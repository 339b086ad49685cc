"""
Snapshot Store unit tests.

Tests cover:
  - version numbering and stored totals
  - structural compare (added / removed / modified, rpn delta, risk impact)
  - restore round-trip with pre-restore backup and RESTORE event
  - corrupted snapshots abort the restore without touching live data
  - restore lock
  - snapshot record encode/decode validation
"""
import pytest

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    RestoreFailedError,
    SnapshotCorruptedError,
    ValidationError,
)
from app.models import db
from app.models.change import ChangeEvent
from app.models.control_plan import ControlPlanItem
from app.models.fmea import FailureMode
from app.models.process_flow import ProcessStep, StepConnection
from app.models.project import Project
from app.models.versioning import ProjectVersion
from app.services import project_lock
from app.services.snapshot import SnapshotService, capture_records
from app.services.snapshot_records import decode_subtree, encode_subtree


def _live_state(project_id):
    """Comparable view of the live subtrees: (entity type, id) → scalar values."""
    from app.services.snapshot_records import iter_records, scalar_fields

    state = {}
    for records in capture_records(project_id).values():
        for record, parent in iter_records(records):
            values = {name: getattr(record, name) for name in scalar_fields(type(record))}
            values["parent_id"] = parent.id if parent is not None else None
            state[(record.ENTITY_TYPE, record.id)] = values
    return state


def _edit_graph(graph):
    """Raise m1's severity, drop i2, add a third step."""
    db.session.get(FailureMode, graph.m1.id).severity_rating = 9
    db.session.delete(db.session.get(ControlPlanItem, graph.i2.id))
    step = ProcessStep(process_flow_id=graph.flow.id, step_number=30, name="Packing")
    db.session.add(step)
    db.session.commit()
    return step.id


# ═════════════════════════════════════════════════════════════════════════
# CREATE / HISTORY
# ═════════════════════════════════════════════════════════════════════════

class TestCreateSnapshot:
    def test_numbering_and_totals(self, graph):
        v1 = SnapshotService.create_snapshot(graph.project.id, "Initial release", actor_id="jdoe",
                                             is_baseline=True)
        v2 = SnapshotService.create_snapshot(graph.project.id)
        assert (v1.version_number, v2.version_number) == ("1.0.0", "2.0.0")
        assert v1.is_baseline is True
        assert v2.version_name == "Version 2.0.0"
        assert v1.total_process_steps == 2
        assert v1.total_failure_modes == 2
        assert v1.total_control_items == 2
        assert v1.total_rpn == 96 + 30
        assert v1.high_risk_count == 0
        assert v1.schema_version == 1

    def test_history_newest_first(self, graph):
        for _ in range(3):
            SnapshotService.create_snapshot(graph.project.id)
        history = SnapshotService.get_version_history(graph.project.id, limit=2)
        assert [v.version_number for v in history] == ["3.0.0", "2.0.0"]

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            SnapshotService.create_snapshot(31337)

    def test_unknown_version(self):
        with pytest.raises(NotFoundError):
            SnapshotService.get_version(31337)

    def test_refused_during_restore(self, graph):
        project_lock._held.add(graph.project.id)
        with pytest.raises(ConflictError):
            SnapshotService.create_snapshot(graph.project.id)

    def test_snapshot_is_self_contained(self, graph):
        version = SnapshotService.create_snapshot(graph.project.id)
        fmea = version.fmea_snapshot
        assert fmea["kind"] == "fmea"
        mode = fmea["records"][0]["failure_modes"][0]
        assert mode["failure_mode"] == "Bore oversize"
        assert [c["control_type"] for c in mode["causes"][0]["controls"]] == ["DETECTION", "PREVENTION"]


# ═════════════════════════════════════════════════════════════════════════
# COMPARE
# ═════════════════════════════════════════════════════════════════════════

class TestCompare:
    def test_structural_diff(self, graph):
        m1_id, i2_id = graph.m1.id, graph.i2.id
        v1 = SnapshotService.create_snapshot(graph.project.id)
        new_step_id = _edit_graph(graph)
        v2 = SnapshotService.create_snapshot(graph.project.id)

        result = SnapshotService.compare_versions(v1.id, v2.id)
        changes = result["changes"]
        assert [(c["entity_type"], c["entity_id"]) for c in changes["process_flow"]["added"]] == [
            ("PROCESS_STEP", new_step_id)]
        assert [(c["entity_type"], c["entity_id"]) for c in changes["control_plan"]["removed"]] == [
            ("CONTROL_ITEM", i2_id)]
        modified = changes["fmea"]["modified"]
        assert [(c["entity_type"], c["entity_id"]) for c in modified] == [("FAILURE_MODE", m1_id)]
        assert modified[0]["fields"] == {"severity_rating": {"old": 8, "new": 9}}

        summary = result["summary"]
        assert summary["total_changes"] == 3
        assert summary["rpn_delta"] == 9 * 3 * 4 - 8 * 3 * 4
        assert summary["risk_impact"] == "HIGH"
        assert "QUALITY_MANAGER" in summary["affected_stakeholders"]

    def test_identical_versions(self, graph):
        v1 = SnapshotService.create_snapshot(graph.project.id)
        v2 = SnapshotService.create_snapshot(graph.project.id)
        summary = SnapshotService.compare_versions(v1.id, v2.id)["summary"]
        assert summary["total_changes"] == 0
        assert summary["risk_impact"] == "LOW"
        assert summary["affected_stakeholders"] == []

    def test_versions_of_different_projects(self, graph):
        other = Project(code="QMS-002", name="Other line")
        db.session.add(other)
        db.session.commit()
        a = SnapshotService.create_snapshot(graph.project.id)
        b = SnapshotService.create_snapshot(other.id)
        with pytest.raises(ValidationError):
            SnapshotService.compare_versions(a.id, b.id)


# ═════════════════════════════════════════════════════════════════════════
# RESTORE
# ═════════════════════════════════════════════════════════════════════════

class TestRestore:
    def test_round_trip(self, graph):
        pid, m1_id = graph.project.id, graph.m1.id
        before = _live_state(pid)
        v1 = SnapshotService.create_snapshot(pid, actor_id="jdoe")
        v1_id = v1.id
        new_step_id = _edit_graph(graph)
        SnapshotService.create_snapshot(pid)

        result = SnapshotService.restore_to_version(v1_id, actor_id="qm")

        db.session.expire_all()
        assert _live_state(pid) == before
        assert db.session.get(ProcessStep, new_step_id) is None
        assert db.session.get(FailureMode, m1_id).severity_rating == 8
        assert StepConnection.query.count() == 1

        backup = result["backup"]
        assert backup.version_number == "3.0.0"
        assert backup.restored_from_version_id == v1_id
        assert backup.total_process_steps == 3
        assert ProjectVersion.query.filter_by(project_id=pid).count() == 3

        event = result["change_event"]
        assert (event.entity_type, event.entity_id, event.change_type) == ("PROJECT", pid, "RESTORE")
        assert event.restored_version_id == v1_id
        assert event.impact_level == "HIGH"
        assert event.new_values["version_number"] == "1.0.0"
        assert event.impact_analysis.risk_level == "HIGH"

    def test_restore_to_backup_undoes_restore(self, graph):
        pid = graph.project.id
        v1 = SnapshotService.create_snapshot(pid)
        v1_id = v1.id
        new_step_id = _edit_graph(graph)
        edited = _live_state(pid)

        backup_id = SnapshotService.restore_to_version(v1_id)["backup"].id
        SnapshotService.restore_to_version(backup_id)
        db.session.expire_all()
        assert _live_state(pid) == edited
        assert db.session.get(ProcessStep, new_step_id) is not None

    def test_source_version_unchanged(self, graph):
        v1 = SnapshotService.create_snapshot(graph.project.id)
        blob = dict(v1.fmea_snapshot)
        _edit_graph(graph)
        SnapshotService.restore_to_version(v1.id)
        assert db.session.get(ProjectVersion, v1.id).fmea_snapshot == blob

    def test_corrupted_snapshot_aborts(self, graph):
        pid = graph.project.id
        v1 = SnapshotService.create_snapshot(pid)
        v1_id = v1.id
        v1.fmea_snapshot = {"schema_version": 99, "kind": "fmea", "records": []}
        db.session.commit()
        before = _live_state(pid)

        with pytest.raises(RestoreFailedError) as exc:
            SnapshotService.restore_to_version(v1_id)
        assert exc.value.fatal is True

        db.session.expire_all()
        assert _live_state(pid) == before
        assert ProjectVersion.query.filter_by(project_id=pid).count() == 1
        assert ChangeEvent.query.filter_by(change_type="RESTORE").count() == 0
        assert not project_lock.is_locked(pid)

    def test_concurrent_restore_refused(self, graph):
        v1 = SnapshotService.create_snapshot(graph.project.id)
        project_lock._held.add(graph.project.id)
        with pytest.raises(ConflictError):
            SnapshotService.restore_to_version(v1.id)

    def test_restore_empty_version_clears_live_data(self, graph):
        other = Project(code="QMS-003", name="Empty line")
        db.session.add(other)
        db.session.commit()
        empty = SnapshotService.create_snapshot(other.id)
        assert empty.total_process_steps == 0

        v_empty = SnapshotService.create_snapshot(graph.project.id)
        # Point the graph project at an empty state by restoring a matching empty copy.
        v_empty.process_flow_snapshot = empty.process_flow_snapshot
        v_empty.fmea_snapshot = empty.fmea_snapshot
        v_empty.control_plan_snapshot = empty.control_plan_snapshot
        db.session.commit()

        SnapshotService.restore_to_version(v_empty.id)
        db.session.expire_all()
        assert _live_state(graph.project.id) == {}
        assert ControlPlanItem.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════
# RECORD CODEC
# ═════════════════════════════════════════════════════════════════════════

class TestRecordCodec:
    def test_decode_checks_kind(self, graph):
        blob = encode_subtree("fmea", capture_records(graph.project.id)["fmea"])
        with pytest.raises(SnapshotCorruptedError):
            decode_subtree(blob, "control_plan", version_id=1)

    def test_decode_checks_required_fields(self):
        blob = {"schema_version": 1, "kind": "process_flow", "records": [{"id": 1}]}
        with pytest.raises(SnapshotCorruptedError) as exc:
            decode_subtree(blob, "process_flow", version_id=5)
        assert exc.value.version_id == 5
        assert "name" in exc.value.reason

    def test_decode_rebuilds_nested_records(self, graph):
        records = capture_records(graph.project.id)["process_flow"]
        decoded = decode_subtree(encode_subtree("process_flow", records), "process_flow")
        assert decoded == records
