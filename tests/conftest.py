"""
Shared pytest fixtures for the QMS change management test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project entity
    - graph: Project with one process flow, FMEA and control plan wired together
"""

from types import SimpleNamespace

import pytest

from app import create_app
from app.models import db as _db
from app.services import project_lock


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        # Restore locks are process-wide; never leak one into the next test.
        project_lock._held.clear()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    from app.models.project import Project

    proj = Project(code="QMS-001", name="Brake Caliper Line", status="active")
    _db.session.add(proj)
    _db.session.commit()
    return proj


@pytest.fixture()
def graph(project):
    """Seed one connected engineering graph.

    process flow:  s1 "Machining" → s2 "Final inspection"
    fmea:          m1 (S=8) on s1, cause c1 (O=3) with detection k1 (D=4) and prevention k0
                   m2 (S=5) on s2, cause c2 (O=2) with detection k2 (D=3)
    control plan:  i1 → s1 / m1 / k1 (VERIFIED), i2 → s2 / m2 / k2 (PENDING)

    RPNs: m1 = 96 (MEDIUM), m2 = 30 (LOW). k0 has no control plan item.
    """
    from app.models.control_plan import ControlPlan, ControlPlanItem
    from app.models.fmea import FailureCause, FailureControl, FailureEffect, FailureMode, Fmea
    from app.models.process_flow import ProcessFlow, ProcessStep, StepConnection

    flow = ProcessFlow(project_id=project.id, name="Caliper machining")
    _db.session.add(flow)
    _db.session.flush()
    s1 = ProcessStep(process_flow_id=flow.id, step_number=10, name="Machining",
                     quality_requirements="Bore 42.00 ±0.02")
    s2 = ProcessStep(process_flow_id=flow.id, step_number=20, name="Final inspection",
                     step_type="INSPECTION")
    _db.session.add_all([s1, s2])
    _db.session.flush()
    conn = StepConnection(process_flow_id=flow.id, source_step_id=s1.id, target_step_id=s2.id)
    _db.session.add(conn)

    fmea = Fmea(project_id=project.id, fmea_number="PFMEA-001", title="Caliper PFMEA", rpn_threshold=100)
    _db.session.add(fmea)
    _db.session.flush()
    m1 = FailureMode(fmea_id=fmea.id, primary_process_step_id=s1.id, item_function="Bore diameter",
                     failure_mode="Bore oversize", severity_rating=8)
    m2 = FailureMode(fmea_id=fmea.id, primary_process_step_id=s2.id, item_function="Visual check",
                     failure_mode="Burr missed", severity_rating=5)
    _db.session.add_all([m1, m2])
    _db.session.flush()
    e1 = FailureEffect(failure_mode_id=m1.id, effect_description="Piston seal leak")
    c1 = FailureCause(failure_mode_id=m1.id, cause_description="Tool wear", occurrence_rating=3)
    c2 = FailureCause(failure_mode_id=m2.id, cause_description="Poor lighting", occurrence_rating=2)
    _db.session.add_all([e1, c1, c2])
    _db.session.flush()
    k1 = FailureControl(failure_cause_id=c1.id, process_step_id=s1.id, control_description="Air gauge 100%",
                        control_type="DETECTION", detection_rating=4)
    k0 = FailureControl(failure_cause_id=c1.id, process_step_id=s1.id, control_description="Tool life counter",
                        control_type="PREVENTION", detection_rating=2)
    k2 = FailureControl(failure_cause_id=c2.id, process_step_id=s2.id, control_description="Visual aid board",
                        control_type="DETECTION", detection_rating=3)
    _db.session.add_all([k1, k0, k2])
    _db.session.flush()

    plan = ControlPlan(project_id=project.id, fmea_id=fmea.id, control_plan_number="CP-001",
                       title="Caliper control plan")
    _db.session.add(plan)
    _db.session.flush()
    i1 = ControlPlanItem(control_plan_id=plan.id, sequence_number=1, process_step_id=s1.id,
                         operation_description="Machining", control_method="Air gauge 100%",
                         control_type="DETECTION", verification_status="VERIFIED",
                         linked_failure_mode_id=m1.id, linked_failure_cause_id=c1.id,
                         linked_failure_control_id=k1.id)
    i2 = ControlPlanItem(control_plan_id=plan.id, sequence_number=2, process_step_id=s2.id,
                         operation_description="Final inspection", control_method="Visual aid board",
                         control_type="DETECTION", verification_status="PENDING",
                         linked_failure_mode_id=m2.id, linked_failure_cause_id=c2.id,
                         linked_failure_control_id=k2.id)
    _db.session.add_all([i1, i2])
    _db.session.commit()

    return SimpleNamespace(
        project=project, flow=flow, s1=s1, s2=s2, connection=conn,
        fmea=fmea, m1=m1, m2=m2, e1=e1, c1=c1, c2=c2, k0=k0, k1=k1, k2=k2,
        plan=plan, i1=i1, i2=i2,
    )
