"""
SnapshotService: versioned project snapshots.

Captures a project's process-flow, FMEA and control-plan subtrees as an
immutable ProjectVersion, diffs two versions, and restores a version over
the live data.

Restore runs under the project's exclusive lock and in one transaction:

    1. decode the source blobs (corrupt/unknown schema → fatal RestoreFailedError)
    2. save the live state as a pre-restore backup version
    3. delete the live subtrees, re-insert the stored ones with their ids
    4. record a RESTORE ChangeEvent and commit once

Any failure rolls everything back; the source version is never touched.
"""

import logging

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    RestoreFailedError,
    SnapshotCorruptedError,
    ValidationError,
)
from app.models import db
from app.models.change import ChangeEvent
from app.models.control_plan import ControlPlan, ControlPlanItem
from app.models.fmea import FailureCause, FailureControl, FailureEffect, FailureMode, Fmea
from app.models.process_flow import ProcessFlow, ProcessStep, StepConnection
from app.models.project import Project
from app.models.versioning import ProjectVersion
from app.services.project_lock import ensure_unlocked, exclusive_project_lock
from app.services.rpn import HIGH_RISK_LEVELS, failure_mode_rpn, rpn_bucket
from app.services.snapshot_records import (
    SCHEMA_VERSION,
    SUBTREE_ROOTS,
    decode_subtree,
    diff_subtrees,
    encode_subtree,
    iter_records,
    records_from_models,
    scalar_fields,
)

logger = logging.getLogger(__name__)

SUBTREE_MODELS = {
    "process_flow": ProcessFlow,
    "fmea": Fmea,
    "control_plan": ControlPlan,
}

# Insert order per subtree, parents first.
RESTORE_ORDER = {
    "process_flow": ("PROCESS_FLOW", "PROCESS_STEP", "STEP_CONNECTION"),
    "fmea": ("FMEA", "FAILURE_MODE", "FAILURE_EFFECT", "FAILURE_CAUSE", "FAILURE_CONTROL"),
    "control_plan": ("CONTROL_PLAN", "CONTROL_ITEM"),
}

_MODELS = {
    "PROCESS_FLOW": ProcessFlow,
    "PROCESS_STEP": ProcessStep,
    "STEP_CONNECTION": StepConnection,
    "FMEA": Fmea,
    "FAILURE_MODE": FailureMode,
    "FAILURE_EFFECT": FailureEffect,
    "FAILURE_CAUSE": FailureCause,
    "FAILURE_CONTROL": FailureControl,
    "CONTROL_PLAN": ControlPlan,
    "CONTROL_ITEM": ControlPlanItem,
}

_PARENT_KEYS = {
    "PROCESS_STEP": "process_flow_id",
    "STEP_CONNECTION": "process_flow_id",
    "FAILURE_MODE": "fmea_id",
    "FAILURE_EFFECT": "failure_mode_id",
    "FAILURE_CAUSE": "failure_mode_id",
    "FAILURE_CONTROL": "failure_cause_id",
    "CONTROL_ITEM": "control_plan_id",
}

_SUBTREE_STAKEHOLDERS = {
    "process_flow": ["PROCESS_ENGINEER"],
    "fmea": ["QUALITY_ENGINEER"],
    "control_plan": ["QUALITY_ENGINEER", "PRODUCTION_SUPERVISOR"],
}

_RATING_FIELDS = {"severity_rating", "occurrence_rating", "detection_rating", "control_type"}


def _blob_column(kind: str) -> str:
    return f"{kind}_snapshot"


def capture_records(project_id: int) -> dict:
    """Live subtrees of a project as snapshot records, keyed by subtree kind."""
    return {
        kind: records_from_models(
            SUBTREE_ROOTS[kind],
            model.query.filter_by(project_id=project_id).order_by(model.id).all(),
        )
        for kind, model in SUBTREE_MODELS.items()
    }


def summarize(records: dict) -> dict:
    """Totals stored on a ProjectVersion."""
    steps = sum(len(flow.steps) for flow in records["process_flow"])
    modes = [m for fmea in records["fmea"] for m in fmea.failure_modes]
    items = sum(len(plan.items) for plan in records["control_plan"])
    buckets = current_app.config["RPN_BUCKETS"]
    total_rpn = 0
    high_risk = 0
    for mode in modes:
        pairing = failure_mode_rpn(mode)
        if pairing is None:
            continue
        total_rpn += pairing.rpn
        if rpn_bucket(pairing.rpn, buckets) in HIGH_RISK_LEVELS:
            high_risk += 1
    return {
        "total_process_steps": steps,
        "total_failure_modes": len(modes),
        "total_control_items": items,
        "total_rpn": total_rpn,
        "high_risk_count": high_risk,
    }


class SnapshotService:
    """Creates, lists, compares and restores project versions."""

    # ── Capture ───────────────────────────────────────────────────────

    @staticmethod
    def _build_version(project_id, *, name, description, actor_id, is_baseline=False,
                       restored_from_version_id=None):
        """Add a ProjectVersion for the live state and flush; caller commits or rolls back."""
        records = capture_records(project_id)
        current_major = (
            db.session.query(func.max(ProjectVersion.major_version))
            .filter(ProjectVersion.project_id == project_id)
            .scalar()
        ) or 0
        major = current_major + 1
        version = ProjectVersion(
            project_id=project_id,
            version_number=f"{major}.0.0",
            major_version=major,
            minor_version=0,
            patch_version=0,
            version_name=name or f"Version {major}.0.0",
            description=description,
            is_baseline=is_baseline,
            schema_version=SCHEMA_VERSION,
            restored_from_version_id=restored_from_version_id,
            created_by=actor_id,
            **{_blob_column(kind): encode_subtree(kind, recs) for kind, recs in records.items()},
            **summarize(records),
        )
        db.session.add(version)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError("ProjectVersion", "version_number", version.version_number,
                                message=f"Version {version.version_number} already exists "
                                        f"for project {project_id}") from exc
        return version

    @staticmethod
    def create_snapshot(project_id, name=None, description=None, actor_id="system", is_baseline=False):
        """
        Capture the project's current subtrees as the next major version.

        Returns the committed ProjectVersion.
        """
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        ensure_unlocked(project_id)
        try:
            version = SnapshotService._build_version(
                project_id, name=name, description=description,
                actor_id=actor_id, is_baseline=is_baseline,
            )
        except ConflictError:
            db.session.rollback()
            raise
        db.session.commit()
        logger.info("Created version %s for project %s", version.version_number, project_id,
                    extra={"project_id": project_id, "version_id": version.id})
        return version

    # ── Query ─────────────────────────────────────────────────────────

    @staticmethod
    def get_version(version_id):
        version = db.session.get(ProjectVersion, version_id)
        if version is None:
            raise NotFoundError("ProjectVersion", version_id)
        return version

    @staticmethod
    def get_version_history(project_id, limit=None):
        """Versions of a project, newest first."""
        if db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id)
        limit = limit or current_app.config["VERSION_HISTORY_DEFAULT_LIMIT"]
        return (
            ProjectVersion.query
            .filter_by(project_id=project_id)
            .order_by(ProjectVersion.major_version.desc(), ProjectVersion.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def decode_version(version):
        return {
            kind: decode_subtree(getattr(version, _blob_column(kind)), kind, version_id=version.id)
            for kind in SUBTREE_ROOTS
        }

    # ── Compare ───────────────────────────────────────────────────────

    @staticmethod
    def compare_versions(version_a_id, version_b_id):
        """Structural diff from version A to version B. Read-only."""
        a = SnapshotService.get_version(version_a_id)
        b = SnapshotService.get_version(version_b_id)
        if a.project_id != b.project_id:
            raise ValidationError("Versions belong to different projects",
                                  details={"version_a": a.project_id, "version_b": b.project_id})

        old = SnapshotService.decode_version(a)
        new = SnapshotService.decode_version(b)
        diffs = {kind: diff_subtrees(kind, old[kind], new[kind]) for kind in SUBTREE_ROOTS}

        fmea = diffs["fmea"]
        rating_changed = any(_RATING_FIELDS & set(c.fields) for c in fmea.modified)
        if fmea.removed or rating_changed:
            risk_impact = "HIGH"
        elif fmea.total or diffs["control_plan"].total:
            risk_impact = "MEDIUM"
        else:
            risk_impact = "LOW"

        stakeholders = set()
        for kind, diff in diffs.items():
            if diff.total:
                stakeholders.update(_SUBTREE_STAKEHOLDERS[kind])
        if risk_impact == "HIGH":
            stakeholders.add("QUALITY_MANAGER")

        return {
            "version_a": a.to_dict(),
            "version_b": b.to_dict(),
            "changes": {kind: diff.to_dict() for kind, diff in diffs.items()},
            "summary": {
                "total_changes": sum(d.total for d in diffs.values()),
                "rpn_delta": (b.total_rpn or 0) - (a.total_rpn or 0),
                "risk_impact": risk_impact,
                "affected_stakeholders": sorted(stakeholders),
            },
        }

    # ── Restore ───────────────────────────────────────────────────────

    @staticmethod
    def _delete_live(project_id):
        """Delete the live subtrees; relationship cascades remove each root's children."""
        for kind in reversed(list(SUBTREE_MODELS)):
            roots = SUBTREE_MODELS[kind].query.filter_by(project_id=project_id).all()
            if kind == "process_flow":
                # Connections reference steps, which the flow cascade does not order against.
                for flow in roots:
                    for connection in flow.connections:
                        db.session.delete(connection)
                db.session.flush()
                for flow in roots:
                    db.session.expire(flow, ["connections"])
            for root in roots:
                db.session.delete(root)
            db.session.flush()

    @staticmethod
    def _insert_records(project_id, records):
        for kind in SUBTREE_ROOTS:
            by_type = {entity_type: [] for entity_type in RESTORE_ORDER[kind]}
            for record, parent in iter_records(records[kind]):
                values = {name: getattr(record, name) for name in scalar_fields(type(record))}
                if parent is None:
                    values["project_id"] = project_id
                else:
                    values[_PARENT_KEYS[record.ENTITY_TYPE]] = parent.id
                by_type[record.ENTITY_TYPE].append(_MODELS[record.ENTITY_TYPE](**values))
            for entity_type in RESTORE_ORDER[kind]:
                db.session.add_all(by_type[entity_type])
                db.session.flush()

    @staticmethod
    def restore_to_version(version_id, actor_id="system"):
        """
        Replace the project's live subtrees with a stored version.

        Returns dict with the source version, the pre-restore backup and
        the RESTORE ChangeEvent. Raises RestoreFailedError after rollback.
        """
        from app.services.change_log import append_event
        from app.services.impact_analysis import ImpactAnalysisService

        source = SnapshotService.get_version(version_id)
        project_id = source.project_id
        source_number = source.version_number

        try:
            with exclusive_project_lock(project_id):
                records = SnapshotService.decode_version(source)
                backup = SnapshotService._build_version(
                    project_id,
                    name=f"Pre-restore backup (before restoring {source_number})",
                    description=f"Automatic backup taken before restoring version {source_number}",
                    actor_id=actor_id,
                    restored_from_version_id=source.id,
                )
                backup_id = backup.id
                SnapshotService._delete_live(project_id)
                SnapshotService._insert_records(project_id, records)
                event = append_event(
                    entity_type="PROJECT",
                    entity_id=project_id,
                    change_type="RESTORE",
                    old_values={"version_id": backup_id, "version_number": backup.version_number},
                    new_values={"version_id": version_id, "version_number": source_number},
                    actor_id=actor_id,
                    project_id=project_id,
                    impact_level="HIGH",
                    restored_version_id=version_id,
                )
                event_id = event.id
                db.session.commit()
        except (NotFoundError, ConflictError):
            db.session.rollback()
            raise
        except SnapshotCorruptedError as exc:
            db.session.rollback()
            logger.critical("Restore of version %s aborted: %s", version_id, exc,
                            extra={"project_id": project_id, "version_id": version_id})
            raise RestoreFailedError(version_id, str(exc), fatal=True) from exc
        except Exception as exc:
            db.session.rollback()
            logger.exception("Restore of version %s failed", version_id,
                             extra={"project_id": project_id, "version_id": version_id})
            raise RestoreFailedError(version_id, str(exc)) from exc

        logger.info("Restored project %s to version %s (backup %s)", project_id, source_number, backup_id,
                    extra={"project_id": project_id, "version_id": version_id, "change_event_id": event_id})

        event = db.session.get(ChangeEvent, event_id)
        ImpactAnalysisService.analyze(event)
        return {
            "version": db.session.get(ProjectVersion, version_id),
            "backup": db.session.get(ProjectVersion, backup_id),
            "change_event": db.session.get(ChangeEvent, event_id),
        }
