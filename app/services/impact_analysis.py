"""
Impact Analysis Service.

Scores a ChangeEvent on a 0-10 scale and lists what it touches:

    score = per_dependent × min(dependents, dependent_cap)
          + rpn_over_threshold   (any affected failure mode above its FMEA threshold)
          + flagged_field        (safety / regulatory / customer-required field involved)

clamped to 10 and bucketed by ``IMPACT_RISK_CUT_POINTS``. Weights, cut
points and flagged field names come from app config.

Affected entities are stored as id + display-name copies, so an analysis
stays readable after the records it names are deleted. A COMPLETED
analysis is never recomputed; FAILED ones can be retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import NotFoundError, TransientError
from app.models import db
from app.models.change import ChangeEvent, ImpactAnalysis
from app.services.dependency_graph import display_snapshot, load_entity, related_for_event
from app.services.notification import NotificationService
from app.services.rpn import failure_mode_rpn
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

EFFORT_HOURS = {"LOW": 1.0, "MEDIUM": 4.0, "HIGH": 8.0, "CRITICAL": 16.0}

_STAKEHOLDERS_BY_ENTITY = {
    "PROCESS_FLOW": ["PROCESS_ENGINEER"],
    "PROCESS_STEP": ["PROCESS_ENGINEER", "QUALITY_ENGINEER"],
    "FMEA": ["QUALITY_ENGINEER"],
    "FAILURE_MODE": ["QUALITY_ENGINEER", "DESIGN_ENGINEER"],
    "FAILURE_EFFECT": ["QUALITY_ENGINEER"],
    "FAILURE_CAUSE": ["QUALITY_ENGINEER"],
    "FAILURE_CONTROL": ["QUALITY_ENGINEER"],
    "CONTROL_PLAN": ["QUALITY_ENGINEER", "PRODUCTION_SUPERVISOR"],
    "CONTROL_ITEM": ["QUALITY_ENGINEER", "PRODUCTION_SUPERVISOR"],
    "PROJECT": ["QUALITY_MANAGER", "PROCESS_ENGINEER", "QUALITY_ENGINEER"],
}

_SELF_LISTS = {
    "PROCESS_STEP": "process_steps",
    "FAILURE_MODE": "failure_modes",
    "CONTROL_ITEM": "control_items",
}


@dataclass
class ImpactResult:
    impact_score: float
    risk_level: str
    process_steps: list = field(default_factory=list)
    failure_modes: list = field(default_factory=list)
    control_items: list = field(default_factory=list)
    stakeholders: list = field(default_factory=list)
    flagged_fields: list = field(default_factory=list)
    rpn_threshold_exceeded: bool = False
    dependent_change_ids: list = field(default_factory=list)
    blocking_change_ids: list = field(default_factory=list)
    mitigation_actions: list = field(default_factory=list)
    effort_hours: float = 0.0


# ── Scoring ──────────────────────────────────────────────────────────────────

def level_for_score(score: float, cut_points: dict | None = None) -> str:
    cut_points = cut_points or current_app.config["IMPACT_RISK_CUT_POINTS"]
    level = "LOW"
    for name in ("MEDIUM", "HIGH", "CRITICAL"):
        if score >= cut_points[name]:
            level = name
    return level


def score_impact(dependents: int, rpn_exceeded: bool, flagged: bool, weights: dict | None = None) -> float:
    weights = weights or current_app.config["IMPACT_SCORE_WEIGHTS"]
    score = weights["per_dependent"] * min(dependents, weights["dependent_cap"])
    if rpn_exceeded:
        score += weights["rpn_over_threshold"]
    if flagged:
        score += weights["flagged_field"]
    return round(min(score, 10.0), 2)


def _flagged_fields(event: ChangeEvent, values: dict) -> list[str]:
    flagged_names = set(current_app.config["IMPACT_FLAGGED_FIELDS"])
    hits = {f for f in (event.changed_fields or []) if f in flagged_names}
    hits.update(name for name in flagged_names if values.get(name) is True)
    return sorted(hits)


def _rpn_exceeded(modes) -> bool:
    for mode in modes:
        pairing = failure_mode_rpn(mode)
        threshold = mode.fmea.rpn_threshold if mode.fmea is not None else None
        if pairing is not None and threshold is not None and pairing.rpn > threshold:
            return True
    return False


def _self_snapshot(event: ChangeEvent, values: dict):
    live = load_entity(event.entity_type, event.entity_id)
    if live is not None:
        return live, display_snapshot(event.entity_type, live)
    name_keys = ("name", "failure_mode", "operation_description")
    name = next((values[k] for k in name_keys if values.get(k)), None)
    return None, {"id": event.entity_id, "name": str(name) if name else f"{event.entity_type}#{event.entity_id}"}


def _mitigations(level: str, result: ImpactResult, event: ChangeEvent) -> list[str]:
    actions = []
    if result.rpn_threshold_exceeded:
        actions.append("Re-rate affected failure modes and define actions for RPNs above threshold")
    if result.flagged_fields:
        actions.append("Obtain safety/regulatory sign-off for flagged characteristics")
    if result.control_items:
        actions.append("Re-verify affected control plan items")
    if event.change_type == "DELETE" and result.failure_modes:
        actions.append("Reassign or retire failure modes that referenced the deleted record")
    if level in ("HIGH", "CRITICAL"):
        actions.append("Review change with quality manager before release")
    return actions


def _related_change_ids(event: ChangeEvent, result: ImpactResult) -> tuple[list[int], list[int]]:
    dependent = []
    if event.batch_id:
        dependent = [
            eid for (eid,) in db.session.query(ChangeEvent.id)
            .filter(ChangeEvent.batch_id == event.batch_id, ChangeEvent.id != event.id)
            .order_by(ChangeEvent.id).all()
        ]

    touched = {(event.entity_type, event.entity_id)}
    touched.update(("PROCESS_STEP", s["id"]) for s in result.process_steps)
    touched.update(("FAILURE_MODE", m["id"]) for m in result.failure_modes)
    touched.update(("CONTROL_ITEM", i["id"]) for i in result.control_items)
    pending = (
        ChangeEvent.query
        .filter(ChangeEvent.project_id == event.project_id,
                ChangeEvent.id < event.id,
                ChangeEvent.approval_status == "PENDING")
        .order_by(ChangeEvent.id).all()
    )
    blocking = [e.id for e in pending if (e.entity_type, e.entity_id) in touched]
    return dependent, blocking


def compute_impact(event: ChangeEvent) -> ImpactResult:
    """Assess one event from its own old/new values plus dependency lookups."""
    values = {**(event.old_values or {}), **(event.new_values or {})}

    if event.change_type == "RESTORE":
        cut_points = current_app.config["IMPACT_RISK_CUT_POINTS"]
        result = ImpactResult(impact_score=cut_points["HIGH"], risk_level="HIGH",
                              stakeholders=list(_STAKEHOLDERS_BY_ENTITY["PROJECT"]))
        result.mitigation_actions = ["Confirm restored project state with process and quality owners"]
        result.effort_hours = EFFORT_HOURS["HIGH"]
        return result

    rel = related_for_event(event)
    live_self, self_snap = _self_snapshot(event, values)

    lists = {
        "process_steps": [display_snapshot("PROCESS_STEP", s) for s in rel.process_steps],
        "failure_modes": [display_snapshot("FAILURE_MODE", m) for m in rel.failure_modes],
        "control_items": [display_snapshot("CONTROL_ITEM", i) for i in rel.control_items],
    }
    self_list = _SELF_LISTS.get(event.entity_type)
    if self_list:
        lists[self_list].insert(0, self_snap)

    modes = list(rel.failure_modes)
    if event.entity_type == "FAILURE_MODE" and live_self is not None:
        modes.append(live_self)

    flagged = _flagged_fields(event, values)
    rpn_exceeded = _rpn_exceeded(modes)
    score = score_impact(rel.count, rpn_exceeded, bool(flagged))
    level = level_for_score(score)

    stakeholders = list(_STAKEHOLDERS_BY_ENTITY.get(event.entity_type, ["QUALITY_ENGINEER"]))
    if level in ("HIGH", "CRITICAL"):
        stakeholders.append("QUALITY_MANAGER")
    if flagged:
        stakeholders.append("SAFETY_OFFICER")

    result = ImpactResult(
        impact_score=score,
        risk_level=level,
        process_steps=lists["process_steps"],
        failure_modes=lists["failure_modes"],
        control_items=lists["control_items"],
        stakeholders=sorted(set(stakeholders)),
        flagged_fields=flagged,
        rpn_threshold_exceeded=rpn_exceeded,
        effort_hours=EFFORT_HOURS[level],
    )
    result.mitigation_actions = _mitigations(level, result, event)
    result.dependent_change_ids, result.blocking_change_ids = _related_change_ids(event, result)
    return result


# ── Service ──────────────────────────────────────────────────────────────────

class ImpactAnalysisService:
    """Runs and persists impact analyses."""

    @staticmethod
    def analyze(event: ChangeEvent, *, commit: bool = True) -> ImpactAnalysis:
        """Compute (or return the completed) analysis for an event.

        With ``commit=True`` the IN_PROGRESS marker is committed first and any
        failure while computing is stored as FAILED. With ``commit=False`` (chained
        propagation) lookup failures raise TransientError so the caller's
        transaction rolls back as a whole.
        """
        analysis = event.impact_analysis
        if analysis is not None and analysis.analysis_status == "COMPLETED":
            return analysis
        if analysis is None:
            analysis = ImpactAnalysis(change_event_id=event.id, analysis_status="PENDING", attempt_count=0)
            db.session.add(analysis)
            event.impact_analysis = analysis

        analysis.analysis_status = "IN_PROGRESS"
        analysis.started_at = utcnow()
        analysis.attempt_count = (analysis.attempt_count or 0) + 1
        analysis.error_message = None
        if commit:
            db.session.commit()
        else:
            db.session.flush()

        event_id = event.id
        try:
            result = compute_impact(event)
        except Exception as exc:
            if not commit:
                if isinstance(exc, (SQLAlchemyError, TransientError)):
                    raise TransientError(f"Impact lookup failed for event {event_id}: {exc}") from exc
                raise
            db.session.rollback()
            if not isinstance(exc, (SQLAlchemyError, TransientError)):
                logger.exception("Unexpected error analysing event %s", event_id,
                                 extra={"change_event_id": event_id})
            return ImpactAnalysisService._record_failure(event_id, exc)

        ImpactAnalysisService._store(event, analysis, result)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return analysis

    @staticmethod
    def _store(event: ChangeEvent, analysis: ImpactAnalysis, result: ImpactResult) -> None:
        analysis.impact_score = result.impact_score
        analysis.risk_level = result.risk_level
        analysis.affected_process_steps = result.process_steps
        analysis.affected_failure_modes = result.failure_modes
        analysis.affected_control_items = result.control_items
        analysis.affected_stakeholders = result.stakeholders
        analysis.flagged_fields = result.flagged_fields
        analysis.rpn_threshold_exceeded = result.rpn_threshold_exceeded
        analysis.dependent_change_ids = result.dependent_change_ids
        analysis.blocking_change_ids = result.blocking_change_ids
        analysis.risk_mitigation_actions = result.mitigation_actions
        analysis.estimated_effort_hours = result.effort_hours
        analysis.analysis_status = "COMPLETED"
        analysis.completed_at = utcnow()
        event.impact_level = result.risk_level

        if result.risk_level in ("HIGH", "CRITICAL"):
            NotificationService.enqueue(
                project_id=event.project_id,
                change_event_id=event.id,
                notification_type="IMPACT_HIGH",
                priority="URGENT" if result.risk_level == "CRITICAL" else "HIGH",
                title=f"{result.risk_level} impact: {event.change_action} #{event.entity_id}",
                message=f"Impact score {result.impact_score}/10; "
                        f"{len(result.failure_modes)} failure mode(s), "
                        f"{len(result.control_items)} control item(s) affected.",
                roles=result.stakeholders,
                action_required=True,
            )
        logger.info("Impact analysis for event %s: %s (%.2f)", event.id, result.risk_level,
                    result.impact_score, extra={"change_event_id": event.id, "project_id": event.project_id})

    @staticmethod
    def _record_failure(event_id: int, exc: Exception) -> ImpactAnalysis:
        analysis = ImpactAnalysis.query.filter_by(change_event_id=event_id).first()
        if analysis is None:
            analysis = ImpactAnalysis(change_event_id=event_id, attempt_count=1)
            db.session.add(analysis)
        analysis.analysis_status = "FAILED"
        analysis.error_message = str(exc)[:2000]
        analysis.completed_at = None
        db.session.commit()
        logger.warning("Impact analysis for event %s failed (retry-eligible): %s", event_id, exc,
                       extra={"change_event_id": event_id})
        return analysis

    @staticmethod
    def retry(event_id: int) -> ImpactAnalysis:
        """Re-run a FAILED or abandoned analysis; COMPLETED ones are returned as-is."""
        event = db.session.get(ChangeEvent, event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", event_id)
        return ImpactAnalysisService.analyze(event)

    @staticmethod
    def get(event_id: int) -> ImpactAnalysis:
        analysis = ImpactAnalysis.query.filter_by(change_event_id=event_id).first()
        if analysis is None:
            if db.session.get(ChangeEvent, event_id) is None:
                raise NotFoundError("ChangeEvent", event_id)
            raise NotFoundError("ImpactAnalysis", event_id)
        return analysis
