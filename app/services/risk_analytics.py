"""
Risk Analytics Aggregator.

Per-project RPN distribution, control coverage and control-plan
compliance, stored as one RiskAnalyticsSnapshot row per (project, date).
``recompute`` is idempotent: it rebuilds the row for the date from live
data and compares against the most recent earlier date for the trend.
``get_control_effectiveness`` is a live read with recommendations and
is not stored.

Failure-mode RPNs come from ``app.services.rpn`` (worst-case pairing).
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.control_plan import ControlPlan, ControlPlanItem
from app.models.fmea import FailureMode, Fmea
from app.models.process_flow import ProcessStep
from app.models.project import Project
from app.models.risk import METRIC_FIELDS, RiskAnalyticsSnapshot
from app.services.rpn import HIGH_RISK_LEVELS, failure_mode_rpn, rpn_bucket
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

TOP_RISK_LIMIT = 5


# ── Pure computations ────────────────────────────────────────────────────────

def overall_risk_level(critical_count: int, average_rpn: float, compliance_score: float) -> str:
    if critical_count > 0 or compliance_score < 60:
        return "CRITICAL"
    if average_rpn > 100 or compliance_score < 80:
        return "HIGH"
    if average_rpn > 50 or compliance_score < 90:
        return "MEDIUM"
    return "LOW"


def detection_effectiveness(controls) -> float:
    """Mean of (11 - detection rating) × 10 over detection controls; 0 without any."""
    scores = [(11 - int(c.detection_rating or 10)) * 10 for c in controls if c.control_type == "DETECTION"]
    return round(sum(scores) / len(scores), 2) if scores else 0.0


def control_effectiveness(controls, causes) -> dict:
    """Prevention/detection balance and detection coverage of a project's FMEA controls.

    Score: 70 base, +10 when more than 30 % of controls are preventive, plus
    up to 20 for the share of failure causes that have a detection control.
    """
    total = len(controls)
    prevention = sum(1 for c in controls if c.control_type == "PREVENTION")
    detection = sum(1 for c in controls if c.control_type == "DETECTION")
    average_detection = round(sum(int(c.detection_rating or 10) for c in controls) / total, 2) if total else 0.0
    uncovered = sum(1 for cause in causes if not any(c.control_type == "DETECTION" for c in cause.controls))

    score = 0.0
    if total:
        score = 70.0
        if prevention / total > 0.3:
            score += 10
        if causes:
            score += (len(causes) - uncovered) / len(causes) * 20
        score = round(min(score, 100.0), 2)

    recommendations = []
    if score < 70:
        recommendations.append("Overall control effectiveness needs improvement")
    if uncovered:
        recommendations.append(f"Add detection controls to {uncovered} failure cause(s)")
    if prevention < detection * 0.3:
        recommendations.append("Consider adding more prevention controls")
    if average_detection > 6:
        recommendations.append("Improve detection capabilities - average detection rating is high")

    return {
        "total_controls": total,
        "prevention_controls": prevention,
        "detection_controls": detection,
        "average_detection_rating": average_detection,
        "causes_without_detection": uncovered,
        "effectiveness_score": score,
        "recommendations": recommendations,
    }


def rpn_trend(current: dict, previous: RiskAnalyticsSnapshot | None, threshold_pct: float) -> dict:
    if previous is None:
        return {"rpn_trend": "STABLE", "rpn_change_percentage": 0.0,
                "new_risks_added": 0, "risks_mitigated": 0}
    prev_avg = previous.average_rpn or 0.0
    change = ((current["average_rpn"] - prev_avg) / prev_avg * 100) if prev_avg else 0.0
    if change < -threshold_pct:
        trend = "IMPROVING"
    elif change > threshold_pct:
        trend = "WORSENING"
    else:
        trend = "STABLE"
    return {
        "rpn_trend": trend,
        "rpn_change_percentage": round(change, 2),
        "new_risks_added": max(0, current["total_failure_modes"] - (previous.total_failure_modes or 0)),
        "risks_mitigated": max(0, (previous.high_risk_count or 0) - current["high_risk_count"]),
    }


def _project_modes(project_id: int) -> list[FailureMode]:
    return (
        FailureMode.query
        .join(Fmea, FailureMode.fmea_id == Fmea.id)
        .filter(Fmea.project_id == project_id)
        .order_by(FailureMode.id)
        .all()
    )


def _rated(modes, buckets) -> list[tuple]:
    """(mode, pairing, bucket) for every failure mode with an RPN in a bucket.

    A zero or missing rating yields RPN 0, which has no bucket; such modes
    count toward ``total_failure_modes`` only.
    """
    rated = []
    for mode in modes:
        pairing = failure_mode_rpn(mode)
        if pairing is None:
            continue
        bucket = rpn_bucket(pairing.rpn, buckets)
        if bucket is None:
            logger.debug("Failure mode %s has an incomplete rating (RPN %s)", mode.id, pairing.rpn)
            continue
        rated.append((mode, pairing, bucket))
    return rated


def process_breakdown(project_id: int, modes=None) -> list[dict]:
    buckets = current_app.config["RPN_BUCKETS"]
    modes = _project_modes(project_id) if modes is None else modes
    by_step: dict[int, list] = {}
    for mode, pairing, _ in _rated(modes, buckets):
        if mode.primary_process_step_id is not None:
            by_step.setdefault(mode.primary_process_step_id, []).append((mode, pairing))

    rows = []
    for step_id in sorted(by_step):
        entries = by_step[step_id]
        step = db.session.get(ProcessStep, step_id)
        rpns = [p.rpn for _, p in entries]
        controls = [ctl for m, _ in entries for cause in m.causes for ctl in cause.controls]
        rows.append({
            "process_step_id": step_id,
            "process_step_name": step.name if step is not None else None,
            "failure_modes": len(entries),
            "total_rpn": sum(rpns),
            "average_rpn": round(sum(rpns) / len(rpns), 2),
            "highest_rpn": max(rpns),
            "risk_level": rpn_bucket(max(rpns), buckets),
            "control_effectiveness": detection_effectiveness(controls),
        })
    return sorted(rows, key=lambda r: (-r["highest_rpn"], r["process_step_id"]))


def compute_metrics(project_id: int) -> dict:
    """Every metric column except the trend fields, from live data."""
    buckets = current_app.config["RPN_BUCKETS"]
    modes = _project_modes(project_id)
    rated = _rated(modes, buckets)

    counts = {"LOW": 0, "MEDIUM": 0, "HIGH": 0, "CRITICAL": 0}
    for _, _, bucket in rated:
        counts[bucket] += 1
    rpns = [p.rpn for _, p, _ in rated]

    causes = [cause for m in modes for cause in m.causes]
    controls = [ctl for cause in causes for ctl in cause.controls]
    missing = sum(1 for cause in causes if not any(c.control_type == "DETECTION" for c in cause.controls))

    items = (
        ControlPlanItem.query
        .join(ControlPlan, ControlPlanItem.control_plan_id == ControlPlan.id)
        .filter(ControlPlan.project_id == project_id)
        .all()
    )
    verified = sum(1 for i in items if i.verification_status == "VERIFIED")

    return {
        "total_failure_modes": len(modes),
        "rated_failure_modes": len(rated),
        "total_rpn": sum(rpns),
        "average_rpn": round(sum(rpns) / len(rpns), 2) if rpns else 0.0,
        "max_rpn": max(rpns) if rpns else 0,
        "low_rpn_count": counts["LOW"],
        "medium_rpn_count": counts["MEDIUM"],
        "high_rpn_count": counts["HIGH"],
        "critical_rpn_count": counts["CRITICAL"],
        "high_risk_count": sum(counts[level] for level in HIGH_RISK_LEVELS),
        "prevention_controls": sum(1 for c in controls if c.control_type == "PREVENTION"),
        "detection_controls": sum(1 for c in controls if c.control_type == "DETECTION"),
        "missing_controls": missing,
        "control_effectiveness_score": detection_effectiveness(controls),
        "total_control_items": len(items),
        "verified_control_items": verified,
        "compliance_score": round(verified / len(items) * 100, 2) if items else 0.0,
        "process_risk_breakdown": process_breakdown(project_id, modes),
    }


# ── Service ──────────────────────────────────────────────────────────────────

class RiskAnalyticsService:
    """Computes and serves risk analytics snapshots."""

    @staticmethod
    def _require_project(project_id: int) -> Project:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    @staticmethod
    def recompute(project_id: int, analysis_date: date | None = None) -> RiskAnalyticsSnapshot:
        """Rebuild the (project, date) row from live data; safe to call repeatedly."""
        RiskAnalyticsService._require_project(project_id)
        analysis_date = analysis_date or utcnow().date()

        metrics = compute_metrics(project_id)
        previous = (
            RiskAnalyticsSnapshot.query
            .filter(RiskAnalyticsSnapshot.project_id == project_id,
                    RiskAnalyticsSnapshot.analysis_date < analysis_date)
            .order_by(RiskAnalyticsSnapshot.analysis_date.desc())
            .first()
        )
        metrics.update(rpn_trend(metrics, previous, current_app.config["RPN_TREND_THRESHOLD_PCT"]))

        row = RiskAnalyticsService._upsert(project_id, analysis_date, metrics)
        logger.info("Risk analytics for project %s on %s: avg RPN %.2f, %d high-risk",
                    project_id, analysis_date, row.average_rpn, row.high_risk_count,
                    extra={"project_id": project_id})
        return row

    @staticmethod
    def _upsert(project_id: int, analysis_date: date, metrics: dict) -> RiskAnalyticsSnapshot:
        def _apply(row):
            for name in METRIC_FIELDS:
                setattr(row, name, metrics[name])
            row.computed_at = utcnow()

        row = RiskAnalyticsSnapshot.query.filter_by(project_id=project_id, analysis_date=analysis_date).first()
        if row is None:
            row = RiskAnalyticsSnapshot(project_id=project_id, analysis_date=analysis_date)
            db.session.add(row)
        _apply(row)
        try:
            db.session.commit()
        except IntegrityError:
            # Another writer inserted the same (project, date) first.
            db.session.rollback()
            row = RiskAnalyticsSnapshot.query.filter_by(project_id=project_id, analysis_date=analysis_date).one()
            _apply(row)
            db.session.commit()
        return row

    @staticmethod
    def latest(project_id: int) -> RiskAnalyticsSnapshot | None:
        return (
            RiskAnalyticsSnapshot.query
            .filter_by(project_id=project_id)
            .order_by(RiskAnalyticsSnapshot.analysis_date.desc())
            .first()
        )

    @staticmethod
    def get_risk_summary(project_id: int) -> dict:
        """Latest snapshot (computed when none exists), overall level and top risks."""
        project = RiskAnalyticsService._require_project(project_id)
        row = RiskAnalyticsService.latest(project_id) or RiskAnalyticsService.recompute(project_id)

        buckets = current_app.config["RPN_BUCKETS"]
        rated = sorted(_rated(_project_modes(project_id), buckets), key=lambda r: (-r[1].rpn, r[0].id))
        top = [
            {
                "failure_mode_id": mode.id,
                "failure_mode": mode.failure_mode,
                "rpn": pairing.rpn,
                "risk_level": bucket,
                "pairing": pairing.to_dict(),
            }
            for mode, pairing, bucket in rated[:TOP_RISK_LIMIT]
        ]
        return {
            "project_id": project.id,
            "project_name": project.name,
            "overall_risk_level": overall_risk_level(row.critical_rpn_count or 0, row.average_rpn or 0.0,
                                                     row.compliance_score or 0.0),
            "risk_distribution": {
                "low": row.low_rpn_count,
                "medium": row.medium_rpn_count,
                "high": row.high_rpn_count,
                "critical": row.critical_rpn_count,
            },
            "analytics": row.to_dict(),
            "top_risks": top,
        }

    @staticmethod
    def get_risk_trend(project_id: int, days: int = 30) -> list[dict]:
        RiskAnalyticsService._require_project(project_id)
        if days < 1:
            raise ValidationError("days must be at least 1")
        since = utcnow().date() - timedelta(days=days)
        rows = (
            RiskAnalyticsSnapshot.query
            .filter(RiskAnalyticsSnapshot.project_id == project_id,
                    RiskAnalyticsSnapshot.analysis_date >= since)
            .order_by(RiskAnalyticsSnapshot.analysis_date)
            .all()
        )
        return [
            {
                "date": r.analysis_date.isoformat(),
                "total_rpn": r.total_rpn,
                "average_rpn": r.average_rpn,
                "high_risk_count": r.high_risk_count,
                "new_risks_added": r.new_risks_added,
                "risks_mitigated": r.risks_mitigated,
                "compliance_score": r.compliance_score,
                "rpn_trend": r.rpn_trend,
            }
            for r in rows
        ]

    @staticmethod
    def get_control_effectiveness(project_id: int) -> dict:
        """Live analysis of the project's FMEA controls with improvement recommendations."""
        RiskAnalyticsService._require_project(project_id)
        causes = [cause for mode in _project_modes(project_id) for cause in mode.causes]
        controls = [ctl for cause in causes for ctl in cause.controls]
        result = control_effectiveness(controls, causes)
        result["project_id"] = project_id
        return result

    @staticmethod
    def get_process_risk_breakdown(project_id: int) -> list[dict]:
        RiskAnalyticsService._require_project(project_id)
        return process_breakdown(project_id)
