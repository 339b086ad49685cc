"""
Risk analytics model.

Models:
    - RiskAnalyticsSnapshot: one row per (project, analysis_date) with RPN
      distribution and control-plan compliance; always a pure function of
      the live FMEA / control-plan data at compute time
"""

from datetime import date, datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RPN_TRENDS = {"IMPROVING", "STABLE", "WORSENING"}
RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")

# Columns that carry computed values; excludes identity and bookkeeping
METRIC_FIELDS = (
    "total_failure_modes",
    "rated_failure_modes",
    "total_rpn",
    "average_rpn",
    "max_rpn",
    "low_rpn_count",
    "medium_rpn_count",
    "high_rpn_count",
    "critical_rpn_count",
    "high_risk_count",
    "prevention_controls",
    "detection_controls",
    "missing_controls",
    "control_effectiveness_score",
    "total_control_items",
    "verified_control_items",
    "compliance_score",
    "rpn_trend",
    "rpn_change_percentage",
    "new_risks_added",
    "risks_mitigated",
    "process_risk_breakdown",
)


class RiskAnalyticsSnapshot(db.Model):
    __tablename__ = "risk_analytics"
    __table_args__ = (
        db.UniqueConstraint("project_id", "analysis_date", name="uq_risk_analytics_project_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    analysis_date = db.Column(db.Date, nullable=False, default=date.today)

    total_failure_modes = db.Column(db.Integer, default=0)
    rated_failure_modes = db.Column(db.Integer, default=0,
                                    comment="Failure modes with at least one cause")
    total_rpn = db.Column(db.Integer, default=0)
    average_rpn = db.Column(db.Float, default=0.0)
    max_rpn = db.Column(db.Integer, default=0)

    low_rpn_count = db.Column(db.Integer, default=0, comment="RPN 1-49")
    medium_rpn_count = db.Column(db.Integer, default=0, comment="RPN 50-99")
    high_rpn_count = db.Column(db.Integer, default=0, comment="RPN 100-299")
    critical_rpn_count = db.Column(db.Integer, default=0, comment="RPN 300+")
    high_risk_count = db.Column(db.Integer, default=0, comment="HIGH + CRITICAL")

    prevention_controls = db.Column(db.Integer, default=0)
    detection_controls = db.Column(db.Integer, default=0)
    missing_controls = db.Column(db.Integer, default=0, comment="Causes without a detection control")
    control_effectiveness_score = db.Column(db.Float, default=0.0)

    total_control_items = db.Column(db.Integer, default=0)
    verified_control_items = db.Column(db.Integer, default=0)
    compliance_score = db.Column(db.Float, default=0.0, comment="Percentage 0-100")

    rpn_trend = db.Column(db.String(20), default="STABLE")
    rpn_change_percentage = db.Column(db.Float, default=0.0)
    new_risks_added = db.Column(db.Integer, default=0)
    risks_mitigated = db.Column(db.Integer, default=0)
    process_risk_breakdown = db.Column(db.JSON, default=list)

    computed_at = db.Column(db.DateTime(timezone=True),
                            default=lambda: datetime.now(timezone.utc))

    def metrics(self) -> dict:
        return {f: getattr(self, f) for f in METRIC_FIELDS}

    def to_dict(self):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "analysis_date": self.analysis_date.isoformat() if self.analysis_date else None,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }
        d.update(self.metrics())
        return d

    def __repr__(self):
        return f"<RiskAnalyticsSnapshot project={self.project_id} {self.analysis_date}>"
