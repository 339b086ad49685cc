"""
Project version (snapshot) model.

A ProjectVersion is an immutable, self-contained copy of a project's three
engineering subtrees. Rows are superseded by newer versions, never updated
or deleted.
"""

from datetime import datetime, timezone

from app.models import db


class ProjectVersion(db.Model):
    __tablename__ = "project_versions"
    __table_args__ = (
        db.UniqueConstraint("project_id", "version_number", name="uq_project_version_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    version_number = db.Column(db.String(20), nullable=False, comment="N.0.0")
    major_version = db.Column(db.Integer, nullable=False)
    minor_version = db.Column(db.Integer, nullable=False, default=0)
    patch_version = db.Column(db.Integer, nullable=False, default=0)
    version_name = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    is_baseline = db.Column(db.Boolean, default=False)

    schema_version = db.Column(db.Integer, nullable=False,
                               comment="Snapshot record schema the blobs were written with")
    process_flow_snapshot = db.Column(db.JSON, nullable=False)
    fmea_snapshot = db.Column(db.JSON, nullable=False)
    control_plan_snapshot = db.Column(db.JSON, nullable=False)

    total_process_steps = db.Column(db.Integer, default=0)
    total_failure_modes = db.Column(db.Integer, default=0)
    total_control_items = db.Column(db.Integer, default=0)
    total_rpn = db.Column(db.Integer, default=0)
    high_risk_count = db.Column(db.Integer, default=0)

    restored_from_version_id = db.Column(
        db.Integer, db.ForeignKey("project_versions.id", ondelete="SET NULL"), nullable=True,
        comment="Set on pre-restore backups: the version that replaced this state",
    )

    created_by = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self, include_snapshots=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "major_version": self.major_version,
            "minor_version": self.minor_version,
            "patch_version": self.patch_version,
            "version_name": self.version_name,
            "description": self.description,
            "is_baseline": self.is_baseline,
            "schema_version": self.schema_version,
            "total_process_steps": self.total_process_steps,
            "total_failure_modes": self.total_failure_modes,
            "total_control_items": self.total_control_items,
            "total_rpn": self.total_rpn,
            "high_risk_count": self.high_risk_count,
            "restored_from_version_id": self.restored_from_version_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_snapshots:
            d["process_flow_snapshot"] = self.process_flow_snapshot
            d["fmea_snapshot"] = self.fmea_snapshot
            d["control_plan_snapshot"] = self.control_plan_snapshot
        return d

    def __repr__(self):
        return f"<ProjectVersion {self.id}: project={self.project_id} v{self.version_number}>"
