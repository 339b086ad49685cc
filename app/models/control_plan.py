"""
Control plan domain model.

Models:
    - ControlPlan: inspection/measurement plan, optionally derived from an FMEA
    - ControlPlanItem: one control at one process step, linked back to the
      failure mode / cause / control it covers
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

VERIFICATION_STATUSES = {"PENDING", "VERIFIED", "REQUIRES_UPDATE"}


class ControlPlan(db.Model):
    __tablename__ = "control_plans"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    fmea_id = db.Column(db.Integer, db.ForeignKey("fmeas.id", ondelete="SET NULL"), nullable=True)
    control_plan_number = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    plan_type = db.Column(db.String(20), default="PRODUCTION",
                          comment="PROTOTYPE | PRE_LAUNCH | PRODUCTION")
    status = db.Column(db.String(20), default="DRAFT")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    items = db.relationship("ControlPlanItem", backref="control_plan", lazy="select",
                            order_by="ControlPlanItem.sequence_number",
                            cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "fmea_id": self.fmea_id,
            "control_plan_number": self.control_plan_number,
            "title": self.title,
            "plan_type": self.plan_type,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ControlPlan {self.id}: {self.control_plan_number}>"


class ControlPlanItem(db.Model):
    __tablename__ = "control_plan_items"

    id = db.Column(db.Integer, primary_key=True)
    control_plan_id = db.Column(db.Integer, db.ForeignKey("control_plans.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    sequence_number = db.Column(db.Integer, nullable=False)
    process_step_id = db.Column(db.Integer, db.ForeignKey("process_steps.id", ondelete="SET NULL"),
                                nullable=True, index=True)
    operation_description = db.Column(db.String(500), nullable=False)
    characteristic = db.Column(db.String(300), nullable=True)
    control_method = db.Column(db.Text, nullable=True)
    sample_size_frequency = db.Column(db.String(100), nullable=True)
    control_type = db.Column(db.String(20), nullable=True)
    reaction_plan = db.Column(db.Text, nullable=True)

    special_characteristic = db.Column(db.Boolean, default=False)
    customer_required = db.Column(db.Boolean, default=False)
    regulatory_requirement = db.Column(db.Boolean, default=False)
    safety_characteristic = db.Column(db.Boolean, default=False)

    verification_status = db.Column(db.String(20), default="PENDING",
                                    comment="PENDING | VERIFIED | REQUIRES_UPDATE")

    linked_failure_mode_id = db.Column(db.Integer, db.ForeignKey("failure_modes.id", ondelete="SET NULL"),
                                       nullable=True, index=True)
    linked_failure_cause_id = db.Column(db.Integer, db.ForeignKey("failure_causes.id", ondelete="SET NULL"),
                                        nullable=True)
    linked_failure_control_id = db.Column(db.Integer, db.ForeignKey("failure_controls.id", ondelete="SET NULL"),
                                          nullable=True, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "control_plan_id": self.control_plan_id,
            "sequence_number": self.sequence_number,
            "process_step_id": self.process_step_id,
            "operation_description": self.operation_description,
            "characteristic": self.characteristic,
            "control_method": self.control_method,
            "sample_size_frequency": self.sample_size_frequency,
            "control_type": self.control_type,
            "reaction_plan": self.reaction_plan,
            "special_characteristic": self.special_characteristic,
            "customer_required": self.customer_required,
            "regulatory_requirement": self.regulatory_requirement,
            "safety_characteristic": self.safety_characteristic,
            "verification_status": self.verification_status,
            "linked_failure_mode_id": self.linked_failure_mode_id,
            "linked_failure_cause_id": self.linked_failure_cause_id,
            "linked_failure_control_id": self.linked_failure_control_id,
        }

    def __repr__(self):
        return f"<ControlPlanItem {self.id}: #{self.sequence_number}>"
