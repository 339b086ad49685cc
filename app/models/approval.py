"""
Change approval domain model.

Models:
    - ApprovalWorkflow: project-scoped template (trigger conditions, ordered
      or parallel step templates, auto-approve conditions, escalation config)
    - ApprovalStepInstance: one step of one workflow applied to one ChangeEvent
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STEP_STATUSES = {"PENDING", "APPROVED", "REJECTED", "ESCALATED", "BYPASSED"}
OPEN_STEP_STATUSES = ("PENDING", "ESCALATED")
DECISIONS = {"APPROVED", "REJECTED", "BYPASSED"}


def _iso(dt):
    return dt.isoformat() if dt else None


class ApprovalWorkflow(db.Model):
    __tablename__ = "change_approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    trigger_conditions = db.Column(db.JSON, default=dict,
                                   comment="{entity_types, impact_levels, change_types}; empty list = any")
    approval_steps = db.Column(db.JSON, default=list,
                               comment="[{step_number, step_name, approver_role, approver_user_id, "
                                       "timeout_hours, escalation_roles, is_optional}]")
    parallel_approval = db.Column(db.Boolean, default=False)
    auto_approve_conditions = db.Column(db.JSON, nullable=True)

    default_timeout_hours = db.Column(db.Integer, default=48)
    escalation_roles = db.Column(db.JSON, default=list)
    emergency_bypass_roles = db.Column(db.JSON, default=list)

    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "trigger_conditions": self.trigger_conditions or {},
            "approval_steps": self.approval_steps or [],
            "parallel_approval": self.parallel_approval,
            "auto_approve_conditions": self.auto_approve_conditions,
            "default_timeout_hours": self.default_timeout_hours,
            "escalation_roles": self.escalation_roles or [],
            "emergency_bypass_roles": self.emergency_bypass_roles or [],
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id}: {self.name}>"


class ApprovalStepInstance(db.Model):
    __tablename__ = "change_approvals"
    __table_args__ = (
        db.UniqueConstraint("change_event_id", "workflow_id", "step_number",
                            name="uq_change_approval_step"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("change_approval_workflows.id", ondelete="CASCADE"),
                            nullable=False)
    step_number = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(200), nullable=False)
    approver_role = db.Column(db.String(100), nullable=False)
    approver_user_id = db.Column(db.String(150), nullable=True)
    is_optional = db.Column(db.Boolean, default=False)

    status = db.Column(db.String(20), nullable=False, default="PENDING")
    decided_by = db.Column(db.String(150), nullable=True)
    decision_date = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True),
                            default=lambda: datetime.now(timezone.utc))
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_to_role = db.Column(db.String(100), nullable=True)

    change_event = db.relationship("ChangeEvent", backref=db.backref(
        "approval_steps", order_by="ApprovalStepInstance.step_number", passive_deletes=True))
    workflow = db.relationship("ApprovalWorkflow")

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "step_name": self.step_name,
            "approver_role": self.approver_role,
            "approver_user_id": self.approver_user_id,
            "is_optional": self.is_optional,
            "status": self.status,
            "decided_by": self.decided_by,
            "decision_date": _iso(self.decision_date),
            "comments": self.comments,
            "assigned_at": _iso(self.assigned_at),
            "due_date": _iso(self.due_date),
            "escalated_at": _iso(self.escalated_at),
            "escalated_to_role": self.escalated_to_role,
        }

    def __repr__(self):
        return f"<ApprovalStepInstance event={self.change_event_id} #{self.step_number} [{self.status}]>"
