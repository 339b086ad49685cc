"""
Change tracking domain model.

Models:
    - ChangeEvent: append-only ledger entry for one mutation of one entity
    - ImpactAnalysis: one-to-one computed assessment of a ChangeEvent
    - PropagationRule: declarative source-change → target-action mapping
    - QueuedRuleAction: rule action held back until its event is approved
    - ReviewFlag: a dependent record flagged for re-validation by a rule
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from app.core.exceptions import ConflictError
from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = {
    "PROCESS_FLOW", "PROCESS_STEP", "STEP_CONNECTION",
    "FMEA", "FAILURE_MODE", "FAILURE_EFFECT", "FAILURE_CAUSE", "FAILURE_CONTROL",
    "CONTROL_PLAN", "CONTROL_ITEM", "PROJECT",
}
CHANGE_TYPES = {"CREATE", "UPDATE", "DELETE", "RESTORE"}
IMPACT_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
APPROVAL_STATUSES = {"AUTO_APPROVED", "PENDING", "APPROVED", "REJECTED"}
PROPAGATION_STATUSES = {"NOT_REQUIRED", "PENDING", "COMPLETED", "FAILED"}
ANALYSIS_STATUSES = {"PENDING", "IN_PROGRESS", "COMPLETED", "FAILED"}
TARGET_ACTIONS = {"VALIDATE", "UPDATE", "CREATE", "NOTIFY"}
QUEUED_ACTION_STATUSES = {"QUEUED", "RELEASED", "CANCELLED"}
REVIEW_FLAG_STATUSES = {"OPEN", "RESOLVED"}


def _iso(dt):
    return dt.isoformat() if dt else None


class ChangeEvent(db.Model):
    __tablename__ = "change_events"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", "entity_sequence",
                            name="uq_change_event_entity_sequence"),
        db.Index("ix_change_events_project_created", "project_id", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False,
                          comment="No FK: the ledger outlives deleted records")
    entity_sequence = db.Column(db.Integer, nullable=False,
                                comment="Monotonic per (entity_type, entity_id)")
    change_type = db.Column(db.String(20), nullable=False)
    change_action = db.Column(db.String(100), nullable=True, comment="Human-readable label")

    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    changed_fields = db.Column(db.JSON, default=list)

    impact_level = db.Column(db.String(20), nullable=False, default="MEDIUM")
    affected_modules = db.Column(db.JSON, default=list)

    propagation_required = db.Column(db.Boolean, default=False)
    propagation_status = db.Column(db.String(20), default="NOT_REQUIRED")
    propagation_error = db.Column(db.Text, nullable=True)

    approval_required = db.Column(db.Boolean, default=False)
    approval_status = db.Column(db.String(20), nullable=False, default="AUTO_APPROVED")
    workflow_id = db.Column(db.Integer, db.ForeignKey("change_approval_workflows.id", ondelete="SET NULL"),
                            nullable=True)
    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    triggered_by = db.Column(db.String(150), nullable=False)
    triggered_at = db.Column(db.DateTime(timezone=True),
                             default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    batch_id = db.Column(db.String(64), nullable=True, index=True)

    # Propagation lineage
    origin_rule_id = db.Column(db.Integer, db.ForeignKey("change_propagation_rules.id", ondelete="SET NULL"),
                               nullable=True)
    rule_chain = db.Column(db.JSON, default=list, comment="Rule ids that produced this event, oldest first")
    hop_count = db.Column(db.Integer, default=0)
    parent_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="SET NULL"),
                                nullable=True)
    restored_version_id = db.Column(db.Integer, db.ForeignKey("project_versions.id", ondelete="SET NULL"),
                                    nullable=True, comment="RESTORE events: the source version")
    dependent_refs = db.Column(db.JSON, nullable=True,
                               comment="Dependent record ids resolved before the change was committed")

    impact_analysis = db.relationship("ImpactAnalysis", backref="change_event", uselist=False,
                                      cascade="all, delete-orphan", passive_deletes=True)

    @validates("workflow_id")
    def _freeze_workflow(self, key, value):
        if self.workflow_id is not None and value != self.workflow_id:
            raise ConflictError("ChangeEvent", "workflow_id", value,
                                message=f"ChangeEvent {self.id} already bound to workflow {self.workflow_id}")
        return value

    def to_dict(self, include_analysis=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_sequence": self.entity_sequence,
            "change_type": self.change_type,
            "change_action": self.change_action,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "changed_fields": self.changed_fields or [],
            "impact_level": self.impact_level,
            "affected_modules": self.affected_modules or [],
            "propagation_required": self.propagation_required,
            "propagation_status": self.propagation_status,
            "propagation_error": self.propagation_error,
            "approval_required": self.approval_required,
            "approval_status": self.approval_status,
            "workflow_id": self.workflow_id,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "triggered_by": self.triggered_by,
            "triggered_at": _iso(self.triggered_at),
            "completed_at": _iso(self.completed_at),
            "batch_id": self.batch_id,
            "origin_rule_id": self.origin_rule_id,
            "rule_chain": self.rule_chain or [],
            "hop_count": self.hop_count,
            "parent_event_id": self.parent_event_id,
            "restored_version_id": self.restored_version_id,
            "dependent_refs": self.dependent_refs,
        }
        if include_analysis:
            d["impact_analysis"] = self.impact_analysis.to_dict() if self.impact_analysis else None
        return d

    def __repr__(self):
        return f"<ChangeEvent {self.id}: {self.change_type} {self.entity_type}#{self.entity_id}>"


class ImpactAnalysis(db.Model):
    __tablename__ = "change_impact_analysis"

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
                                nullable=False, unique=True)
    impact_score = db.Column(db.Float, nullable=True, comment="0-10")
    risk_level = db.Column(db.String(20), nullable=True)

    # id + display-name snapshots, never live references
    affected_process_steps = db.Column(db.JSON, default=list)
    affected_failure_modes = db.Column(db.JSON, default=list)
    affected_control_items = db.Column(db.JSON, default=list)
    affected_stakeholders = db.Column(db.JSON, default=list)
    dependent_change_ids = db.Column(db.JSON, default=list)
    blocking_change_ids = db.Column(db.JSON, default=list)
    risk_mitigation_actions = db.Column(db.JSON, default=list)
    flagged_fields = db.Column(db.JSON, default=list)
    rpn_threshold_exceeded = db.Column(db.Boolean, default=False)
    estimated_effort_hours = db.Column(db.Float, nullable=True)

    analysis_status = db.Column(db.String(20), nullable=False, default="PENDING")
    error_message = db.Column(db.Text, nullable=True)
    attempt_count = db.Column(db.Integer, default=0)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "impact_score": self.impact_score,
            "risk_level": self.risk_level,
            "affected_process_steps": self.affected_process_steps or [],
            "affected_failure_modes": self.affected_failure_modes or [],
            "affected_control_items": self.affected_control_items or [],
            "affected_stakeholders": self.affected_stakeholders or [],
            "dependent_change_ids": self.dependent_change_ids or [],
            "blocking_change_ids": self.blocking_change_ids or [],
            "risk_mitigation_actions": self.risk_mitigation_actions or [],
            "flagged_fields": self.flagged_fields or [],
            "rpn_threshold_exceeded": self.rpn_threshold_exceeded,
            "estimated_effort_hours": self.estimated_effort_hours,
            "analysis_status": self.analysis_status,
            "error_message": self.error_message,
            "attempt_count": self.attempt_count,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ImpactAnalysis event={self.change_event_id} [{self.analysis_status}]>"


class PropagationRule(db.Model):
    __tablename__ = "change_propagation_rules"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=True, index=True, comment="NULL = applies to every project")
    rule_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    source_entity_type = db.Column(db.String(30), nullable=False)
    source_change_type = db.Column(db.String(20), nullable=False)
    source_field_patterns = db.Column(db.JSON, default=list,
                                      comment="Regex list matched against changed fields; empty = any")

    target_entity_type = db.Column(db.String(30), nullable=False)
    target_action = db.Column(db.String(20), nullable=False)
    target_field_mappings = db.Column(db.JSON, default=list, comment="[{source, target}]")
    action_config = db.Column(db.JSON, default=dict,
                              comment="NOTIFY: notification_type, priority, recipient_roles")

    priority = db.Column(db.Integer, nullable=False, default=100, comment="Lower runs first")
    is_active = db.Column(db.Boolean, default=True)
    requires_approval = db.Column(db.Boolean, default=False)

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
            "rule_name": self.rule_name,
            "description": self.description,
            "source_entity_type": self.source_entity_type,
            "source_change_type": self.source_change_type,
            "source_field_patterns": self.source_field_patterns or [],
            "target_entity_type": self.target_entity_type,
            "target_action": self.target_action,
            "target_field_mappings": self.target_field_mappings or [],
            "action_config": self.action_config or {},
            "priority": self.priority,
            "is_active": self.is_active,
            "requires_approval": self.requires_approval,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<PropagationRule {self.id}: {self.rule_name} p={self.priority}>"


class QueuedRuleAction(db.Model):
    __tablename__ = "queued_rule_actions"
    __table_args__ = (
        db.UniqueConstraint("change_event_id", "rule_id", name="uq_queued_action_event_rule"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("change_propagation_rules.id", ondelete="CASCADE"),
                        nullable=False)
    status = db.Column(db.String(20), nullable=False, default="QUEUED")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    rule = db.relationship("PropagationRule")

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "rule_id": self.rule_id,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }


class ReviewFlag(db.Model):
    __tablename__ = "review_flags"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    display_name = db.Column(db.String(500), nullable=True)
    reason = db.Column(db.Text, nullable=False)
    rule_id = db.Column(db.Integer, db.ForeignKey("change_propagation_rules.id", ondelete="SET NULL"),
                        nullable=True)
    change_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="OPEN")
    resolved_by = db.Column(db.String(150), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "display_name": self.display_name,
            "reason": self.reason,
            "rule_id": self.rule_id,
            "change_event_id": self.change_event_id,
            "status": self.status,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ReviewFlag {self.entity_type}#{self.entity_id} [{self.status}]>"
