"""
Process flow domain model.

Models:
    - ProcessFlow: a manufacturing process diagram owned by a project
    - ProcessStep: one operation within a flow (step_number unique per flow)
    - StepConnection: directed edge between two steps
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STEP_TYPES = {"OPERATION", "INSPECTION", "TRANSPORT", "STORAGE", "DELAY", "DECISION"}
CONNECTION_TYPES = {"SEQUENTIAL", "CONDITIONAL", "REWORK", "PARALLEL"}


class ProcessFlow(db.Model):
    __tablename__ = "process_flows"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    version = db.Column(db.String(20), default="1.0")
    status = db.Column(db.String(20), default="DRAFT", comment="DRAFT | ACTIVE | OBSOLETE")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    steps = db.relationship("ProcessStep", backref="flow", lazy="select",
                            order_by="ProcessStep.step_number",
                            cascade="all, delete-orphan", passive_deletes=True)
    connections = db.relationship("StepConnection", backref="flow", lazy="select",
                                  order_by="StepConnection.id",
                                  cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_children:
            d["steps"] = [s.to_dict() for s in self.steps]
            d["connections"] = [c.to_dict() for c in self.connections]
        return d

    def __repr__(self):
        return f"<ProcessFlow {self.id}: {self.name}>"


class ProcessStep(db.Model):
    __tablename__ = "process_steps"
    __table_args__ = (
        db.UniqueConstraint("process_flow_id", "step_number", name="uq_process_step_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_flow_id = db.Column(db.Integer, db.ForeignKey("process_flows.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    step_number = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    step_type = db.Column(db.String(30), default="OPERATION")
    quality_requirements = db.Column(db.Text, nullable=True)
    safety_requirements = db.Column(db.Text, nullable=True)
    position_x = db.Column(db.Float, default=0.0, comment="Diagram canvas coordinate")
    position_y = db.Column(db.Float, default=0.0)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "process_flow_id": self.process_flow_id,
            "step_number": self.step_number,
            "name": self.name,
            "description": self.description,
            "step_type": self.step_type,
            "quality_requirements": self.quality_requirements,
            "safety_requirements": self.safety_requirements,
            "position_x": self.position_x,
            "position_y": self.position_y,
        }

    def __repr__(self):
        return f"<ProcessStep {self.id}: #{self.step_number} {self.name}>"


class StepConnection(db.Model):
    __tablename__ = "step_connections"

    id = db.Column(db.Integer, primary_key=True)
    process_flow_id = db.Column(db.Integer, db.ForeignKey("process_flows.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    source_step_id = db.Column(db.Integer, db.ForeignKey("process_steps.id", ondelete="CASCADE"),
                               nullable=False)
    target_step_id = db.Column(db.Integer, db.ForeignKey("process_steps.id", ondelete="CASCADE"),
                               nullable=False)
    connection_type = db.Column(db.String(20), default="SEQUENTIAL")
    label = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "process_flow_id": self.process_flow_id,
            "source_step_id": self.source_step_id,
            "target_step_id": self.target_step_id,
            "connection_type": self.connection_type,
            "label": self.label,
        }

    def __repr__(self):
        return f"<StepConnection {self.source_step_id}->{self.target_step_id}>"
