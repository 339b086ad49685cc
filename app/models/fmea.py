"""
FMEA domain model.

Models:
    - Fmea: Failure Mode and Effects Analysis worksheet owned by a project
    - FailureMode: one way an item/function can fail (carries severity)
    - FailureEffect: consequence of a failure mode
    - FailureCause: mechanism behind a failure mode (carries occurrence)
    - FailureControl: prevention/detection control for a cause (carries detection)
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

FMEA_TYPES = {"PROCESS", "DESIGN", "SYSTEM"}
CONTROL_TYPES = {"PREVENTION", "DETECTION"}
EFFECT_TYPES = {"LOCAL", "NEXT_LEVEL", "END_USER"}


class Fmea(db.Model):
    __tablename__ = "fmeas"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    fmea_number = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    fmea_type = db.Column(db.String(20), default="PROCESS")
    rpn_threshold = db.Column(db.Integer, default=100,
                              comment="RPN above which a failure mode needs action")
    severity_threshold = db.Column(db.Integer, default=7)
    status = db.Column(db.String(20), default="DRAFT")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    failure_modes = db.relationship("FailureMode", backref="fmea", lazy="select",
                                    order_by="FailureMode.id",
                                    cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "fmea_number": self.fmea_number,
            "title": self.title,
            "fmea_type": self.fmea_type,
            "rpn_threshold": self.rpn_threshold,
            "severity_threshold": self.severity_threshold,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Fmea {self.id}: {self.fmea_number}>"


class FailureMode(db.Model):
    __tablename__ = "failure_modes"

    id = db.Column(db.Integer, primary_key=True)
    fmea_id = db.Column(db.Integer, db.ForeignKey("fmeas.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    primary_process_step_id = db.Column(
        db.Integer, db.ForeignKey("process_steps.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    item_function = db.Column(db.String(500), nullable=False)
    failure_mode = db.Column(db.String(500), nullable=False)
    severity_rating = db.Column(db.Integer, nullable=False, default=1, comment="1-10")
    special_characteristic = db.Column(db.Boolean, default=False)

    effects = db.relationship("FailureEffect", backref="mode", lazy="select",
                              order_by="FailureEffect.id",
                              cascade="all, delete-orphan", passive_deletes=True)
    causes = db.relationship("FailureCause", backref="mode", lazy="select",
                             order_by="FailureCause.id",
                             cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "fmea_id": self.fmea_id,
            "primary_process_step_id": self.primary_process_step_id,
            "item_function": self.item_function,
            "failure_mode": self.failure_mode,
            "severity_rating": self.severity_rating,
            "special_characteristic": self.special_characteristic,
        }

    def __repr__(self):
        return f"<FailureMode {self.id}: S={self.severity_rating}>"


class FailureEffect(db.Model):
    __tablename__ = "failure_effects"

    id = db.Column(db.Integer, primary_key=True)
    failure_mode_id = db.Column(db.Integer, db.ForeignKey("failure_modes.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    effect_description = db.Column(db.Text, nullable=False)
    effect_type = db.Column(db.String(20), default="LOCAL")
    safety_impact = db.Column(db.Boolean, default=False)
    regulatory_impact = db.Column(db.Boolean, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "failure_mode_id": self.failure_mode_id,
            "effect_description": self.effect_description,
            "effect_type": self.effect_type,
            "safety_impact": self.safety_impact,
            "regulatory_impact": self.regulatory_impact,
        }


class FailureCause(db.Model):
    __tablename__ = "failure_causes"

    id = db.Column(db.Integer, primary_key=True)
    failure_mode_id = db.Column(db.Integer, db.ForeignKey("failure_modes.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    cause_description = db.Column(db.Text, nullable=False)
    occurrence_rating = db.Column(db.Integer, nullable=False, default=1, comment="1-10")

    controls = db.relationship("FailureControl", backref="cause", lazy="select",
                               order_by="FailureControl.id",
                               cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "failure_mode_id": self.failure_mode_id,
            "cause_description": self.cause_description,
            "occurrence_rating": self.occurrence_rating,
        }


class FailureControl(db.Model):
    __tablename__ = "failure_controls"

    id = db.Column(db.Integer, primary_key=True)
    failure_cause_id = db.Column(db.Integer, db.ForeignKey("failure_causes.id", ondelete="CASCADE"),
                                 nullable=False, index=True)
    process_step_id = db.Column(db.Integer, db.ForeignKey("process_steps.id", ondelete="SET NULL"),
                                nullable=True)
    control_description = db.Column(db.Text, nullable=False)
    control_type = db.Column(db.String(20), nullable=False, default="DETECTION",
                             comment="PREVENTION | DETECTION")
    detection_rating = db.Column(db.Integer, nullable=False, default=10, comment="1-10")

    def to_dict(self):
        return {
            "id": self.id,
            "failure_cause_id": self.failure_cause_id,
            "process_step_id": self.process_step_id,
            "control_description": self.control_description,
            "control_type": self.control_type,
            "detection_rating": self.detection_rating,
        }
