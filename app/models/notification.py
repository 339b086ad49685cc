"""
Change notification outbox model.

Models:
    - ChangeNotification: one enqueued notification for the external
      delivery service; this core only produces PENDING rows
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "CHANGE_CREATED",
    "APPROVAL_REQUIRED",
    "IMPACT_HIGH",
    "PROPAGATION_FAILED",
    "CHANGE_REJECTED",
    "APPROVAL_ESCALATED",
    "RULE_TRIGGERED",
}
NOTIFICATION_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
DELIVERY_STATUSES = {"PENDING", "DELIVERED", "FAILED"}


class ChangeNotification(db.Model):
    __tablename__ = "change_notifications"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    change_event_id = db.Column(db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
                                nullable=True, index=True)
    notification_type = db.Column(db.String(30), nullable=False)
    priority = db.Column(db.String(10), nullable=False, default="MEDIUM")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    recipient_criteria = db.Column(db.JSON, default=dict, comment="{roles: [...], user_ids: [...]}")

    action_required = db.Column(db.Boolean, default=False)
    action_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    delivery_status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_delivered(self):
        self.delivery_status = "DELIVERED"
        self.delivered_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "change_event_id": self.change_event_id,
            "notification_type": self.notification_type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "recipient_criteria": self.recipient_criteria or {},
            "action_required": self.action_required,
            "action_deadline": self.action_deadline.isoformat() if self.action_deadline else None,
            "delivery_status": self.delivery_status,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ChangeNotification {self.id}: {self.notification_type}>"
