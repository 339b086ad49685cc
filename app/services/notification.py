"""
Change Notification Service.

Produces ``ChangeNotification`` outbox rows for the external delivery
service. Nothing here sends anything; ``enqueue`` only adds and flushes so
the row commits (or rolls back) with the change that caused it.
"""

import logging

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.notification import (
    DELIVERY_STATUSES,
    NOTIFICATION_PRIORITIES,
    NOTIFICATION_TYPES,
    ChangeNotification,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for change notification records."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def enqueue(*, project_id, notification_type, title, message="", priority="MEDIUM",
                change_event_id=None, roles=None, user_ids=None,
                action_required=False, action_deadline=None):
        """
        Add a PENDING notification to the outbox.

        Returns:
            The ChangeNotification instance (flushed, not committed).
        """
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification_type {notification_type!r}")
        if priority not in NOTIFICATION_PRIORITIES:
            raise ValidationError(f"Unknown priority {priority!r}")

        notif = ChangeNotification(
            project_id=project_id,
            change_event_id=change_event_id,
            notification_type=notification_type,
            priority=priority,
            title=title[:300],
            message=message,
            recipient_criteria={"roles": list(roles or []), "user_ids": list(user_ids or [])},
            action_required=action_required,
            action_deadline=action_deadline,
        )
        db.session.add(notif)
        db.session.flush()
        logger.debug("Enqueued %s notification for event %s", notification_type, change_event_id,
                     extra={"project_id": project_id, "change_event_id": change_event_id})
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_project(project_id, *, status=None, notification_type=None, limit=50, offset=0):
        """Return (items, total) for a project, newest first."""
        q = ChangeNotification.query.filter_by(project_id=project_id)
        if status:
            if status not in DELIVERY_STATUSES:
                raise ValidationError(f"Unknown delivery status {status!r}")
            q = q.filter_by(delivery_status=status)
        if notification_type:
            q = q.filter_by(notification_type=notification_type)
        total = q.count()
        items = q.order_by(ChangeNotification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    # ── Delivery acknowledgement ──────────────────────────────────────────

    @staticmethod
    def mark_delivered(notification_id):
        notif = db.session.get(ChangeNotification, notification_id)
        if notif is None:
            raise NotFoundError("ChangeNotification", notification_id)
        notif.mark_delivered()
        db.session.commit()
        return notif
