"""
Professional Licensing Portal
Notification Service.

NotificationService: storing and reading in-app notifications.
NotificationDispatcher: fire-and-forget ``notify(recipient, type, payload)``
called by the orchestrator after a transition has committed. A dispatch
failure is logged and never reaches the workflow.
"""

import logging

from sqlalchemy import select

from app.models import db
from app.models.notification import Notification

logger = logging.getLogger(__name__)

# notification_type → (title template, category, severity)
NOTIFICATION_TEMPLATES = {
    "assignment.new": ("Application {application_number} assigned to you", "assignment", "info"),
    "assignment.escalated": ("Application {application_number} escalated to you", "escalation", "warning"),
    "application.rejected": ("Application {application_number} was rejected", "workflow", "warning"),
    "application.status": ("Application {application_number} is now {status}", "workflow", "info"),
    "application.completed": ("Application {application_number} completed", "workflow", "success"),
    "escalation.failed": ("Escalation failed for application {application_id}", "escalation", "error"),
}


class NotificationService:
    """Stateless persistence helpers; ``create`` flushes, callers commit."""

    @staticmethod
    def create(*, title, recipient="admin", notification_type="system", message="",
               category="workflow", severity="info", payload=None, application_id=None,
               dedup_key=None):
        """
        Add one notification.

        With ``dedup_key`` an unread notification carrying the same key is
        returned as is; once read, the next call raises a fresh one.
        """
        if dedup_key:
            existing = db.session.scalars(
                select(Notification).where(
                    Notification.dedup_key == dedup_key,
                    Notification.is_read.is_(False),
                )
            ).first()
            if existing is not None:
                return existing
        notif = Notification(
            recipient=recipient,
            notification_type=notification_type,
            title=title[:300],
            message=message,
            category=category,
            severity=severity,
            payload=payload or {},
            application_id=application_id,
            dedup_key=dedup_key,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50):
        """Newest first."""
        q = select(Notification).where(Notification.recipient == recipient)
        if unread_only:
            q = q.where(Notification.is_read.is_(False))
        return db.session.scalars(q.order_by(Notification.id.desc()).limit(limit)).all()


class NotificationDispatcher:
    """Turns workflow events into notifications, one commit per event."""

    def notify(self, recipient, notification_type, payload=None):
        payload = dict(payload or {})
        template, category, severity = NOTIFICATION_TEMPLATES.get(
            notification_type, ("{notification_type}", "system", "info"),
        )
        try:
            notif = NotificationService.create(
                title=template.format_map(_Defaulting(payload, notification_type=notification_type)),
                recipient=recipient or "admin",
                notification_type=notification_type,
                message=payload.get("message", ""),
                category=category,
                severity=severity,
                payload=payload,
                application_id=payload.get("application_id"),
                dedup_key=payload.get("dedup_key"),
            )
            db.session.commit()
            return notif
        except Exception:
            db.session.rollback()
            logger.exception(
                "Notification %s to %s failed", notification_type, recipient,
                extra={"event_type": "notification_failed",
                       "application_id": payload.get("application_id")},
            )
            return None


class _Defaulting(dict):
    """Template values; unknown placeholders render as '?'."""

    def __missing__(self, key):
        return "?"
