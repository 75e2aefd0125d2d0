"""
Professional Licensing Portal
Notification model.

One row per recipient per workflow event (assignment, rejection,
completion, escalation). Standing alerts carry a ``dedup_key`` so the
same unread alert is never raised twice.
"""

from app.models import db
from app.models.base import iso, utcnow


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("idx_notification_recipient_unread", "recipient", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(200), nullable=False, default="admin",
                          comment="Officer email, applicant email or 'admin'")
    notification_type = db.Column(db.String(50), nullable=False, default="system",
                                  comment="assignment.new | application.rejected | escalation.failed | …")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, default="workflow")
    severity = db.Column(db.String(20), nullable=False, default="info")
    payload = db.Column(db.JSON, default=dict)
    dedup_key = db.Column(db.String(120), nullable=True, index=True)

    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=True, index=True,
    )

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def mark_read(self, now=None):
        if not self.is_read:
            self.is_read = True
            self.read_at = now or utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "notification_type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "payload": self.payload or {},
            "application_id": self.application_id,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        state = "read" if self.is_read else "unread"
        return f"<Notification {self.id}: {self.notification_type} -> {self.recipient} [{state}]>"
