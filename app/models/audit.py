"""
Professional Licensing Portal
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.

Every application status change is written here inside the same
transaction as the change itself, so the trail can be replayed to
reconstruct the current status (see app.services.audit_service).
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "application", "assignment", "assignment_rule",
    "officer", "workflow_transition",
}

# Status-change actions are "application.<WorkflowAction value>".
AUDIT_ACTIONS = {
    "application.create",
    "assignment.unassign",
    "assignment.accept",
    "assignment.decline",
    "assignment_rule.create",
    "assignment_rule.update",
    "officer.create",
    "officer.update",
    "workflow_transition.seed",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries old→new snapshot
    for field-level changes (``{"status": {"old": ..., "new": ...}}``).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_officer_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="application | assignment | assignment_rule | officer | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="application.Submit | application.Reject | assignment.unassign | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Officer employee id, 'applicant' or 'system'",
    )
    actor_officer_id = db.Column(
        db.Integer,
        db.ForeignKey("officers.id", ondelete="SET NULL"),
        nullable=True,
    )
    comment = db.Column(db.Text, default="")

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}}",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        ts = self.timestamp
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_officer_id": self.actor_officer_id,
            "comment": self.comment,
            "diff": self.diff,
            "timestamp": ts.isoformat() if ts else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    actor_officer_id: int | None = None,
    comment: str = "",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS and not (entity_type == "application" and action.startswith("application.")):
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_officer_id=actor_officer_id,
        comment=comment or "",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
