"""
Professional Licensing Portal
Assignment domain model.

Models:
    - AutoAssignmentRule: routing configuration per (position type, officer role)
    - AssignmentHistory: append-only ledger of every assignment decision

AssignmentHistory rows are never updated except to flag them inactive
(``deactivate``) or to record the officer's one-time acceptance
(``record_acceptance``). Workload statistics are computed from this table.
"""

from datetime import datetime
from enum import Enum

from app.models import db
from app.models.base import TimestampedModel, as_utc, iso, utcnow


class AssignmentStrategy(str, Enum):
    ROUND_ROBIN = "RoundRobin"
    WORKLOAD_BASED = "WorkloadBased"
    PRIORITY_BASED = "PriorityBased"
    SKILL_BASED = "SkillBased"
    MANUAL = "Manual"


class AssignmentAction(str, Enum):
    AUTO_ASSIGNED = "AutoAssigned"
    MANUALLY_ASSIGNED = "ManuallyAssigned"
    REASSIGNED = "Reassigned"
    UNASSIGNED = "Unassigned"
    TRANSFERRED = "Transferred"


class AutoAssignmentRule(TimestampedModel):
    """
    Routing rule for one (position_type, target_officer_role) pair.

    Lower ``priority`` wins when several active rules match.
    ``last_round_robin_index`` is the RoundRobin cursor; it is always kept
    in ``[0, len(candidates))`` so it wraps rather than growing.
    """

    __tablename__ = "auto_assignment_rules"
    __table_args__ = (
        db.Index("idx_rule_position_role", "position_type", "target_officer_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    position_type = db.Column(db.String(40), nullable=False)
    target_officer_role = db.Column(db.String(40), nullable=False)
    strategy = db.Column(db.String(20), nullable=False, default=AssignmentStrategy.WORKLOAD_BASED.value)
    priority = db.Column(db.Integer, nullable=False, default=100)
    max_workload_per_officer = db.Column(db.Integer, nullable=False, default=50)
    minimum_experience_months = db.Column(db.Integer, nullable=True)
    required_skills = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime(timezone=True), nullable=True)
    effective_to = db.Column(db.DateTime(timezone=True), nullable=True)

    auto_assign_on_submission = db.Column(db.Boolean, nullable=False, default=True)
    send_notification = db.Column(db.Boolean, nullable=False, default=True)

    escalation_time_hours = db.Column(db.Integer, nullable=True)
    escalation_role = db.Column(db.String(40), nullable=True)

    times_applied = db.Column(db.Integer, nullable=False, default=0)
    last_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_round_robin_index = db.Column(db.Integer, nullable=False, default=0)

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        start, end = as_utc(self.effective_from), as_utc(self.effective_to)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "position_type": self.position_type,
            "target_officer_role": self.target_officer_role,
            "strategy": self.strategy,
            "priority": self.priority,
            "max_workload_per_officer": self.max_workload_per_officer,
            "minimum_experience_months": self.minimum_experience_months,
            "required_skills": list(self.required_skills or []),
            "is_active": self.is_active,
            "effective_from": iso(self.effective_from),
            "effective_to": iso(self.effective_to),
            "auto_assign_on_submission": self.auto_assign_on_submission,
            "send_notification": self.send_notification,
            "escalation_time_hours": self.escalation_time_hours,
            "escalation_role": self.escalation_role,
            "times_applied": self.times_applied,
            "last_applied_at": iso(self.last_applied_at),
            "last_round_robin_index": self.last_round_robin_index,
        }

    def __repr__(self):
        return f"<AutoAssignmentRule {self.id}: {self.position_type}/{self.target_officer_role} [{self.strategy}]>"


class AssignmentHistory(db.Model):
    """
    One assignment decision.

    Invariant: at most one active row per (application_id, role_slot).
    """

    __tablename__ = "assignment_history"
    __table_args__ = (
        db.Index("idx_assignment_active_slot", "application_id", "role_slot", "is_active"),
        db.Index("idx_assignment_officer_active", "assigned_to_officer_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    role_slot = db.Column(db.String(40), nullable=False)
    previous_officer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True,
    )
    assigned_to_officer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(db.String(20), nullable=False, comment="AssignmentAction value")
    strategy_used = db.Column(db.String(20), nullable=True, comment="AssignmentStrategy value")
    auto_assignment_rule_id = db.Column(
        db.Integer, db.ForeignKey("auto_assignment_rules.id", ondelete="SET NULL"), nullable=True,
    )
    officer_workload_at_assignment = db.Column(db.Integer, nullable=False, default=0)
    priority_score = db.Column(db.Float, nullable=True)
    application_status_at_assignment = db.Column(db.String(50), nullable=False)
    reason = db.Column(db.String(500), default="")
    assigned_by_officer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True,
        comment="Admin/officer who made a manual decision; NULL for automatic",
    )
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    officer_accepted = db.Column(db.Boolean, nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    inactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assignment_duration_hours = db.Column(db.Float, nullable=True)

    def deactivate(self, at: datetime | None = None) -> None:
        """Flag the row inactive and record how long it was held."""
        at = at or utcnow()
        self.is_active = False
        self.inactivated_at = at
        self.assignment_duration_hours = round(
            (at - as_utc(self.assigned_at)).total_seconds() / 3600, 4,
        )

    def record_acceptance(self, accepted: bool, at: datetime | None = None) -> None:
        if self.officer_accepted is not None:
            raise ValueError(f"Assignment {self.id} already answered")
        self.officer_accepted = accepted
        self.accepted_at = at or utcnow()

    def age_hours(self, now: datetime) -> float:
        return (now - as_utc(self.assigned_at)).total_seconds() / 3600

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "role_slot": self.role_slot,
            "previous_officer_id": self.previous_officer_id,
            "assigned_to_officer_id": self.assigned_to_officer_id,
            "action": self.action,
            "strategy_used": self.strategy_used,
            "auto_assignment_rule_id": self.auto_assignment_rule_id,
            "officer_workload_at_assignment": self.officer_workload_at_assignment,
            "priority_score": self.priority_score,
            "application_status_at_assignment": self.application_status_at_assignment,
            "reason": self.reason,
            "assigned_by_officer_id": self.assigned_by_officer_id,
            "assigned_at": iso(self.assigned_at),
            "officer_accepted": self.officer_accepted,
            "accepted_at": iso(self.accepted_at),
            "is_active": self.is_active,
            "inactivated_at": iso(self.inactivated_at),
            "assignment_duration_hours": self.assignment_duration_hours,
        }

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<AssignmentHistory {self.id}: app={self.application_id} {self.role_slot} -> {self.assigned_to_officer_id} [{state}]>"
