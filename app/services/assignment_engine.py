"""
Assignment Engine: picks the officer that fills an application's role slot.

Candidate set:
    active officers of the target role, ordered by (employee_id, id), minus
    those below the matching rule's minimum experience or at/above its
    max workload. Workload is read live from the AssignmentHistory ledger.

Strategies:
    RoundRobin     candidates[cursor % n]; cursor advances and wraps
    WorkloadBased  fewest active assignments, tie → lowest officer id
    PriorityBased  score = (100 - workload) * 10 + experience_months
    SkillBased     score = overlap between rule.required_skills and officer skills
    Manual         caller picks; engine only validates active + role

Every decision appends exactly one AssignmentHistory row and flags the
previously active row of the same slot inactive. The engine only flushes;
the state machine owns the transaction and holds the role-pool lock until
it commits.

Usage:
    engine = AssignmentEngine(settings)
    decision = engine.assign(application, "assistant_engineer")
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import select

from app.config import WorkflowSettings
from app.core.exceptions import (
    InvalidAssignmentTargetError,
    NoEligibleOfficerError,
    ValidationError,
)
from app.models import db
from app.models.application import Application
from app.models.assignment import (
    AssignmentAction,
    AssignmentHistory,
    AssignmentStrategy,
    AutoAssignmentRule,
)
from app.models.base import utcnow
from app.models.officer import Officer, OfficerRole, role_for_slot
from app.services import audit_service

logger = logging.getLogger(__name__)

_PRIORITY_WORKLOAD_CEILING = 100


@dataclass
class Candidate:
    officer: Officer
    workload: int


@dataclass
class AssignmentDecision:
    """Outcome of one assignment call."""

    application_id: int
    role_slot: str
    role: str
    officer_id: int
    previous_officer_id: int | None
    history_id: int
    action: str
    strategy: str
    rule_id: int | None
    workload_before: int
    priority_score: float | None = None
    notify: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class AssignmentEngine:
    """Officer selection and ledger bookkeeping."""

    def __init__(self, settings: WorkflowSettings) -> None:
        self._settings = settings

    # ── Rule lookup ──────────────────────────────────────────────────────

    def find_rule(
        self,
        position_type: str,
        role: str | OfficerRole,
        now: datetime | None = None,
        *,
        lock: bool = False,
    ) -> AutoAssignmentRule | None:
        """Highest-priority (lowest number) effective rule for the pair.

        With ``lock=True`` the rule row is read FOR UPDATE so the RoundRobin
        cursor is serialised across processes on databases that support it.
        """
        now = now or utcnow()
        stmt = (
            select(AutoAssignmentRule)
            .where(
                AutoAssignmentRule.position_type == str(position_type),
                AutoAssignmentRule.target_officer_role == OfficerRole(role).value,
                AutoAssignmentRule.is_active.is_(True),
            )
            .order_by(AutoAssignmentRule.priority, AutoAssignmentRule.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        for rule in db.session.scalars(stmt):
            if rule.is_effective(now):
                return rule
        return None

    def target_role(self, application: Application, slot: str) -> OfficerRole:
        return role_for_slot(slot, application.position_type)

    def pool_role(
        self,
        application: Application,
        slot: str,
        escalation_rule: AutoAssignmentRule | None = None,
    ) -> OfficerRole:
        """Role whose officers the next decision for *slot* is drawn from."""
        if escalation_rule is not None:
            return OfficerRole(escalation_rule.escalation_role)
        return self.target_role(application, slot)

    def escalation_rule_for(
        self,
        application: Application,
        slot: str,
        rule_id: int | None = None,
        now: datetime | None = None,
    ) -> AutoAssignmentRule:
        """Rule whose escalation settings apply to *slot* of *application*."""
        if rule_id is not None:
            rule = db.session.get(AutoAssignmentRule, int(rule_id))
        else:
            rule = self.find_rule(application.position_type, self.target_role(application, slot), now)
        if rule is None or not rule.escalation_role:
            raise ValidationError(
                f"No escalation rule configured for slot '{slot}'",
                details={"slot": slot, "rule_id": rule_id},
            )
        return rule

    # ── Candidates ───────────────────────────────────────────────────────

    def eligible_candidates(
        self,
        role: str | OfficerRole,
        rule: AutoAssignmentRule | None,
        *,
        relaxed: bool = False,
        exclude_officer_id: int | None = None,
    ) -> list[Candidate]:
        """Active officers of *role* that pass the rule's constraints.

        ``relaxed`` drops the experience and workload constraints (used by
        escalation as a last resort).
        """
        officers = db.session.scalars(
            select(Officer)
            .where(Officer.role == OfficerRole(role).value, Officer.is_active.is_(True))
            .order_by(Officer.employee_id, Officer.id)
        ).all()
        workloads = audit_service.workloads_for(o.id for o in officers)

        max_workload = rule.max_workload_per_officer if rule else self._settings.default_max_workload
        min_experience = rule.minimum_experience_months if rule else None

        candidates = []
        for officer in officers:
            if officer.id == exclude_officer_id:
                continue
            workload = workloads.get(officer.id, 0)
            if not relaxed:
                if min_experience is not None and (officer.experience_months or 0) < min_experience:
                    continue
                if max_workload is not None and workload >= max_workload:
                    continue
            candidates.append(Candidate(officer, workload))
        return candidates

    # ── Strategies ───────────────────────────────────────────────────────

    @staticmethod
    def _by_workload(candidates: list[Candidate]) -> Candidate:
        return min(candidates, key=lambda c: (c.workload, c.officer.id))

    @staticmethod
    def _round_robin(candidates: list[Candidate], rule: AutoAssignmentRule | None) -> Candidate:
        if rule is None:
            raise ValidationError("RoundRobin assignment requires an AutoAssignmentRule to hold the cursor")
        index = (rule.last_round_robin_index or 0) % len(candidates)
        rule.last_round_robin_index = (index + 1) % len(candidates)
        return candidates[index]

    @staticmethod
    def priority_score(candidate: Candidate) -> float:
        return float(
            (_PRIORITY_WORKLOAD_CEILING - candidate.workload) * 10
            + (candidate.officer.experience_months or 0)
        )

    @staticmethod
    def skill_score(candidate: Candidate, rule: AutoAssignmentRule | None) -> float:
        required = {s.strip().lower() for s in ((rule.required_skills if rule else None) or []) if s}
        return float(len(required & candidate.officer.skill_set))

    def select(
        self,
        strategy: AssignmentStrategy,
        candidates: list[Candidate],
        rule: AutoAssignmentRule | None,
    ) -> tuple[Candidate, float | None]:
        if strategy == AssignmentStrategy.ROUND_ROBIN:
            return self._round_robin(candidates, rule), None
        if strategy == AssignmentStrategy.WORKLOAD_BASED:
            return self._by_workload(candidates), None
        if strategy == AssignmentStrategy.PRIORITY_BASED:
            chosen = min(candidates, key=lambda c: (-self.priority_score(c), c.workload, c.officer.id))
            return chosen, self.priority_score(chosen)
        if strategy == AssignmentStrategy.SKILL_BASED:
            chosen = min(candidates, key=lambda c: (-self.skill_score(c, rule), c.workload, c.officer.id))
            return chosen, self.skill_score(chosen, rule)
        raise ValidationError(f"Strategy {strategy.value} cannot select an officer automatically")

    # ── Public operations ────────────────────────────────────────────────

    def assign(
        self,
        application: Application,
        slot: str,
        *,
        strategy_override: str | None = None,
        reason: str = "",
        now: datetime | None = None,
    ) -> AssignmentDecision:
        """Automatically fill *slot* using the rule's (or overridden) strategy."""
        now = now or utcnow()
        role = self.target_role(application, slot)
        rule = self.find_rule(application.position_type, role, now, lock=True)
        try:
            strategy = AssignmentStrategy(
                strategy_override or (rule.strategy if rule else self._settings.default_strategy)
            )
        except ValueError as exc:
            raise ValidationError(f"Unknown assignment strategy: {strategy_override}") from exc
        if strategy == AssignmentStrategy.MANUAL:
            raise ValidationError("Manual assignment requires an officer_id")

        current = audit_service.active_assignment(application.id, slot)
        candidates = self.eligible_candidates(
            role, rule, exclude_officer_id=current.assigned_to_officer_id if current else None,
        )
        if not candidates:
            raise NoEligibleOfficerError(
                role.value,
                "no active officer within the rule's workload/experience limits",
            )

        chosen, score = self.select(strategy, candidates, rule)
        if rule is not None:
            rule.times_applied = (rule.times_applied or 0) + 1
            rule.last_applied_at = now

        return self._record(
            application, slot, role, chosen.officer,
            action=AssignmentAction.REASSIGNED if current else AssignmentAction.AUTO_ASSIGNED,
            strategy=strategy,
            rule=rule,
            workload=chosen.workload,
            score=score,
            reason=reason or f"{strategy.value} assignment",
            assigned_by=None,
            now=now,
        )

    def assign_manual(
        self,
        application: Application,
        slot: str,
        officer_id: int,
        *,
        actor_officer_id: int | None = None,
        reason: str = "",
        now: datetime | None = None,
    ) -> AssignmentDecision:
        """Record a caller-chosen officer after validating eligibility."""
        now = now or utcnow()
        role = self.target_role(application, slot)
        officer = db.session.get(Officer, officer_id)
        if officer is None:
            raise InvalidAssignmentTargetError(officer_id, "officer does not exist")
        if not officer.is_active:
            raise InvalidAssignmentTargetError(officer_id, "officer is inactive")
        if officer.role != role.value:
            raise InvalidAssignmentTargetError(
                officer_id, f"officer role {officer.role} does not match required role {role.value}",
            )

        current = audit_service.active_assignment(application.id, slot)
        return self._record(
            application, slot, role, officer,
            action=AssignmentAction.REASSIGNED if current else AssignmentAction.MANUALLY_ASSIGNED,
            strategy=AssignmentStrategy.MANUAL,
            rule=None,
            workload=audit_service.workload_of(officer.id),
            score=None,
            reason=reason or "Manual assignment",
            assigned_by=actor_officer_id,
            now=now,
        )

    def escalate(
        self,
        application: Application,
        slot: str,
        rule: AutoAssignmentRule,
        *,
        now: datetime | None = None,
    ) -> AssignmentDecision:
        """Transfer *slot* to the least-loaded officer of the rule's escalation role.

        Tries the escalation role's own rule constraints first, then relaxes
        them; raises NoEligibleOfficerError if nobody is left.
        """
        now = now or utcnow()
        role = self.pool_role(application, slot, rule)
        current = audit_service.active_assignment(application.id, slot)
        exclude = current.assigned_to_officer_id if current else None

        role_rule = self.find_rule(application.position_type, role, now)
        candidates = self.eligible_candidates(role, role_rule, exclude_officer_id=exclude)
        if not candidates:
            candidates = self.eligible_candidates(role, None, relaxed=True, exclude_officer_id=exclude)
        if not candidates:
            raise NoEligibleOfficerError(role.value, "escalation found no officer even after relaxing constraints")

        chosen = self._by_workload(candidates)
        hours = rule.escalation_time_hours
        return self._record(
            application, slot, role, chosen.officer,
            action=AssignmentAction.TRANSFERRED,
            strategy=AssignmentStrategy.WORKLOAD_BASED,
            rule=rule,
            workload=chosen.workload,
            score=None,
            reason=f"Escalated: no response within {hours}h" if hours else "Escalated",
            assigned_by=None,
            now=now,
        )

    def unassign(
        self,
        application: Application,
        slot: str,
        *,
        actor_officer_id: int | None = None,
        reason: str = "",
        now: datetime | None = None,
    ) -> AssignmentHistory:
        """Deactivate the slot's active row and append an Unassigned event."""
        now = now or utcnow()
        current = audit_service.active_assignment(application.id, slot)
        if current is None:
            raise ValidationError(f"Slot '{slot}' has no active assignment")
        current.deactivate(now)
        event = AssignmentHistory(
            application_id=application.id,
            role_slot=slot,
            previous_officer_id=current.assigned_to_officer_id,
            assigned_to_officer_id=current.assigned_to_officer_id,
            action=AssignmentAction.UNASSIGNED.value,
            officer_workload_at_assignment=audit_service.workload_of(current.assigned_to_officer_id),
            application_status_at_assignment=application.status,
            reason=reason or "Unassigned",
            assigned_by_officer_id=actor_officer_id,
            assigned_at=now,
            is_active=False,
            inactivated_at=now,
            assignment_duration_hours=0.0,
        )
        db.session.add(event)
        application.set_slot_officer(slot, None)
        db.session.flush()
        return event

    def release_slots(self, application: Application, *, keep_slot: str | None = None,
                      now: datetime | None = None) -> list[AssignmentHistory]:
        """Flag every active row of *application* inactive except *keep_slot*'s."""
        now = now or utcnow()
        released = []
        for row in audit_service.active_assignments(application.id):
            if row.role_slot == keep_slot:
                continue
            row.deactivate(now)
            released.append(row)
        return released

    # ── Ledger write ─────────────────────────────────────────────────────

    def _record(
        self,
        application: Application,
        slot: str,
        role: OfficerRole,
        officer: Officer,
        *,
        action: AssignmentAction,
        strategy: AssignmentStrategy,
        rule: AutoAssignmentRule | None,
        workload: int,
        score: float | None,
        reason: str,
        assigned_by: int | None,
        now: datetime,
    ) -> AssignmentDecision:
        previous = audit_service.active_assignment(application.id, slot)
        previous_officer_id = previous.assigned_to_officer_id if previous else None
        if previous is not None:
            previous.deactivate(now)

        row = AssignmentHistory(
            application_id=application.id,
            role_slot=slot,
            previous_officer_id=previous_officer_id,
            assigned_to_officer_id=officer.id,
            action=action.value,
            strategy_used=strategy.value,
            auto_assignment_rule_id=rule.id if rule else None,
            officer_workload_at_assignment=workload,
            priority_score=score,
            application_status_at_assignment=application.status,
            reason=reason[:500],
            assigned_by_officer_id=assigned_by,
            assigned_at=now,
            is_active=True,
        )
        db.session.add(row)
        application.set_slot_officer(slot, officer.id)
        db.session.flush()

        logger.info(
            "Application %s slot %s → officer %s (%s, %s)",
            application.id, slot, officer.id, action.value, strategy.value,
            extra={
                "application_id": application.id,
                "officer_id": officer.id,
                "event_type": "assignment",
            },
        )
        return AssignmentDecision(
            application_id=application.id,
            role_slot=slot,
            role=role.value,
            officer_id=officer.id,
            previous_officer_id=previous_officer_id,
            history_id=row.id,
            action=action.value,
            strategy=strategy.value,
            rule_id=rule.id if rule else None,
            workload_before=workload,
            priority_score=score,
            notify=rule.send_notification if rule else True,
        )
