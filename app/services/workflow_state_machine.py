"""
Workflow State Machine: the authoritative (status, action) → status table.

Transition(application_id, action, actor) runs as one unit:

    1. per-application guard (fail fast → ConcurrentModification)
    2. re-read the application; optional expected_version check
    3. terminal / table lookup → IllegalTransition
    4. mandatory comment check → ValidationError
    5. stage side records (appointment, document, signature, payment…)
    6. gates → GateNotSatisfied
    7. assignment under the role-pool guard, before the status changes
    8. release stale slots, set status, audit row, commit

Any failure rolls the whole unit back, so callers only ever observe the
old or the new status. A StaleDataError from the version column at
commit time (another process won the race) becomes
ConcurrentModification.

The transition table lives in ``workflow_transitions`` and is read on
every call; ``seed_transitions`` fills it from DEFAULT_TRANSITIONS or a
YAML/JSON file.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime

import yaml
from sqlalchemy import delete, func, select
from sqlalchemy.orm.exc import StaleDataError

from app.config import WorkflowSettings
from app.core.exceptions import (
    ConcurrentModificationError,
    GateNotSatisfiedError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.application import Application
from app.models.assignment import AutoAssignmentRule
from app.models.audit import write_audit
from app.models.base import utcnow
from app.models.officer import ROLE_SLOTS
from app.models.workflow import (
    DEFAULT_TRANSITIONS,
    OWNING_SLOT,
    SIGNATURE_STAGE_BY_STATUS,
    ApplicationStatus,
    WorkflowAction,
    WorkflowTransition,
    is_terminal,
)
from app.services import audit_service, stage_records
from app.services.assignment_engine import AssignmentDecision, AssignmentEngine
from app.services.gates import evaluate_gates, parse_gate
from app.services.workflow_locks import application_guard, role_pool_guard

logger = logging.getLogger(__name__)

_STATUSES = {s.value for s in ApplicationStatus}
_ACTIONS = {a.value for a in WorkflowAction}


@dataclass(frozen=True)
class TransitionRule:
    from_status: str
    action: str
    to_status: str
    assign_slot: str | None = None
    gates: tuple = ()
    requires_comment: bool = False

    @classmethod
    def from_row(cls, row: WorkflowTransition) -> "TransitionRule":
        return cls(
            from_status=row.from_status,
            action=row.action,
            to_status=row.to_status,
            assign_slot=row.assign_slot,
            gates=tuple(row.gates or ()),
            requires_comment=bool(row.requires_comment),
        )

    @property
    def is_self_loop(self) -> bool:
        return self.from_status == self.to_status


@dataclass
class TransitionOutcome:
    application_id: int
    action: str
    old_status: str
    new_status: str
    version: int
    assignment: AssignmentDecision | None = None
    released_assignment_ids: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "application_id": self.application_id,
            "action": self.action,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "version": self.version,
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "released_assignment_ids": list(self.released_assignment_ids),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════


class TransitionTable:
    """Read access to the active rows of ``workflow_transitions``."""

    @staticmethod
    def lookup(from_status: str, action: str) -> TransitionRule | None:
        row = db.session.scalars(
            select(WorkflowTransition).where(
                WorkflowTransition.from_status == from_status,
                WorkflowTransition.action == action,
                WorkflowTransition.is_active.is_(True),
            )
        ).first()
        return TransitionRule.from_row(row) if row else None

    @staticmethod
    def rules_from(from_status: str) -> list[TransitionRule]:
        rows = db.session.scalars(
            select(WorkflowTransition)
            .where(
                WorkflowTransition.from_status == from_status,
                WorkflowTransition.is_active.is_(True),
            )
            .order_by(WorkflowTransition.id)
        ).all()
        return [TransitionRule.from_row(r) for r in rows]

    @staticmethod
    def all_rules() -> list[WorkflowTransition]:
        return db.session.scalars(
            select(WorkflowTransition).order_by(WorkflowTransition.from_status, WorkflowTransition.id)
        ).all()


def validate_transition_rows(rows) -> list[dict]:
    """Normalise seed rows and reject unknown statuses, actions, slots or gates."""
    if not isinstance(rows, list):
        raise ValidationError("Transition seed must be a list of rows")
    seen = set()
    clean = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise ValidationError(f"Transition row {index} is not a mapping")
        frm, action, to = row.get("from_status"), row.get("action"), row.get("to_status")
        errors = {}
        if frm not in _STATUSES:
            errors["from_status"] = frm
        if to not in _STATUSES:
            errors["to_status"] = to
        if action not in _ACTIONS:
            errors["action"] = action
        elif action == WorkflowAction.REQUEST_SIGNATURE.value and to not in SIGNATURE_STAGE_BY_STATUS:
            errors["to_status"] = to
        slot = row.get("assign_slot") or None
        if slot is not None and slot not in ROLE_SLOTS:
            errors["assign_slot"] = slot
        gates = list(row.get("gates") or [])
        for token in gates:
            try:
                parse_gate(token)
            except ValueError:
                errors.setdefault("gates", []).append(token)
        if errors:
            raise ValidationError(f"Invalid transition row {index}", details=errors)
        if (frm, action) in seen:
            raise ValidationError(
                f"Duplicate transition {frm} --{action}-->", details={"row": index},
            )
        seen.add((frm, action))
        clean.append({
            "from_status": frm,
            "action": action,
            "to_status": to,
            "assign_slot": slot,
            "gates": gates,
            "requires_comment": bool(row.get("requires_comment", False)),
            "is_active": bool(row.get("is_active", True)),
            "description": row.get("description", ""),
        })
    return clean


def load_transition_rows(path: str) -> list[dict]:
    """Read seed rows from a YAML (or JSON) file: a list or ``{transitions: [...]}``."""
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict):
        data = data.get("transitions")
    return validate_transition_rows(data)


def seed_transitions(rows: list[dict] | None = None, *, replace: bool = False) -> int:
    """Insert transition rows. Without ``replace`` an already-seeded table is left alone.

    Returns the number of rows written; the caller commits.
    """
    clean = validate_transition_rows(DEFAULT_TRANSITIONS if rows is None else rows)
    existing = db.session.scalar(select(func.count(WorkflowTransition.id))) or 0
    if existing and not replace:
        return 0
    if existing:
        db.session.execute(delete(WorkflowTransition))
    for row in clean:
        db.session.add(WorkflowTransition(**row))
    write_audit(
        entity_type="workflow_transition",
        entity_id="*",
        action="workflow_transition.seed",
        diff={"rows": {"old": existing, "new": len(clean)}},
    )
    logger.info("Seeded %d workflow transitions (replaced %d)", len(clean), existing)
    return len(clean)


# ═════════════════════════════════════════════════════════════════════════════
# State machine
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStateMachine:
    """Validates and applies every status change of an application."""

    def __init__(self, engine: AssignmentEngine, settings: WorkflowSettings) -> None:
        self.engine = engine
        self.settings = settings

    def rule_for(self, application: Application, action: str) -> TransitionRule:
        """Return the rule for *action* from the current status or raise IllegalTransition."""
        if is_terminal(application.status):
            raise IllegalTransitionError(application.status, action, "application is closed")
        rule = TransitionTable.lookup(application.status, action)
        if rule is None:
            raise IllegalTransitionError(application.status, action)
        return rule

    def available_actions(self, application: Application) -> list[dict]:
        """Actions legal from the current status, with their gate results."""
        if is_terminal(application.status):
            return []
        result = []
        for rule in TransitionTable.rules_from(application.status):
            gates = evaluate_gates(application.id, rule.gates)
            result.append({
                "action": rule.action,
                "to_status": rule.to_status,
                "assign_slot": rule.assign_slot,
                "requires_comment": rule.requires_comment,
                "gates": [g.to_dict() for g in gates],
                "ready": all(g.satisfied for g in gates),
            })
        return result

    def transition(
        self,
        application_id: int,
        action: str,
        actor_officer_id: int | None = None,
        *,
        payload: dict | None = None,
        comment: str = "",
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        payload = payload or {}
        comment = (comment or "").strip()

        with application_guard(application_id, timeout=self.settings.lock_timeout_seconds):
            try:
                return self._apply(
                    application_id, action, actor_officer_id,
                    payload=payload, comment=comment,
                    expected_version=expected_version, now=now or utcnow(),
                )
            except StaleDataError as exc:
                db.session.rollback()
                logger.warning(
                    "Stale write on application %s during %s", application_id, action,
                    extra={"application_id": application_id, "action": action,
                           "event_type": "stale_version"},
                )
                raise ConcurrentModificationError(
                    application_id, "application was modified by another writer",
                ) from exc
            except Exception:
                db.session.rollback()
                raise

    def _apply(
        self,
        application_id: int,
        action: str,
        actor_officer_id: int | None,
        *,
        payload: dict,
        comment: str,
        expected_version: int | None,
        now: datetime,
    ) -> TransitionOutcome:
        application = db.session.get(Application, application_id, populate_existing=True)
        if application is None:
            raise NotFoundError(resource="Application", resource_id=application_id)
        if expected_version is not None and application.version != int(expected_version):
            raise ConcurrentModificationError(
                application_id,
                f"expected version {expected_version}, found {application.version}",
            )

        rule = self.rule_for(application, action)
        if rule.requires_comment and not comment:
            raise ValidationError(f"A comment is required for {action}")

        old_status = application.status
        stage_records.apply_action_effects(
            application, rule.action, rule.to_status,
            payload=payload,
            actor_officer_id=actor_officer_id,
            comment=comment,
            settings=self.settings,
            now=now,
        )
        db.session.flush()

        for result in evaluate_gates(application.id, rule.gates):
            if not result.satisfied:
                raise GateNotSatisfiedError(result.gate, result.reason)

        decision = None
        with ExitStack() as stack:
            if rule.assign_slot:
                esc_rule = None
                if rule.action == WorkflowAction.ESCALATE:
                    esc_rule = self.engine.escalation_rule_for(
                        application, rule.assign_slot, payload.get("rule_id"), now,
                    )
                # lock the pool the officer is actually drawn from
                role = self.engine.pool_role(application, rule.assign_slot, esc_rule)
                stack.enter_context(role_pool_guard(
                    role.value, application_id,
                    timeout=self.settings.role_pool_lock_timeout_seconds,
                ))
                decision = self._assign(
                    application, rule, payload, actor_officer_id, comment, now, esc_rule,
                )

            keep = OWNING_SLOT.get(rule.to_status)
            released = self.engine.release_slots(application, keep_slot=keep, now=now)

            application.status = rule.to_status
            if not rule.is_self_loop:
                application.status_changed_at = now
            extra = {"assignment": decision.to_dict()} if decision else None
            audit_service.record_status_change(
                application,
                old_status=old_status,
                new_status=rule.to_status,
                action=rule.action,
                actor_officer_id=actor_officer_id,
                comment=comment,
                extra=extra,
            )
            db.session.commit()

        logger.info(
            "Application %s: %s --%s--> %s", application_id, old_status, rule.action, rule.to_status,
            extra={
                "application_id": application_id,
                "action": rule.action,
                "officer_id": actor_officer_id,
                "event_type": "status_change",
            },
        )
        return TransitionOutcome(
            application_id=application_id,
            action=rule.action,
            old_status=old_status,
            new_status=rule.to_status,
            version=application.version,
            assignment=decision,
            released_assignment_ids=[r.id for r in released],
        )

    def _assign(
        self,
        application: Application,
        rule: TransitionRule,
        payload: dict,
        actor_officer_id: int | None,
        comment: str,
        now: datetime,
        esc_rule: AutoAssignmentRule | None = None,
    ) -> AssignmentDecision:
        slot = rule.assign_slot
        if esc_rule is not None:
            return self.engine.escalate(application, slot, esc_rule, now=now)
        if payload.get("officer_id") is not None:
            try:
                officer_id = int(payload["officer_id"])
            except (TypeError, ValueError) as exc:
                raise ValidationError("officer_id must be an integer") from exc
            return self.engine.assign_manual(
                application, slot, officer_id,
                actor_officer_id=actor_officer_id, reason=comment, now=now,
            )
        return self.engine.assign(
            application, slot,
            strategy_override=payload.get("strategy"),
            reason=comment,
            now=now,
        )
