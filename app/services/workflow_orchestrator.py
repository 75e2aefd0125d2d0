"""
Workflow Orchestrator: the façade HTTP handlers and jobs call.

execute_workflow_action(application_id, action, actor_officer_id, payload)
    1. validate the action name and the mandatory rejection comment
       (ValidationError, before the state machine is touched)
    2. pre-check legality from the current status
    3. consult external collaborators outside any lock and fold their
       answers into the payload (document store, HSM, payment gateway)
    4. run the state machine transition
    5. after commit: notifications, auto-assignment after Submit

Workflow errors come back inside WorkflowActionResult with the unchanged
current status; validation and not-found errors propagate to the caller.

The orchestrator receives WorkflowSettings and its collaborators through
the constructor; it never reads Flask config.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from email_validator import EmailNotValidError, validate_email

from app.config import WorkflowSettings
from app.core.exceptions import (
    IllegalTransitionError,
    InvalidAssignmentTargetError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from app.integrations import WorkflowGateways
from app.integrations.http_gateway import IntegrationError
from app.models import db
from app.models.application import Application
from app.models.assignment import AssignmentHistory
from app.models.audit import write_audit
from app.models.base import utcnow
from app.models.officer import SLOT_JUNIOR_ENGINEER, Officer, PositionType, role_for_slot
from app.models.workflow import (
    RESUBMITTABLE_STATUSES,
    SIGNATURE_STAGE_BY_STATUS,
    ApplicationStatus,
    WorkflowAction,
    is_terminal,
)
from app.services import stage_records
from app.services.assignment_engine import AssignmentEngine
from app.services.escalation import run_escalations
from app.services.notification import NotificationDispatcher
from app.services.workflow_locks import application_guard
from app.services.workflow_state_machine import (
    TransitionOutcome,
    TransitionTable,
    WorkflowStateMachine,
)

logger = logging.getLogger(__name__)

A = WorkflowAction

_COMMENT_REQUIRED = {A.REJECT.value, A.REJECT_DOCUMENT.value}
_NOT_SUGGESTED = {A.REJECT.value, A.REJECT_DOCUMENT.value, A.ESCALATE.value, A.CLOSE.value}
_NEXT_ACTION_ORDER = [
    A.SUBMIT, A.ASSIGN_TO_ROLE, A.SCHEDULE_APPOINTMENT, A.COMPLETE_APPOINTMENT,
    A.VERIFY_DOCUMENT, A.APPROVE, A.REQUEST_SIGNATURE, A.COMPLETE_SIGNATURE,
    A.RECORD_PAYMENT, A.ISSUE_CERTIFICATE, A.FORWARD_TO_NEXT_ROLE,
]


@dataclass
class WorkflowActionResult:
    success: bool
    application_id: int
    action: str
    previous_status: str | None
    new_status: str | None
    next_action: str | None = None
    next_actions: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    assignment: dict | None = None
    version: int | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "application_id": self.application_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "next_action": self.next_action,
            "next_actions": list(self.next_actions),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "assignment": self.assignment,
            "version": self.version,
        }


class WorkflowOrchestrator:
    """Composes state machine, assignment engine, gates and collaborators."""

    def __init__(
        self,
        settings: WorkflowSettings,
        gateways: WorkflowGateways | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.settings = settings
        self.gateways = gateways or WorkflowGateways()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.engine = AssignmentEngine(settings)
        self.state_machine = WorkflowStateMachine(self.engine, settings)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_application(self, application_id: int) -> Application:
        application = db.session.get(Application, application_id)
        if application is None:
            raise NotFoundError(resource="Application", resource_id=application_id)
        return application

    def next_actions(self, status: str) -> list[str]:
        if is_terminal(status):
            return []
        return [r.action for r in TransitionTable.rules_from(status)]

    def next_action(self, status: str) -> str | None:
        """Forward-moving action an officer would normally take next."""
        if is_terminal(status):
            return None
        candidates = {
            r.action for r in TransitionTable.rules_from(status)
            if not r.is_self_loop and r.action not in _NOT_SUGGESTED
        }
        for action in _NEXT_ACTION_ORDER:
            if action.value in candidates:
                return action.value
        return None

    # ── Applications ─────────────────────────────────────────────────────

    def create_application(
        self,
        *,
        applicant_name: str,
        applicant_email: str,
        position_type: str,
        documents=None,
        actor: str = "applicant",
    ) -> Application:
        name = (applicant_name or "").strip()
        if not name:
            raise ValidationError("applicant_name is required")
        try:
            email = validate_email(applicant_email or "", check_deliverability=False).normalized
        except EmailNotValidError as exc:
            raise ValidationError(f"Invalid applicant_email: {exc}") from exc
        try:
            position = PositionType(position_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown position_type: {position_type}",
                details={"allowed": [p.value for p in PositionType]},
            ) from exc

        application = Application(
            applicant_name=name,
            applicant_email=email,
            position_type=position.value,
            status=ApplicationStatus.DRAFT.value,
            fee_amount=self.settings.fee_for(position.value),
        )
        db.session.add(application)
        db.session.flush()
        if documents:
            stage_records.register_documents(application, documents)
        write_audit(
            entity_type="application",
            entity_id=application.id,
            action="application.create",
            actor=actor,
            diff={"position_type": position.value},
        )
        db.session.commit()
        logger.info("Application %s created (%s)", application.id, position.value,
                    extra={"application_id": application.id, "event_type": "application_created"})
        return application

    def register_documents(self, application_id: int, documents) -> list:
        with application_guard(application_id, timeout=self.settings.lock_timeout_seconds):
            try:
                application = self.get_application(application_id)
                if is_terminal(application.status):
                    raise ValidationError(f"Application is closed ({application.status})")
                rows = stage_records.register_documents(application, documents)
                db.session.commit()
                return rows
            except Exception:
                db.session.rollback()
                raise

    # ── Actions ──────────────────────────────────────────────────────────

    def execute_workflow_action(
        self,
        application_id: int,
        action: str,
        actor_officer_id: int | None = None,
        payload: dict | None = None,
        *,
        comment: str | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> WorkflowActionResult:
        payload = dict(payload or {})
        comment = (comment if comment is not None else payload.pop("comment", "")) or ""
        if not isinstance(comment, str):
            raise ValidationError("comment must be a string", details={"field": "comment"})
        if not isinstance(action, str):
            raise ValidationError("action must be a string", details={"field": "action"})
        try:
            action = WorkflowAction(action).value
        except ValueError as exc:
            raise ValidationError(
                f"Unknown workflow action: {action}",
                details={"allowed": [a.value for a in WorkflowAction]},
            ) from exc
        if action in _COMMENT_REQUIRED and not comment.strip():
            raise ValidationError(f"A non-empty comment is required for {action}")

        application = self.get_application(application_id)
        previous_status = application.status
        try:
            rule = self.state_machine.rule_for(application, action)
            self._consult_collaborators(application, action, rule.to_status, payload)
            outcome = self.state_machine.transition(
                application_id, action, actor_officer_id,
                payload=payload, comment=comment,
                expected_version=expected_version, now=now,
            )
        except (WorkflowError, IntegrationError) as exc:
            db.session.rollback()
            return self._failure(application_id, action, previous_status, exc)

        result = self._success(outcome)
        self._dispatch_notifications(outcome)
        if action == A.SUBMIT.value:
            self._auto_assign_after_submit(outcome, result, now)
        return result

    def _consult_collaborators(self, application: Application, action: str, to_status: str,
                               payload: dict) -> None:
        if action == A.VERIFY_DOCUMENT.value and not payload.get("status"):
            document_id = payload.get("document_id")
            if not document_id:
                raise ValidationError("document_id is required")
            verdict = self.gateways.document_store.get_verification_status(str(document_id))
            if not verdict:
                raise ValidationError(
                    f"No verdict supplied and the document store has none for '{document_id}'",
                )
            payload["status"] = verdict

        elif action == A.REQUEST_SIGNATURE.value and not payload.get("signature"):
            stage = SIGNATURE_STAGE_BY_STATUS.get(to_status)
            if stage is None:
                raise IllegalTransitionError(application.status, action, f"{to_status} is not a signing status")
            payload["signature"] = self.gateways.signature_service.request_signature(
                application.id, stage, payload.get("document_ref") or application.application_number or "",
            )

        elif action == A.COMPLETE_SIGNATURE.value and not payload.get("status"):
            stage = SIGNATURE_STAGE_BY_STATUS.get(application.status)
            sig = stage_records.latest_signature(application.id, stage) if stage else None
            if sig is None or not sig.signature_id:
                raise ValidationError("status is required: no signature id to poll")
            payload["status"] = self.gateways.signature_service.get_signature_status(sig.signature_id)

        elif action == A.RECORD_PAYMENT.value and not payload.get("status"):
            reported = self.gateways.payment_gateway.get_payment_status(application.id)
            payload.update(
                status="Success" if reported.get("is_complete") else "Pending",
                amount_paid=reported.get("amount_paid", "0"),
                transaction_id=reported.get("transaction_id"),
            )

    def _success(self, outcome: TransitionOutcome) -> WorkflowActionResult:
        return WorkflowActionResult(
            success=True,
            application_id=outcome.application_id,
            action=outcome.action,
            previous_status=outcome.old_status,
            new_status=outcome.new_status,
            next_action=self.next_action(outcome.new_status),
            next_actions=self.next_actions(outcome.new_status),
            assignment=outcome.assignment.to_dict() if outcome.assignment else None,
            version=outcome.version,
        )

    def _failure(self, application_id: int, action: str, previous_status: str,
                 exc: Exception) -> WorkflowActionResult:
        application = db.session.get(Application, application_id, populate_existing=True)
        status = application.status if application else previous_status
        logger.info(
            "Action %s on application %s refused: %s", action, application_id, exc,
            extra={"application_id": application_id, "action": action,
                   "event_type": "action_refused"},
        )
        return WorkflowActionResult(
            success=False,
            application_id=application_id,
            action=action,
            previous_status=status,
            new_status=status,
            next_action=self.next_action(status),
            next_actions=self.next_actions(status),
            errors=[exc.to_dict()],
            version=application.version if application else None,
        )

    def _auto_assign_after_submit(self, outcome: TransitionOutcome, result: WorkflowActionResult,
                                  now: datetime | None) -> None:
        application = self.get_application(outcome.application_id)
        role = role_for_slot(SLOT_JUNIOR_ENGINEER, application.position_type)
        rule = self.engine.find_rule(application.position_type, role, now or utcnow())
        if rule is None or not rule.auto_assign_on_submission:
            return
        follow_up = self.execute_workflow_action(
            application.id, A.ASSIGN_TO_ROLE.value, None, {}, comment="Auto-assigned on submission", now=now,
        )
        if follow_up.success:
            result.new_status = follow_up.new_status
            result.next_action = follow_up.next_action
            result.next_actions = follow_up.next_actions
            result.assignment = follow_up.assignment
            result.version = follow_up.version
        else:
            result.warnings.extend(
                f"Auto-assignment failed: {err.get('message')}" for err in follow_up.errors
            )

    def _dispatch_notifications(self, outcome: TransitionOutcome) -> None:
        application = db.session.get(Application, outcome.application_id)
        base = {
            "application_id": application.id,
            "application_number": application.application_number or f"#{application.id}",
            "status": outcome.new_status,
            "action": outcome.action,
        }
        decision = outcome.assignment
        if decision is not None and decision.notify:
            officer = db.session.get(Officer, decision.officer_id)
            kind = "assignment.escalated" if outcome.action == A.ESCALATE.value else "assignment.new"
            self.dispatcher.notify(officer.email if officer else "admin", kind,
                                   {**base, "role_slot": decision.role_slot})
        if outcome.new_status in RESUBMITTABLE_STATUSES or outcome.new_status == ApplicationStatus.REJECTED.value:
            self.dispatcher.notify(application.applicant_email, "application.rejected", base)
        elif outcome.new_status == ApplicationStatus.COMPLETED.value:
            self.dispatcher.notify(application.applicant_email, "application.completed", base)

    # ── Assignment administration ────────────────────────────────────────

    def accept_assignment(self, history_id: int, officer_id: int, *, accepted: bool = True,
                          now: datetime | None = None) -> AssignmentHistory:
        """Record the assigned officer's one-time accept/decline answer."""
        row = db.session.get(AssignmentHistory, history_id)
        if row is None:
            raise NotFoundError(resource="Assignment", resource_id=history_id)
        with application_guard(row.application_id, timeout=self.settings.lock_timeout_seconds):
            try:
                db.session.refresh(row)
                if not row.is_active:
                    raise ValidationError("Assignment is no longer active")
                if row.assigned_to_officer_id != officer_id:
                    raise InvalidAssignmentTargetError(officer_id, "assignment belongs to another officer")
                try:
                    row.record_acceptance(accepted, now or utcnow())
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
                write_audit(
                    entity_type="assignment",
                    entity_id=row.id,
                    action="assignment.accept" if accepted else "assignment.decline",
                    actor_officer_id=officer_id,
                    diff={"officer_accepted": {"old": None, "new": accepted}},
                )
                db.session.commit()
                return row
            except Exception:
                db.session.rollback()
                raise

    def unassign(self, application_id: int, slot: str, *, actor_officer_id: int | None = None,
                 reason: str = "") -> AssignmentHistory:
        with application_guard(application_id, timeout=self.settings.lock_timeout_seconds):
            try:
                application = self.get_application(application_id)
                try:
                    application.slot_attribute(slot)
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
                event = self.engine.unassign(application, slot, actor_officer_id=actor_officer_id,
                                             reason=reason)
                write_audit(
                    entity_type="assignment",
                    entity_id=event.id,
                    action="assignment.unassign",
                    actor_officer_id=actor_officer_id,
                    comment=reason,
                    diff={"officer_id": {"old": event.assigned_to_officer_id, "new": None},
                          "role_slot": slot, "application_id": application_id},
                )
                db.session.commit()
                return event
            except Exception:
                db.session.rollback()
                raise

    def run_escalation_sweep(self, now: datetime | None = None) -> dict:
        return run_escalations(self, now=now)
