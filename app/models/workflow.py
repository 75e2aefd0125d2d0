"""
Professional Licensing Portal
Workflow catalog & transition table model.

Models:
    - WorkflowTransition: one legal edge (from_status, action) -> to_status,
      loaded from the database at transition time so operators can adjust
      routing without code changes.

Catalogs:
    - ApplicationStatus: every stage an application can be in
    - WorkflowAction: the closed set of actions the state machine accepts
    - DEFAULT_TRANSITIONS: seed rows for an empty table

Gate tokens stored on a transition are strings:
    "document"                  every required document verification approved
    "payment"                   latest payment succeeded and covers the fee
    "signature:<stage>"         signature for <stage> completed and verified
"""

from enum import Enum

from app.models import db
from app.models.base import iso, utcnow
from app.models.officer import (
    SLOT_ASSISTANT_ENGINEER,
    SLOT_CITY_ENGINEER,
    SLOT_CLERK,
    SLOT_EXECUTIVE_ENGINEER,
    SLOT_JUNIOR_ENGINEER,
)


class ApplicationStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    # Junior Engineer stage
    JUNIOR_ENGINEER_PENDING = "JUNIOR_ENGINEER_PENDING"
    APPOINTMENT_SCHEDULED = "APPOINTMENT_SCHEDULED"
    DOCUMENT_VERIFICATION_PENDING = "DOCUMENT_VERIFICATION_PENDING"
    DOCUMENT_VERIFICATION_IN_PROGRESS = "DOCUMENT_VERIFICATION_IN_PROGRESS"
    DOCUMENT_VERIFICATION_COMPLETED = "DOCUMENT_VERIFICATION_COMPLETED"
    AWAITING_JE_DIGITAL_SIGNATURE = "AWAITING_JE_DIGITAL_SIGNATURE"
    REJECTED_BY_JE = "REJECTED_BY_JE"
    # Assistant Engineer stage
    ASSISTANT_ENGINEER_PENDING = "ASSISTANT_ENGINEER_PENDING"
    APPROVED_BY_AE = "APPROVED_BY_AE"
    AWAITING_AE_DIGITAL_SIGNATURE = "AWAITING_AE_DIGITAL_SIGNATURE"
    REJECTED_BY_AE = "REJECTED_BY_AE"
    # Executive Engineer stage 1
    EXECUTIVE_ENGINEER_PENDING = "EXECUTIVE_ENGINEER_PENDING"
    APPROVED_BY_EE = "APPROVED_BY_EE"
    AWAITING_EE_DIGITAL_SIGNATURE = "AWAITING_EE_DIGITAL_SIGNATURE"
    REJECTED_BY_EE = "REJECTED_BY_EE"
    # City Engineer stage 1
    CITY_ENGINEER_PENDING = "CITY_ENGINEER_PENDING"
    APPROVED = "APPROVED"
    AWAITING_CE_DIGITAL_SIGNATURE = "AWAITING_CE_DIGITAL_SIGNATURE"
    REJECTED_BY_CE = "REJECTED_BY_CE"
    # Payment
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    # Clerk
    CLERK_PENDING = "CLERK_PENDING"
    PROCESSED_BY_CLERK = "PROCESSED_BY_CLERK"
    REJECTED_BY_CLERK = "REJECTED_BY_CLERK"
    # Executive Engineer stage 2 (certificate signing)
    EXECUTIVE_ENGINEER_SIGN_PENDING = "EXECUTIVE_ENGINEER_SIGN_PENDING"
    UNDER_DIGITAL_SIGNATURE_BY_EE2 = "UNDER_DIGITAL_SIGNATURE_BY_EE2"
    # City Engineer stage 2 (final approval)
    CITY_ENGINEER_SIGN_PENDING = "CITY_ENGINEER_SIGN_PENDING"
    UNDER_FINAL_APPROVAL_BY_CE2 = "UNDER_FINAL_APPROVAL_BY_CE2"
    # Closing
    CERTIFICATE_ISSUED = "CERTIFICATE_ISSUED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class WorkflowAction(str, Enum):
    SUBMIT = "Submit"
    ASSIGN_TO_ROLE = "AssignToRole"
    SCHEDULE_APPOINTMENT = "ScheduleAppointment"
    COMPLETE_APPOINTMENT = "CompleteAppointment"
    VERIFY_DOCUMENT = "VerifyDocument"
    REJECT_DOCUMENT = "RejectDocument"
    REQUEST_SIGNATURE = "RequestSignature"
    COMPLETE_SIGNATURE = "CompleteSignature"
    APPROVE = "Approve"
    REJECT = "Reject"
    RECORD_PAYMENT = "RecordPayment"
    FORWARD_TO_NEXT_ROLE = "ForwardToNextRole"
    ISSUE_CERTIFICATE = "IssueCertificate"
    ESCALATE = "Escalate"
    CLOSE = "Close"


S = ApplicationStatus
A = WorkflowAction

TERMINAL_STATUSES = frozenset({S.COMPLETED.value, S.REJECTED.value})

# ── Gate names ───────────────────────────────────────────────────────────────

GATE_DOCUMENT = "document"
GATE_PAYMENT = "payment"
GATE_SIGNATURE = "signature"

SIGNATURE_STAGES = (
    "junior_engineer",
    "assistant_engineer",
    "executive_engineer",
    "city_engineer",
    "executive_engineer_stage2",
    "city_engineer_stage2",
)

# ── Status metadata ──────────────────────────────────────────────────────────

# Slot whose officer currently owns the application in a given status.
OWNING_SLOT = {
    S.JUNIOR_ENGINEER_PENDING.value: SLOT_JUNIOR_ENGINEER,
    S.APPOINTMENT_SCHEDULED.value: SLOT_JUNIOR_ENGINEER,
    S.DOCUMENT_VERIFICATION_PENDING.value: SLOT_JUNIOR_ENGINEER,
    S.DOCUMENT_VERIFICATION_IN_PROGRESS.value: SLOT_JUNIOR_ENGINEER,
    S.DOCUMENT_VERIFICATION_COMPLETED.value: SLOT_JUNIOR_ENGINEER,
    S.AWAITING_JE_DIGITAL_SIGNATURE.value: SLOT_JUNIOR_ENGINEER,
    S.ASSISTANT_ENGINEER_PENDING.value: SLOT_ASSISTANT_ENGINEER,
    S.APPROVED_BY_AE.value: SLOT_ASSISTANT_ENGINEER,
    S.AWAITING_AE_DIGITAL_SIGNATURE.value: SLOT_ASSISTANT_ENGINEER,
    S.EXECUTIVE_ENGINEER_PENDING.value: SLOT_EXECUTIVE_ENGINEER,
    S.APPROVED_BY_EE.value: SLOT_EXECUTIVE_ENGINEER,
    S.AWAITING_EE_DIGITAL_SIGNATURE.value: SLOT_EXECUTIVE_ENGINEER,
    S.EXECUTIVE_ENGINEER_SIGN_PENDING.value: SLOT_EXECUTIVE_ENGINEER,
    S.UNDER_DIGITAL_SIGNATURE_BY_EE2.value: SLOT_EXECUTIVE_ENGINEER,
    S.CITY_ENGINEER_PENDING.value: SLOT_CITY_ENGINEER,
    S.APPROVED.value: SLOT_CITY_ENGINEER,
    S.AWAITING_CE_DIGITAL_SIGNATURE.value: SLOT_CITY_ENGINEER,
    S.CITY_ENGINEER_SIGN_PENDING.value: SLOT_CITY_ENGINEER,
    S.UNDER_FINAL_APPROVAL_BY_CE2.value: SLOT_CITY_ENGINEER,
    S.CLERK_PENDING.value: SLOT_CLERK,
    S.PROCESSED_BY_CLERK.value: SLOT_CLERK,
}

# Signing stage handled while an application sits in a signature status.
SIGNATURE_STAGE_BY_STATUS = {
    S.AWAITING_JE_DIGITAL_SIGNATURE.value: "junior_engineer",
    S.AWAITING_AE_DIGITAL_SIGNATURE.value: "assistant_engineer",
    S.AWAITING_EE_DIGITAL_SIGNATURE.value: "executive_engineer",
    S.AWAITING_CE_DIGITAL_SIGNATURE.value: "city_engineer",
    S.UNDER_DIGITAL_SIGNATURE_BY_EE2.value: "executive_engineer_stage2",
    S.UNDER_FINAL_APPROVAL_BY_CE2.value: "city_engineer_stage2",
}

_STAGE2_DECISIONS = {
    S.EXECUTIVE_ENGINEER_SIGN_PENDING.value: "executive_engineer_stage2",
    S.CITY_ENGINEER_SIGN_PENDING.value: "city_engineer_stage2",
}

REJECTED_STATUS_BY_SLOT = {
    SLOT_JUNIOR_ENGINEER: S.REJECTED_BY_JE.value,
    SLOT_ASSISTANT_ENGINEER: S.REJECTED_BY_AE.value,
    SLOT_EXECUTIVE_ENGINEER: S.REJECTED_BY_EE.value,
    SLOT_CITY_ENGINEER: S.REJECTED_BY_CE.value,
    SLOT_CLERK: S.REJECTED_BY_CLERK.value,
}

RESUBMITTABLE_STATUSES = frozenset(REJECTED_STATUS_BY_SLOT.values())


def decision_stage(status: str) -> str | None:
    """Stage name an Approve/Reject decision taken in *status* is recorded under."""
    return _STAGE2_DECISIONS.get(status) or OWNING_SLOT.get(status)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


# ── Default transition table ─────────────────────────────────────────────────

def _t(frm, action, to, *, slot=None, gates=(), comment=False):
    return {
        "from_status": frm.value,
        "action": action.value,
        "to_status": to.value,
        "assign_slot": slot,
        "gates": list(gates),
        "requires_comment": comment,
    }


def _review_stage(pending, approved, awaiting, stage, next_status, next_slot):
    forward_gates = [f"{GATE_SIGNATURE}:{stage}"]
    return [
        _t(pending, A.APPROVE, approved),
        _t(approved, A.REQUEST_SIGNATURE, awaiting),
        _t(awaiting, A.COMPLETE_SIGNATURE, awaiting),
        _t(approved, A.FORWARD_TO_NEXT_ROLE, next_status, slot=next_slot, gates=forward_gates),
        _t(awaiting, A.FORWARD_TO_NEXT_ROLE, next_status, slot=next_slot, gates=forward_gates),
    ]


def _build_default_transitions() -> list[dict]:
    rows = [
        _t(S.DRAFT, A.SUBMIT, S.SUBMITTED),
        _t(S.SUBMITTED, A.ASSIGN_TO_ROLE, S.JUNIOR_ENGINEER_PENDING, slot=SLOT_JUNIOR_ENGINEER),
        _t(S.JUNIOR_ENGINEER_PENDING, A.SCHEDULE_APPOINTMENT, S.APPOINTMENT_SCHEDULED),
        _t(S.APPOINTMENT_SCHEDULED, A.SCHEDULE_APPOINTMENT, S.APPOINTMENT_SCHEDULED),
        _t(S.APPOINTMENT_SCHEDULED, A.COMPLETE_APPOINTMENT, S.DOCUMENT_VERIFICATION_PENDING),
    ]

    for status in (S.DOCUMENT_VERIFICATION_PENDING, S.DOCUMENT_VERIFICATION_IN_PROGRESS):
        rows += [
            _t(status, A.VERIFY_DOCUMENT, S.DOCUMENT_VERIFICATION_IN_PROGRESS),
            _t(status, A.REJECT_DOCUMENT, S.DOCUMENT_VERIFICATION_IN_PROGRESS, comment=True),
            _t(status, A.FORWARD_TO_NEXT_ROLE, S.DOCUMENT_VERIFICATION_COMPLETED, gates=[GATE_DOCUMENT]),
        ]

    je_forward = [GATE_DOCUMENT, f"{GATE_SIGNATURE}:junior_engineer"]
    rows += [
        _t(S.DOCUMENT_VERIFICATION_COMPLETED, A.REQUEST_SIGNATURE, S.AWAITING_JE_DIGITAL_SIGNATURE),
        _t(S.AWAITING_JE_DIGITAL_SIGNATURE, A.COMPLETE_SIGNATURE, S.AWAITING_JE_DIGITAL_SIGNATURE),
        _t(S.DOCUMENT_VERIFICATION_COMPLETED, A.FORWARD_TO_NEXT_ROLE, S.ASSISTANT_ENGINEER_PENDING,
           slot=SLOT_ASSISTANT_ENGINEER, gates=je_forward),
        _t(S.AWAITING_JE_DIGITAL_SIGNATURE, A.FORWARD_TO_NEXT_ROLE, S.ASSISTANT_ENGINEER_PENDING,
           slot=SLOT_ASSISTANT_ENGINEER, gates=je_forward),
    ]

    rows += _review_stage(S.ASSISTANT_ENGINEER_PENDING, S.APPROVED_BY_AE, S.AWAITING_AE_DIGITAL_SIGNATURE,
                          "assistant_engineer", S.EXECUTIVE_ENGINEER_PENDING, SLOT_EXECUTIVE_ENGINEER)
    rows += _review_stage(S.EXECUTIVE_ENGINEER_PENDING, S.APPROVED_BY_EE, S.AWAITING_EE_DIGITAL_SIGNATURE,
                          "executive_engineer", S.CITY_ENGINEER_PENDING, SLOT_CITY_ENGINEER)
    rows += _review_stage(S.CITY_ENGINEER_PENDING, S.APPROVED, S.AWAITING_CE_DIGITAL_SIGNATURE,
                          "city_engineer", S.PAYMENT_PENDING, None)

    ee2 = f"{GATE_SIGNATURE}:executive_engineer_stage2"
    ce2 = f"{GATE_SIGNATURE}:city_engineer_stage2"
    rows += [
        _t(S.PAYMENT_PENDING, A.RECORD_PAYMENT, S.PAYMENT_COMPLETED, gates=[GATE_PAYMENT]),
        _t(S.PAYMENT_COMPLETED, A.FORWARD_TO_NEXT_ROLE, S.CLERK_PENDING, slot=SLOT_CLERK, gates=[GATE_PAYMENT]),
        _t(S.CLERK_PENDING, A.APPROVE, S.PROCESSED_BY_CLERK),
        _t(S.PROCESSED_BY_CLERK, A.FORWARD_TO_NEXT_ROLE, S.EXECUTIVE_ENGINEER_SIGN_PENDING,
           slot=SLOT_EXECUTIVE_ENGINEER),
        _t(S.EXECUTIVE_ENGINEER_SIGN_PENDING, A.REQUEST_SIGNATURE, S.UNDER_DIGITAL_SIGNATURE_BY_EE2),
        _t(S.UNDER_DIGITAL_SIGNATURE_BY_EE2, A.COMPLETE_SIGNATURE, S.UNDER_DIGITAL_SIGNATURE_BY_EE2),
        _t(S.UNDER_DIGITAL_SIGNATURE_BY_EE2, A.FORWARD_TO_NEXT_ROLE, S.CITY_ENGINEER_SIGN_PENDING,
           slot=SLOT_CITY_ENGINEER, gates=[ee2]),
        _t(S.CITY_ENGINEER_SIGN_PENDING, A.REQUEST_SIGNATURE, S.UNDER_FINAL_APPROVAL_BY_CE2),
        _t(S.UNDER_FINAL_APPROVAL_BY_CE2, A.COMPLETE_SIGNATURE, S.UNDER_FINAL_APPROVAL_BY_CE2),
        _t(S.UNDER_FINAL_APPROVAL_BY_CE2, A.ISSUE_CERTIFICATE, S.CERTIFICATE_ISSUED,
           gates=[GATE_PAYMENT, ee2, ce2]),
        _t(S.CERTIFICATE_ISSUED, A.FORWARD_TO_NEXT_ROLE, S.COMPLETED),
    ]

    # Rejections (comment mandatory)
    reject_sources = {
        S.REJECTED_BY_JE: (
            S.JUNIOR_ENGINEER_PENDING, S.APPOINTMENT_SCHEDULED,
            S.DOCUMENT_VERIFICATION_PENDING, S.DOCUMENT_VERIFICATION_IN_PROGRESS,
            S.DOCUMENT_VERIFICATION_COMPLETED, S.AWAITING_JE_DIGITAL_SIGNATURE,
        ),
        S.REJECTED_BY_AE: (S.ASSISTANT_ENGINEER_PENDING,),
        S.REJECTED_BY_EE: (S.EXECUTIVE_ENGINEER_PENDING, S.EXECUTIVE_ENGINEER_SIGN_PENDING),
        S.REJECTED_BY_CE: (S.CITY_ENGINEER_PENDING, S.CITY_ENGINEER_SIGN_PENDING),
        S.REJECTED_BY_CLERK: (S.CLERK_PENDING,),
    }
    for rejected, sources in reject_sources.items():
        for status in sources:
            rows.append(_t(status, A.REJECT, rejected, comment=True))
        rows.append(_t(rejected, A.SUBMIT, S.SUBMITTED))
        rows.append(_t(rejected, A.CLOSE, S.REJECTED))

    # Reassignment and escalation keep the status and re-fill the owning slot
    for status_value, slot in OWNING_SLOT.items():
        status = S(status_value)
        rows.append(_t(status, A.ASSIGN_TO_ROLE, status, slot=slot))
        rows.append(_t(status, A.ESCALATE, status, slot=slot))

    return rows


DEFAULT_TRANSITIONS = _build_default_transitions()


class WorkflowTransition(db.Model):
    """
    One legal state-machine edge.

    (from_status, action) is unique; absent pairs are illegal transitions.
    """

    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.UniqueConstraint("from_status", "action", name="uq_workflow_transition_edge"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_status = db.Column(db.String(50), nullable=False, index=True)
    action = db.Column(db.String(40), nullable=False)
    to_status = db.Column(db.String(50), nullable=False)
    assign_slot = db.Column(db.String(40), nullable=True,
                            comment="Role slot filled by the assignment engine before the status changes")
    gates = db.Column(db.JSON, default=list, comment='["document", "payment", "signature:<stage>"]')
    requires_comment = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    description = db.Column(db.String(300), default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "from_status": self.from_status,
            "action": self.action,
            "to_status": self.to_status,
            "assign_slot": self.assign_slot,
            "gates": list(self.gates or []),
            "requires_comment": self.requires_comment,
            "is_active": self.is_active,
            "description": self.description,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowTransition {self.from_status} --{self.action}--> {self.to_status}>"
