"""
Stage side records: the writes an action makes besides the status change.

Every function here runs inside the state machine's transaction, after the
transition rule is known and before the gates are evaluated, so a gate
sees the record the same action produced (e.g. RecordPayment → payment
gate). Nothing commits; a failed gate rolls the records back with the
status change.

Payload values are already enriched by the orchestrator (HSM verdicts,
payment-gateway status, document-store verdicts); no network I/O here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from app.config import WorkflowSettings
from app.core.exceptions import IllegalTransitionError, ValidationError
from app.models import db
from app.models.application import (
    DECISION_APPROVED,
    DECISION_REJECTED,
    Application,
    Appointment,
    AppointmentStatus,
    DigitalSignature,
    DocumentVerification,
    Payment,
    PaymentStatus,
    SignatureStatus,
    StageDecision,
    VerificationStatus,
)
from app.models.workflow import (
    RESUBMITTABLE_STATUSES,
    SIGNATURE_STAGE_BY_STATUS,
    ApplicationStatus,
    WorkflowAction,
    decision_stage,
)
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

_OFFICER_DOCUMENT_VERDICTS = {
    VerificationStatus.APPROVED.value,
    VerificationStatus.REJECTED.value,
    VerificationStatus.REQUIRES_RESUBMISSION.value,
    VerificationStatus.IN_PROGRESS.value,
}
_SIGNATURE_VERDICTS = {
    SignatureStatus.COMPLETED.value,
    SignatureStatus.VERIFIED.value,
    SignatureStatus.FAILED.value,
    SignatureStatus.REVOKED.value,
    SignatureStatus.IN_PROGRESS.value,
}
_PAYMENT_STATUSES = {s.value for s in PaymentStatus}


def _parse_when(value, field: str) -> datetime | None:
    try:
        return parse_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", details={field: value}) from exc


def _decimal(value, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", details={field: value}) from exc


# ── Submission ───────────────────────────────────────────────────────────────

def on_submit(application: Application, *, payload: dict, settings: WorkflowSettings,
              now: datetime) -> None:
    """First submission numbers the application; a resubmission counts against the limit."""
    if application.status in RESUBMITTABLE_STATUSES:
        if (application.resubmission_count or 0) >= settings.max_resubmissions:
            raise IllegalTransitionError(
                application.status, WorkflowAction.SUBMIT.value,
                f"resubmission limit of {settings.max_resubmissions} reached",
            )
        application.resubmission_count = (application.resubmission_count or 0) + 1
        reopened = db.session.scalars(
            select(DocumentVerification).where(
                DocumentVerification.application_id == application.id,
                DocumentVerification.status.in_([
                    VerificationStatus.REJECTED.value,
                    VerificationStatus.REQUIRES_RESUBMISSION.value,
                ]),
            )
        ).all()
        for doc in reopened:
            doc.status = VerificationStatus.PENDING.value
            doc.verified_by_officer_id = None
            doc.verified_at = None
    else:
        if not application.application_number:
            application.application_number = (
                f"{settings.application_number_prefix}-{now.year}-{application.id:05d}"
            )
        application.fee_amount = settings.fee_for(application.position_type)
    application.submitted_at = now
    if payload.get("documents"):
        register_documents(application, payload["documents"])


def register_documents(application: Application, documents) -> list[DocumentVerification]:
    """Create Pending verification rows; re-registering a document resets it to Pending."""
    if not isinstance(documents, list):
        raise ValidationError("documents must be a list")
    rows = []
    for entry in documents:
        if isinstance(entry, str):
            entry = {"document_id": entry}
        doc_id = str((entry or {}).get("document_id") or "").strip()
        if not doc_id:
            raise ValidationError("document_id is required for every document")
        row = db.session.scalars(
            select(DocumentVerification).where(
                DocumentVerification.application_id == application.id,
                DocumentVerification.document_id == doc_id,
            )
        ).first()
        if row is None:
            row = DocumentVerification(application_id=application.id, document_id=doc_id)
            db.session.add(row)
        row.document_type = entry.get("document_type") or row.document_type or "other"
        row.is_required = bool(entry.get("is_required", True))
        row.status = VerificationStatus.PENDING.value
        row.verified_by_officer_id = None
        row.verified_at = None
        rows.append(row)
    db.session.flush()
    return rows


# ── Appointments ─────────────────────────────────────────────────────────────

def _current_appointment(application_id: int) -> Appointment | None:
    return db.session.scalars(
        select(Appointment)
        .where(
            Appointment.application_id == application_id,
            Appointment.status == AppointmentStatus.SCHEDULED.value,
        )
        .order_by(Appointment.id.desc())
    ).first()


def schedule_appointment(application: Application, *, payload: dict,
                         actor_officer_id: int | None) -> Appointment:
    scheduled_at = _parse_when(payload.get("scheduled_at"), "scheduled_at")
    if scheduled_at is None:
        raise ValidationError("scheduled_at is required")

    previous = _current_appointment(application.id)
    appointment = Appointment(
        application_id=application.id,
        officer_id=actor_officer_id or application.assigned_junior_engineer_id,
        scheduled_at=scheduled_at,
        location=payload.get("location", ""),
        purpose=payload.get("purpose", "Document verification visit"),
        status=AppointmentStatus.SCHEDULED.value,
        rescheduled_from_id=previous.id if previous else None,
    )
    db.session.add(appointment)
    db.session.flush()
    if previous is not None:
        previous.status = AppointmentStatus.RESCHEDULED.value
        previous.rescheduled_to_id = appointment.id
    return appointment


def complete_appointment(application: Application, *, payload: dict, now: datetime) -> Appointment:
    appointment = _current_appointment(application.id)
    if appointment is None:
        raise ValidationError("No scheduled appointment to complete")
    appointment.status = AppointmentStatus.COMPLETED.value
    appointment.completion_notes = payload.get("notes", "")
    appointment.completed_at = now
    return appointment


# ── Documents ────────────────────────────────────────────────────────────────

def _document(application_id: int, document_id) -> DocumentVerification:
    if not document_id:
        raise ValidationError("document_id is required")
    row = db.session.scalars(
        select(DocumentVerification).where(
            DocumentVerification.application_id == application_id,
            DocumentVerification.document_id == str(document_id),
        )
    ).first()
    if row is None:
        raise ValidationError(
            f"Document '{document_id}' is not registered for this application",
            details={"document_id": document_id},
        )
    return row


def verify_document(application: Application, *, payload: dict, actor_officer_id: int | None,
                    comment: str, now: datetime) -> DocumentVerification:
    row = _document(application.id, payload.get("document_id"))
    verdict = payload.get("status") or VerificationStatus.APPROVED.value
    if verdict not in _OFFICER_DOCUMENT_VERDICTS:
        raise ValidationError(f"Invalid document verdict: {verdict}", details={"status": verdict})
    row.status = verdict
    row.verified_by_officer_id = actor_officer_id
    row.comments = comment or row.comments
    row.verified_at = now
    return row


def reject_document(application: Application, *, payload: dict, actor_officer_id: int | None,
                    comment: str, now: datetime) -> DocumentVerification:
    row = _document(application.id, payload.get("document_id"))
    verdict = payload.get("status") or VerificationStatus.REJECTED.value
    if verdict not in (VerificationStatus.REJECTED.value, VerificationStatus.REQUIRES_RESUBMISSION.value):
        raise ValidationError(f"Invalid rejection verdict: {verdict}", details={"status": verdict})
    row.status = verdict
    row.verified_by_officer_id = actor_officer_id
    row.comments = comment
    row.verified_at = now
    return row


# ── Signatures ───────────────────────────────────────────────────────────────

def latest_signature(application_id: int, stage: str) -> DigitalSignature | None:
    return db.session.scalars(
        select(DigitalSignature)
        .where(DigitalSignature.application_id == application_id, DigitalSignature.stage == stage)
        .order_by(DigitalSignature.id.desc())
    ).first()


def request_signature(application: Application, stage: str, *, payload: dict,
                      now: datetime) -> DigitalSignature:
    issued = payload.get("signature") or {}
    status = issued.get("status") or SignatureStatus.PENDING.value
    if status not in {s.value for s in SignatureStatus}:
        raise ValidationError(f"Invalid signature status: {status}")
    sig = DigitalSignature(
        application_id=application.id,
        stage=stage,
        signature_id=issued.get("signature_id"),
        document_ref=payload.get("document_ref") or application.application_number or "",
        status=status,
        requested_at=now,
    )
    db.session.add(sig)
    db.session.flush()
    return sig


def complete_signature(application: Application, stage: str, *, payload: dict,
                       actor_officer_id: int | None, now: datetime) -> DigitalSignature:
    sig = latest_signature(application.id, stage)
    if sig is None:
        raise ValidationError(f"No signature was requested for stage '{stage}'")
    status = payload.get("status") or SignatureStatus.COMPLETED.value
    if status not in _SIGNATURE_VERDICTS:
        raise ValidationError(f"Invalid signature verdict: {status}", details={"status": status})
    signed = status in (SignatureStatus.COMPLETED.value, SignatureStatus.VERIFIED.value)
    sig.status = status
    sig.is_verified = bool(payload.get("is_verified", signed)) and signed
    sig.hsm_transaction_id = payload.get("hsm_transaction_id") or sig.hsm_transaction_id
    sig.failure_reason = payload.get("failure_reason") if not signed else None
    if signed:
        sig.signed_by_officer_id = actor_officer_id
        sig.signed_at = now
    return sig


# ── Decisions, payment, certificate ──────────────────────────────────────────

def record_decision(application: Application, *, approved: bool, comment: str,
                    actor_officer_id: int | None, now: datetime) -> StageDecision:
    """One decision per stage per submission round."""
    stage = decision_stage(application.status)
    if stage is None:
        raise IllegalTransitionError(application.status, "Approve" if approved else "Reject",
                                     "status has no deciding stage")
    round_no = application.resubmission_count or 0
    existing = db.session.scalars(
        select(StageDecision).where(
            StageDecision.application_id == application.id,
            StageDecision.stage == stage,
            StageDecision.round == round_no,
        )
    ).first()
    if existing is not None:
        raise IllegalTransitionError(
            application.status, "Approve" if approved else "Reject",
            f"stage {stage} was already {existing.decision} in round {round_no}",
        )
    decision = StageDecision(
        application_id=application.id,
        stage=stage,
        round=round_no,
        decision=DECISION_APPROVED if approved else DECISION_REJECTED,
        comment=comment or "",
        officer_id=actor_officer_id,
        decided_at=now,
    )
    db.session.add(decision)
    return decision


def record_payment(application: Application, *, payload: dict, now: datetime) -> Payment:
    status = payload.get("status") or PaymentStatus.PENDING.value
    if status not in _PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {status}", details={"status": status})
    payment = Payment(
        application_id=application.id,
        transaction_id=payload.get("transaction_id"),
        status=status,
        fee_amount=application.fee_amount or Decimal("0"),
        amount_paid=_decimal(payload.get("amount_paid", 0), "amount_paid"),
        gateway_reference=payload.get("gateway_reference"),
        paid_at=now if status == PaymentStatus.SUCCESS.value else None,
        created_at=now,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def issue_certificate(application: Application, *, settings: WorkflowSettings, now: datetime) -> str:
    if not application.certificate_number:
        application.certificate_number = (
            f"{settings.application_number_prefix}-CERT-{now.year}-{application.id:05d}"
        )
    application.certificate_issued_at = now
    return application.certificate_number


# ── Dispatcher ───────────────────────────────────────────────────────────────

def apply_action_effects(
    application: Application,
    action: str,
    to_status: str,
    *,
    payload: dict,
    actor_officer_id: int | None,
    comment: str,
    settings: WorkflowSettings,
    now: datetime,
):
    """Write the side records for *action*; returns the primary record (or None)."""
    record = None
    if action == WorkflowAction.SUBMIT:
        on_submit(application, payload=payload, settings=settings, now=now)
    elif action == WorkflowAction.SCHEDULE_APPOINTMENT:
        record = schedule_appointment(application, payload=payload, actor_officer_id=actor_officer_id)
    elif action == WorkflowAction.COMPLETE_APPOINTMENT:
        record = complete_appointment(application, payload=payload, now=now)
    elif action == WorkflowAction.VERIFY_DOCUMENT:
        record = verify_document(application, payload=payload, actor_officer_id=actor_officer_id,
                                 comment=comment, now=now)
    elif action == WorkflowAction.REJECT_DOCUMENT:
        record = reject_document(application, payload=payload, actor_officer_id=actor_officer_id,
                                 comment=comment, now=now)
    elif action == WorkflowAction.REQUEST_SIGNATURE:
        stage = SIGNATURE_STAGE_BY_STATUS.get(to_status)
        if stage is None:
            raise IllegalTransitionError(application.status, action, f"{to_status} is not a signing status")
        record = request_signature(application, stage, payload=payload, now=now)
    elif action == WorkflowAction.COMPLETE_SIGNATURE:
        stage = SIGNATURE_STAGE_BY_STATUS.get(application.status)
        if stage is None:
            raise IllegalTransitionError(application.status, action, "no signature stage is open")
        record = complete_signature(application, stage, payload=payload,
                                    actor_officer_id=actor_officer_id, now=now)
    elif action in (WorkflowAction.APPROVE, WorkflowAction.REJECT):
        record = record_decision(application, approved=action == WorkflowAction.APPROVE,
                                 comment=comment, actor_officer_id=actor_officer_id, now=now)
    elif action == WorkflowAction.RECORD_PAYMENT:
        record = record_payment(application, payload=payload, now=now)
    elif action == WorkflowAction.ISSUE_CERTIFICATE:
        record = issue_certificate(application, settings=settings, now=now)

    if to_status == ApplicationStatus.COMPLETED.value:
        application.completed_at = now
    if record is not None:
        logger.debug("Action %s wrote %r", action, record,
                     extra={"application_id": application.id, "action": action})
    return record
