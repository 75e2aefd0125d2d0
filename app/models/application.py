"""
Professional Licensing Portal
Application aggregate and its stage side records.

Models:
    - Application: the licence application moving through the officer chain
    - StageDecision: one approve/reject decision per stage per submission round
    - DocumentVerification: verification verdict for one uploaded document
    - DigitalSignature: HSM signature request/result for one signing stage
    - Appointment: site/office visit scheduled by the Junior Engineer
    - Payment: fee payment attempt reported by the payment gateway

Side records reference the application by id only; lookups go through
explicit queries rather than ORM relationships.
"""

from decimal import Decimal
from enum import Enum

from app.models import db
from app.models.base import TimestampedModel, iso, utcnow
from app.models.officer import ROLE_SLOTS
from app.models.workflow import ApplicationStatus


class VerificationStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REQUIRES_RESUBMISSION = "RequiresResubmission"


class SignatureStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    VERIFIED = "Verified"
    REVOKED = "Revoked"


class AppointmentStatus(str, Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"


def _money(value) -> str | None:
    return str(value) if value is not None else None


class Application(TimestampedModel):
    """
    Licence application.

    ``version`` is the optimistic-concurrency column: every flush that
    updates the row bumps it, and a stale writer gets StaleDataError.
    """

    __tablename__ = "applications"
    __table_args__ = (
        db.Index("idx_application_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_number = db.Column(db.String(40), unique=True, nullable=True)
    applicant_name = db.Column(db.String(200), nullable=False)
    applicant_email = db.Column(db.String(200), nullable=False)
    position_type = db.Column(db.String(40), nullable=False, comment="PositionType value")
    status = db.Column(db.String(50), nullable=False, default=ApplicationStatus.DRAFT.value)
    version = db.Column(db.Integer, nullable=False)

    fee_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    resubmission_count = db.Column(db.Integer, nullable=False, default=0)

    # One assignment slot per stage of the chain
    assigned_junior_engineer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_assistant_engineer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_executive_engineer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_city_engineer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_clerk_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    certificate_number = db.Column(db.String(60), unique=True, nullable=True)
    certificate_issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    # ── Slot helpers ─────────────────────────────────────────────────────

    @staticmethod
    def slot_attribute(slot: str) -> str:
        if slot not in ROLE_SLOTS:
            raise ValueError(f"Unknown role slot: {slot}")
        return f"assigned_{slot}_id"

    def officer_for_slot(self, slot: str) -> int | None:
        return getattr(self, self.slot_attribute(slot))

    def set_slot_officer(self, slot: str, officer_id: int | None) -> None:
        setattr(self, self.slot_attribute(slot), officer_id)

    def assignments(self) -> dict:
        return {slot: self.officer_for_slot(slot) for slot in ROLE_SLOTS}

    def to_dict(self):
        return {
            "id": self.id,
            "application_number": self.application_number,
            "applicant_name": self.applicant_name,
            "applicant_email": self.applicant_email,
            "position_type": self.position_type,
            "status": self.status,
            "version": self.version,
            "fee_amount": _money(self.fee_amount),
            "resubmission_count": self.resubmission_count,
            "assignments": self.assignments(),
            "submitted_at": iso(self.submitted_at),
            "status_changed_at": iso(self.status_changed_at),
            "certificate_number": self.certificate_number,
            "certificate_issued_at": iso(self.certificate_issued_at),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Application {self.id}: {self.application_number or 'draft'} [{self.status}]>"


class StageDecision(db.Model):
    """
    Approve/reject decision of one stage in one submission round.

    The unique (application, stage, round) key makes approved-and-rejected
    in the same round unrepresentable.
    """

    __tablename__ = "stage_decisions"
    __table_args__ = (
        db.UniqueConstraint("application_id", "stage", "round", name="uq_stage_decision_round"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage = db.Column(db.String(40), nullable=False)
    round = db.Column(db.Integer, nullable=False, default=0)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    comment = db.Column(db.Text, default="")
    officer_id = db.Column(db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "stage": self.stage,
            "round": self.round,
            "decision": self.decision,
            "comment": self.comment,
            "officer_id": self.officer_id,
            "decided_at": iso(self.decided_at),
        }

    def __repr__(self):
        return f"<StageDecision {self.id}: {self.stage}#{self.round} {self.decision}>"


class DocumentVerification(TimestampedModel):
    """Verification verdict for one document of an application."""

    __tablename__ = "document_verifications"
    __table_args__ = (
        db.UniqueConstraint("application_id", "document_id", name="uq_document_per_application"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    document_id = db.Column(db.String(100), nullable=False, comment="Reference in the document store")
    document_type = db.Column(db.String(60), nullable=False, default="other")
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(30), nullable=False, default=VerificationStatus.PENDING.value)
    verified_by_officer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True,
    )
    comments = db.Column(db.Text, default="")
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "document_id": self.document_id,
            "document_type": self.document_type,
            "is_required": self.is_required,
            "status": self.status,
            "verified_by_officer_id": self.verified_by_officer_id,
            "comments": self.comments,
            "verified_at": iso(self.verified_at),
        }

    def __repr__(self):
        return f"<DocumentVerification {self.id}: {self.document_id} [{self.status}]>"


class DigitalSignature(TimestampedModel):
    """HSM signature for one signing stage of an application."""

    __tablename__ = "digital_signatures"
    __table_args__ = (
        db.Index("idx_signature_app_stage", "application_id", "stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    stage = db.Column(db.String(40), nullable=False)
    signature_id = db.Column(db.String(100), nullable=True, comment="Identifier issued by the signature service")
    document_ref = db.Column(db.String(200), default="")
    status = db.Column(db.String(20), nullable=False, default=SignatureStatus.PENDING.value)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    signed_by_officer_id = db.Column(
        db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True,
    )
    hsm_transaction_id = db.Column(db.String(100), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "stage": self.stage,
            "signature_id": self.signature_id,
            "document_ref": self.document_ref,
            "status": self.status,
            "is_verified": self.is_verified,
            "signed_by_officer_id": self.signed_by_officer_id,
            "hsm_transaction_id": self.hsm_transaction_id,
            "failure_reason": self.failure_reason,
            "requested_at": iso(self.requested_at),
            "signed_at": iso(self.signed_at),
        }

    def __repr__(self):
        return f"<DigitalSignature {self.id}: {self.stage} [{self.status}]>"


class Appointment(TimestampedModel):
    """
    Visit scheduled by the Junior Engineer.

    Reschedules never edit a row in place: the old row is marked
    Rescheduled and linked to its successor through the id pair.
    """

    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    officer_id = db.Column(db.Integer, db.ForeignKey("officers.id", ondelete="SET NULL"), nullable=True)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    location = db.Column(db.String(300), default="")
    purpose = db.Column(db.String(300), default="")
    status = db.Column(db.String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    rescheduled_from_id = db.Column(
        db.Integer, db.ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True,
    )
    rescheduled_to_id = db.Column(
        db.Integer, db.ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True,
    )
    completion_notes = db.Column(db.Text, default="")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "officer_id": self.officer_id,
            "scheduled_at": iso(self.scheduled_at),
            "location": self.location,
            "purpose": self.purpose,
            "status": self.status,
            "rescheduled_from_id": self.rescheduled_from_id,
            "rescheduled_to_id": self.rescheduled_to_id,
            "completion_notes": self.completion_notes,
            "completed_at": iso(self.completed_at),
        }

    def __repr__(self):
        return f"<Appointment {self.id}: app={self.application_id} [{self.status}]>"


class Payment(db.Model):
    """Fee payment attempt. Append-only; the latest row decides the gate."""

    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    transaction_id = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    fee_amount = db.Column(db.Numeric(12, 2), nullable=False)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    gateway_reference = db.Column(db.String(200), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def covers_fee(self) -> bool:
        return Decimal(str(self.amount_paid or 0)) >= Decimal(str(self.fee_amount or 0))

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "fee_amount": _money(self.fee_amount),
            "amount_paid": _money(self.amount_paid),
            "gateway_reference": self.gateway_reference,
            "paid_at": iso(self.paid_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment {self.id}: app={self.application_id} [{self.status}]>"
