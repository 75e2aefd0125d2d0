"""
Gate evaluators: preconditions the state machine checks before a transition.

Each gate is a pure predicate over persisted side records; none of them
writes to the session. Transition rows reference gates by token:

    "document"              → document_gate
    "payment"               → payment_gate
    "signature:<stage>"     → signature_gate(stage)

Usage:
    results = evaluate_gates(app.id, ["document", "signature:junior_engineer"])
    failed = [r for r in results if not r.satisfied]
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from sqlalchemy import select

from app.models import db
from app.models.application import (
    DigitalSignature,
    DocumentVerification,
    Payment,
    PaymentStatus,
    SignatureStatus,
    VerificationStatus,
)
from app.models.workflow import GATE_DOCUMENT, GATE_PAYMENT, GATE_SIGNATURE, SIGNATURE_STAGES

DOCUMENT_GATE = "DocumentGate"
SIGNATURE_GATE = "SignatureGate"
PAYMENT_GATE = "PaymentGate"

_SIGNED_STATUSES = {SignatureStatus.COMPLETED.value, SignatureStatus.VERIFIED.value}


@dataclass
class GateResult:
    gate: str
    satisfied: bool
    reason: str = ""
    stage: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def parse_gate(token: str) -> tuple[str, str | None]:
    """Split a gate token into (name, argument); validates both."""
    name, _, arg = token.partition(":")
    if name in (GATE_DOCUMENT, GATE_PAYMENT):
        if arg:
            raise ValueError(f"Gate '{name}' takes no argument")
        return name, None
    if name == GATE_SIGNATURE:
        if arg not in SIGNATURE_STAGES:
            raise ValueError(f"Unknown signature stage: {arg!r}")
        return name, arg
    raise ValueError(f"Unknown gate: {token!r}")


def document_gate(application_id: int) -> GateResult:
    """Every required document verification is Approved."""
    rows = db.session.scalars(
        select(DocumentVerification).where(
            DocumentVerification.application_id == application_id,
            DocumentVerification.is_required.is_(True),
        )
    ).all()
    outstanding = [r for r in rows if r.status != VerificationStatus.APPROVED.value]
    if outstanding:
        listing = ", ".join(f"{r.document_id}={r.status}" for r in outstanding)
        return GateResult(
            DOCUMENT_GATE, False,
            f"{len(outstanding)} of {len(rows)} required document(s) not approved: {listing}",
        )
    return GateResult(DOCUMENT_GATE, True)


def signature_gate(application_id: int, stage: str) -> GateResult:
    """Latest signature for *stage* is Completed (or Verified) and verified."""
    sig = db.session.scalars(
        select(DigitalSignature)
        .where(DigitalSignature.application_id == application_id, DigitalSignature.stage == stage)
        .order_by(DigitalSignature.id.desc())
        .limit(1)
    ).first()
    if sig is None:
        return GateResult(SIGNATURE_GATE, False, f"no signature requested for {stage}", stage)
    if sig.status not in _SIGNED_STATUSES:
        return GateResult(SIGNATURE_GATE, False, f"signature for {stage} is {sig.status}", stage)
    if not sig.is_verified:
        return GateResult(SIGNATURE_GATE, False, f"signature for {stage} is not verified", stage)
    return GateResult(SIGNATURE_GATE, True, stage=stage)


def payment_gate(application_id: int) -> GateResult:
    """Latest payment succeeded and covers the fee."""
    payment = db.session.scalars(
        select(Payment)
        .where(Payment.application_id == application_id)
        .order_by(Payment.id.desc())
        .limit(1)
    ).first()
    if payment is None:
        return GateResult(PAYMENT_GATE, False, "no payment recorded")
    if payment.status != PaymentStatus.SUCCESS.value:
        return GateResult(PAYMENT_GATE, False, f"latest payment is {payment.status}")
    if not payment.covers_fee:
        return GateResult(
            PAYMENT_GATE, False,
            f"amount paid {payment.amount_paid} is below fee {payment.fee_amount}",
        )
    return GateResult(PAYMENT_GATE, True)


def evaluate_gate(application_id: int, token: str) -> GateResult:
    name, arg = parse_gate(token)
    if name == GATE_DOCUMENT:
        return document_gate(application_id)
    if name == GATE_PAYMENT:
        return payment_gate(application_id)
    return signature_gate(application_id, arg)


def evaluate_gates(application_id: int, tokens) -> list[GateResult]:
    return [evaluate_gate(application_id, token) for token in tokens or ()]
