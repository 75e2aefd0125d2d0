"""
Document, signature and payment gates.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import db
from app.models.application import DigitalSignature, DocumentVerification, Payment
from app.services.gates import (
    DOCUMENT_GATE,
    PAYMENT_GATE,
    SIGNATURE_GATE,
    document_gate,
    evaluate_gates,
    parse_gate,
    payment_gate,
    signature_gate,
)

pytestmark = pytest.mark.unit


def _documents(application_id):
    rows = db.session.scalars(
        select(DocumentVerification).where(DocumentVerification.application_id == application_id)
    )
    return {d.document_id: d for d in rows}


def _signature(application_id, stage="junior_engineer", **fields):
    sig = DigitalSignature(application_id=application_id, stage=stage, **fields)
    db.session.add(sig)
    db.session.commit()
    return sig


def _payment(application_id, status="Success", amount_paid="5000", fee="5000"):
    payment = Payment(
        application_id=application_id, status=status,
        amount_paid=Decimal(amount_paid), fee_amount=Decimal(fee),
    )
    db.session.add(payment)
    db.session.commit()
    return payment


# ── Gate tokens ──────────────────────────────────────────────────────────────


@pytest.mark.parametrize("token, parsed", [
    ("document", ("document", None)),
    ("payment", ("payment", None)),
    ("signature:city_engineer_stage2", ("signature", "city_engineer_stage2")),
])
def test_parse_gate(token, parsed):
    assert parse_gate(token) == parsed


@pytest.mark.parametrize("token", ["document:x", "signature", "signature:mayor", "fingerprint"])
def test_parse_gate_rejects(token):
    with pytest.raises(ValueError):
        parse_gate(token)


# ── Document gate ────────────────────────────────────────────────────────────


class TestDocumentGate:
    def test_pending_documents_block(self, make_application):
        application = make_application()
        result = document_gate(application.id)
        assert result.gate == DOCUMENT_GATE
        assert not result.satisfied
        assert "2 of 2" in result.reason

    def test_all_required_approved(self, make_application):
        application = make_application()
        for doc in _documents(application.id).values():
            doc.status = "Approved"
        db.session.commit()
        assert document_gate(application.id).satisfied

    def test_optional_documents_are_ignored(self, make_application):
        application = make_application()
        docs = _documents(application.id)
        docs["DOC-ID"].status = "Approved"
        docs["DOC-DEGREE"].is_required = False
        db.session.commit()
        assert document_gate(application.id).satisfied

    def test_requires_resubmission_blocks(self, make_application):
        application = make_application()
        docs = _documents(application.id)
        docs["DOC-ID"].status = "Approved"
        docs["DOC-DEGREE"].status = "RequiresResubmission"
        db.session.commit()
        result = document_gate(application.id)
        assert not result.satisfied
        assert "DOC-DEGREE=RequiresResubmission" in result.reason

    def test_no_required_documents_passes(self, make_application):
        application = make_application(documents=None)
        assert document_gate(application.id).satisfied


# ── Signature gate ───────────────────────────────────────────────────────────


class TestSignatureGate:
    def test_missing_signature(self, make_application):
        result = signature_gate(make_application().id, "junior_engineer")
        assert result.gate == SIGNATURE_GATE
        assert result.stage == "junior_engineer"
        assert "no signature" in result.reason

    @pytest.mark.parametrize("status", ["Completed", "Verified"])
    def test_signed_and_verified(self, make_application, status):
        application = make_application()
        _signature(application.id, status=status, is_verified=True)
        assert signature_gate(application.id, "junior_engineer").satisfied

    def test_signed_but_unverified(self, make_application):
        application = make_application()
        _signature(application.id, status="Completed", is_verified=False)
        result = signature_gate(application.id, "junior_engineer")
        assert not result.satisfied
        assert "not verified" in result.reason

    def test_latest_signature_decides(self, make_application):
        application = make_application()
        _signature(application.id, status="Completed", is_verified=True)
        _signature(application.id, status="Failed")
        result = signature_gate(application.id, "junior_engineer")
        assert not result.satisfied
        assert "Failed" in result.reason

    def test_other_stage_does_not_count(self, make_application):
        application = make_application()
        _signature(application.id, stage="assistant_engineer", status="Completed", is_verified=True)
        assert not signature_gate(application.id, "junior_engineer").satisfied


# ── Payment gate ─────────────────────────────────────────────────────────────


class TestPaymentGate:
    def test_no_payment(self, make_application):
        result = payment_gate(make_application().id)
        assert result.gate == PAYMENT_GATE
        assert result.reason == "no payment recorded"

    def test_success_covering_fee(self, make_application):
        application = make_application()
        _payment(application.id, amount_paid="5000.00")
        assert payment_gate(application.id).satisfied

    def test_overpayment_passes(self, make_application):
        application = make_application()
        _payment(application.id, amount_paid="5200")
        assert payment_gate(application.id).satisfied

    def test_underpayment_blocks(self, make_application):
        application = make_application()
        _payment(application.id, amount_paid="4999.99")
        result = payment_gate(application.id)
        assert not result.satisfied
        assert "below fee" in result.reason

    def test_latest_payment_decides(self, make_application):
        application = make_application()
        _payment(application.id)
        _payment(application.id, status="Refunded")
        result = payment_gate(application.id)
        assert not result.satisfied
        assert "Refunded" in result.reason


def test_evaluate_gates_reports_each(make_application):
    application = make_application(documents=None)
    results = evaluate_gates(application.id, ["document", "payment", "signature:city_engineer"])
    assert [r.gate for r in results] == [DOCUMENT_GATE, PAYMENT_GATE, SIGNATURE_GATE]
    assert [r.satisfied for r in results] == [True, False, False]
    assert evaluate_gates(application.id, []) == []
