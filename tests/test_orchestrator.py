"""
Workflow orchestrator: end-to-end Architect chain, refusals, collaborators,
resubmission, auto-assignment, assignment acceptance and notifications.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    InvalidAssignmentTargetError,
    NotFoundError,
    ValidationError,
)
from app.integrations import WorkflowGateways
from app.integrations.signature_service import LocalSignatureService
from app.models import db
from app.models.application import DocumentVerification, Payment, StageDecision
from app.models.audit import AuditLog
from app.models.workflow import DEFAULT_TRANSITIONS, ApplicationStatus, WorkflowAction
from app.services import audit_service, stage_records
from app.services.notification import NotificationService

pytestmark = pytest.mark.unit


def _docs(application_id):
    return {
        d.document_id: d.status for d in db.session.scalars(
            select(DocumentVerification).where(DocumentVerification.application_id == application_id)
        )
    }


def _kinds(recipient):
    return [n.notification_type for n in NotificationService.list_for_recipient(recipient)]


# ═════════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════════


class TestHappyPath:
    def test_architect_application_reaches_completed(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        result = drive(application.id, steps["completed"])

        assert result.new_status == "COMPLETED"
        assert result.next_action is None
        assert result.next_actions == []

        application = orchestrator.get_application(application.id)
        assert application.certificate_number.startswith("PMC-CERT-")
        assert application.certificate_issued_at is not None
        assert application.completed_at is not None
        assert audit_service.active_assignments(application.id) == []

        decisions = db.session.scalars(
            select(StageDecision.stage).where(StageDecision.application_id == application.id)
        ).all()
        assert sorted(decisions) == ["assistant_engineer", "city_engineer", "clerk", "executive_engineer"]

        assert "application.completed" in _kinds("asha@example.com")
        assert audit_service.replay_application_status(application.id)["consistent"] is True

    def test_every_stage_is_assigned_to_its_role(self, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["payment"])
        history = audit_service.assignment_history(application.id)
        assert [(r.role_slot, r.assigned_to_officer_id) for r in history] == [
            ("junior_engineer", staff["JuniorArchitect"].id),
            ("assistant_engineer", staff["AssistantArchitect"].id),
            ("executive_engineer", staff["ExecutiveEngineer"].id),
            ("city_engineer", staff["CityEngineer"].id),
        ]
        # nobody owns an application waiting for payment
        assert not any(r.is_active for r in history)

    def test_result_suggests_the_next_action(self, orchestrator, make_application):
        application = make_application()
        result = orchestrator.execute_workflow_action(application.id, "Submit")
        assert result.success
        assert result.previous_status == "DRAFT"
        assert result.new_status == "SUBMITTED"
        assert result.next_action == "AssignToRole"
        assert "AssignToRole" in result.next_actions
        assert result.version == orchestrator.get_application(application.id).version


# ═════════════════════════════════════════════════════════════════════════════
# Refusals
# ═════════════════════════════════════════════════════════════════════════════


class TestRefusals:
    def test_unknown_action_is_a_validation_error(self, orchestrator, make_application):
        with pytest.raises(ValidationError, match="Unknown workflow action"):
            orchestrator.execute_workflow_action(make_application().id, "Teleport")

    def test_unknown_application(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.execute_workflow_action(12345, "Submit")

    @pytest.mark.parametrize("action", ["Reject", "RejectDocument"])
    def test_rejection_without_comment(self, orchestrator, make_application, staff, drive, steps, action):
        application = make_application()
        drive(application.id, steps["documents"])
        with pytest.raises(ValidationError, match="comment"):
            orchestrator.execute_workflow_action(
                application.id, action, None, {"document_id": "DOC-ID"}, comment="  ",
            )
        assert orchestrator.get_application(application.id).status == "DOCUMENT_VERIFICATION_PENDING"

    def test_illegal_transition_leaves_status(self, orchestrator, make_application):
        application = make_application()
        result = orchestrator.execute_workflow_action(application.id, "Approve")
        assert not result.success
        assert result.errors[0]["code"] == "ILLEGAL_TRANSITION"
        assert result.new_status == result.previous_status == "DRAFT"
        assert result.next_actions == ["Submit"]

    @pytest.mark.parametrize("action, comment, field", [
        (5, None, "action"),
        ("Reject", 5, "comment"),
    ])
    def test_non_string_inputs_are_validation_errors(self, orchestrator, make_application,
                                                    action, comment, field):
        application = make_application()
        with pytest.raises(ValidationError) as exc:
            orchestrator.execute_workflow_action(application.id, action, comment=comment)
        assert exc.value.details["field"] == field

    @pytest.mark.parametrize("status", [s.value for s in ApplicationStatus])
    def test_every_missing_edge_is_illegal(self, orchestrator, make_application, status):
        legal = {t["action"] for t in DEFAULT_TRANSITIONS if t["from_status"] == status}
        application = make_application()
        application.status = status
        db.session.commit()
        version = application.version

        for action in WorkflowAction:
            if action.value in legal:
                continue
            result = orchestrator.execute_workflow_action(application.id, action.value, comment="Checked")
            assert not result.success, (status, action.value)
            assert result.errors[0]["code"] == "ILLEGAL_TRANSITION", (status, action.value)
            assert result.new_status == status

        application = orchestrator.get_application(application.id)
        assert application.status == status
        assert application.version == version

    def test_document_gate_blocks_forwarding(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["documents"])
        drive(application.id, [("VerifyDocument", {"document_id": "DOC-ID", "status": "Approved"})])

        result = orchestrator.execute_workflow_action(application.id, "ForwardToNextRole")

        assert result.errors[0]["code"] == "GATE_NOT_SATISFIED"
        assert result.errors[0]["gate"] == "DocumentGate"
        assert "DOC-DEGREE" in result.errors[0]["reason"]
        assert result.new_status == "DOCUMENT_VERIFICATION_IN_PROGRESS"

    def test_signature_gate_blocks_forwarding(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["assistant_engineer"] + ["Approve", "RequestSignature"])

        result = orchestrator.execute_workflow_action(application.id, "ForwardToNextRole")

        assert result.errors[0]["gate"] == "SignatureGate"
        assert result.new_status == "AWAITING_AE_DIGITAL_SIGNATURE"

    def test_failed_payment_gate_rolls_back_the_payment(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["payment"])
        before = orchestrator.get_application(application.id).version

        result = orchestrator.execute_workflow_action(
            application.id, "RecordPayment", None, {"status": "Success", "amount_paid": "100"},
        )

        assert result.errors[0]["code"] == "GATE_NOT_SATISFIED"
        assert result.errors[0]["gate"] == "PaymentGate"
        assert db.session.scalar(
            select(func.count(Payment.id)).where(Payment.application_id == application.id)
        ) == 0
        application = orchestrator.get_application(application.id)
        assert application.status == "PAYMENT_PENDING"
        assert application.version == before

    def test_stale_expected_version(self, orchestrator, make_application):
        application = make_application()
        result = orchestrator.execute_workflow_action(
            application.id, "Submit", expected_version=application.version + 7,
        )
        assert result.errors[0]["code"] == "CONCURRENT_MODIFICATION"
        assert result.errors[0]["retryable"] is True

    def test_manual_assignment_to_wrong_role(self, orchestrator, make_application, staff):
        application = make_application()
        orchestrator.execute_workflow_action(application.id, "Submit")
        result = orchestrator.execute_workflow_action(
            application.id, "AssignToRole", None, {"officer_id": staff["Clerk"].id},
        )
        assert result.errors[0]["code"] == "INVALID_ASSIGNMENT_TARGET"
        assert result.new_status == "SUBMITTED"

    def test_no_eligible_officer(self, orchestrator, make_application):
        application = make_application()
        orchestrator.execute_workflow_action(application.id, "Submit")
        result = orchestrator.execute_workflow_action(application.id, "AssignToRole")
        assert result.errors[0]["code"] == "NO_ELIGIBLE_OFFICER"
        assert result.errors[0]["role"] == "JuniorArchitect"
        assert result.new_status == "SUBMITTED"


# ═════════════════════════════════════════════════════════════════════════════
# Collaborators
# ═════════════════════════════════════════════════════════════════════════════


class TestCollaborators:
    def test_document_verdict_from_the_store(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["documents"])
        orchestrator.gateways.document_store.set_verdict("DOC-ID", "Approved")

        drive(application.id, [("VerifyDocument", {"document_id": "DOC-ID"})])

        assert _docs(application.id)["DOC-ID"] == "Approved"

    def test_missing_verdict_is_a_validation_error(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["documents"])
        with pytest.raises(ValidationError, match="document store"):
            orchestrator.execute_workflow_action(application.id, "VerifyDocument", None, {"document_id": "DOC-ID"})

    def test_payment_status_from_the_gateway(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["payment"])
        orchestrator.gateways.payment_gateway.settle(application.id, "5000")

        drive(application.id, ["RecordPayment"])

        payment = db.session.scalars(select(Payment).where(Payment.application_id == application.id)).one()
        assert payment.status == "Success"
        assert payment.transaction_id == f"LOCAL-TXN-{application.id}"
        assert payment.paid_at is not None

    def test_unsettled_payment_stays_pending(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["payment"])
        result = orchestrator.execute_workflow_action(application.id, "RecordPayment")
        assert result.errors[0]["gate"] == "PaymentGate"
        assert "Pending" in result.errors[0]["reason"]

    def test_failed_hsm_signature_blocks(self, orchestrator, make_application, staff, drive, steps):
        orchestrator.gateways = WorkflowGateways(signature_service=LocalSignatureService(auto_complete=False))
        application = make_application()
        drive(application.id, steps["documents"] + [
            ("VerifyDocument", {"document_id": "DOC-ID", "status": "Approved"}),
            ("VerifyDocument", {"document_id": "DOC-DEGREE", "status": "Approved"}),
            "ForwardToNextRole",
            "RequestSignature",
        ])
        sig = stage_records.latest_signature(application.id, "junior_engineer")
        assert sig.signature_id.startswith("LOCAL-SIG-")
        assert sig.status == "InProgress"
        orchestrator.gateways.signature_service.resolve(sig.signature_id, "Failed")

        drive(application.id, ["CompleteSignature"])
        result = orchestrator.execute_workflow_action(application.id, "ForwardToNextRole")

        db.session.refresh(sig)
        assert sig.status == "Failed"
        assert sig.is_verified is False
        assert result.errors[0]["gate"] == "SignatureGate"

    def test_explicit_verdict_skips_the_collaborator(self, orchestrator, make_application, staff, drive, steps):
        orchestrator.gateways = WorkflowGateways(signature_service=LocalSignatureService(auto_complete=False))
        application = make_application()
        drive(application.id, steps["documents"] + [
            ("VerifyDocument", {"document_id": "DOC-ID", "status": "Approved"}),
            ("VerifyDocument", {"document_id": "DOC-DEGREE", "status": "Approved"}),
            "ForwardToNextRole",
            "RequestSignature",
            ("CompleteSignature", {"status": "Verified", "hsm_transaction_id": "HSM-77"}),
            "ForwardToNextRole",
        ])
        assert orchestrator.get_application(application.id).status == "ASSISTANT_ENGINEER_PENDING"
        sig = stage_records.latest_signature(application.id, "junior_engineer")
        assert sig.status == "Verified"
        assert sig.is_verified is True
        assert sig.hsm_transaction_id == "HSM-77"


# ═════════════════════════════════════════════════════════════════════════════
# Rejection & resubmission
# ═════════════════════════════════════════════════════════════════════════════


class TestResubmission:
    def test_reject_notifies_and_resubmit_reopens_documents(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["documents"] + [
            ("VerifyDocument", {"document_id": "DOC-ID", "status": "Approved"}),
            ("RejectDocument", {"document_id": "DOC-DEGREE", "comment": "Illegible scan"}),
            ("Reject", {"comment": "Degree certificate unreadable"}),
        ])
        assert orchestrator.get_application(application.id).status == "REJECTED_BY_JE"
        assert "application.rejected" in _kinds("asha@example.com")
        assert _docs(application.id) == {"DOC-ID": "Approved", "DOC-DEGREE": "Rejected"}

        result = drive(application.id, ["Submit"])

        assert result.new_status == "SUBMITTED"
        application = orchestrator.get_application(application.id)
        assert application.resubmission_count == 1
        assert _docs(application.id) == {"DOC-ID": "Approved", "DOC-DEGREE": "Pending"}

    def test_resubmission_limit(self, orchestrator, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit"])
        cycle = ["AssignToRole", ("Reject", {"comment": "Incomplete"}), "Submit"]
        for _ in range(orchestrator.settings.max_resubmissions):
            drive(application.id, cycle)
        drive(application.id, cycle[:2])

        result = orchestrator.execute_workflow_action(application.id, "Submit")

        assert result.errors[0]["code"] == "ILLEGAL_TRANSITION"
        assert "resubmission limit" in result.errors[0]["message"]
        application = orchestrator.get_application(application.id)
        assert application.status == "REJECTED_BY_JE"
        assert application.resubmission_count == 3

    def test_one_decision_per_stage_per_round(self, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole", ("Reject", {"comment": "No"}), "Submit",
                               "AssignToRole", ("Reject", {"comment": "Still no"})])
        rounds = db.session.scalars(
            select(StageDecision.round).where(StageDecision.application_id == application.id)
        ).all()
        assert sorted(rounds) == [0, 1]

    def test_close_is_terminal(self, orchestrator, make_application, staff, drive):
        application = make_application()
        result = drive(application.id, ["Submit", "AssignToRole", ("Reject", {"comment": "No"}), "Close"])
        assert result.new_status == "REJECTED"
        assert result.next_actions == []

        refused = orchestrator.execute_workflow_action(application.id, "Submit")
        assert refused.errors[0]["code"] == "ILLEGAL_TRANSITION"
        assert "closed" in refused.errors[0]["message"]


# ═════════════════════════════════════════════════════════════════════════════
# Assignment
# ═════════════════════════════════════════════════════════════════════════════


class TestAssignment:
    def test_auto_assign_on_submission(self, orchestrator, make_application, make_rule, staff):
        make_rule(auto_assign_on_submission=True)
        application = make_application()

        result = orchestrator.execute_workflow_action(application.id, "Submit")

        assert result.success
        assert result.previous_status == "DRAFT"
        assert result.new_status == "JUNIOR_ENGINEER_PENDING"
        assert result.assignment["officer_id"] == staff["JuniorArchitect"].id
        assert "assignment.new" in _kinds(staff["JuniorArchitect"].email)

    def test_no_auto_assign_without_rule(self, orchestrator, make_application, staff):
        result = orchestrator.execute_workflow_action(make_application().id, "Submit")
        assert result.new_status == "SUBMITTED"
        assert result.assignment is None

    def test_failed_auto_assign_is_a_warning(self, orchestrator, make_application, make_rule):
        make_rule(auto_assign_on_submission=True)
        result = orchestrator.execute_workflow_action(make_application().id, "Submit")
        assert result.success
        assert result.new_status == "SUBMITTED"
        assert result.warnings and "Auto-assignment failed" in result.warnings[0]

    def test_silent_rule_sends_no_notification(self, orchestrator, make_application, make_rule, staff, drive):
        make_rule(send_notification=False, auto_assign_on_submission=False)
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])
        assert _kinds(staff["JuniorArchitect"].email) == []

    def test_manual_assignment_through_the_payload(self, orchestrator, make_application, make_officer, staff, drive):
        chosen = make_officer("JuniorArchitect")
        application = make_application()
        result = drive(application.id, ["Submit", ("AssignToRole", {"officer_id": chosen.id})])
        assert result.assignment["officer_id"] == chosen.id
        assert result.assignment["strategy"] == "Manual"

    def test_accept_and_decline_are_write_once(self, orchestrator, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])
        row = audit_service.active_assignment(application.id, "junior_engineer")
        officer_id = staff["JuniorArchitect"].id

        accepted = orchestrator.accept_assignment(row.id, officer_id)
        assert accepted.officer_accepted is True
        assert accepted.accepted_at is not None

        with pytest.raises(ValidationError, match="already answered"):
            orchestrator.accept_assignment(row.id, officer_id, accepted=False)
        audit = db.session.scalars(
            select(AuditLog).where(AuditLog.entity_type == "assignment", AuditLog.entity_id == str(row.id))
        ).all()
        assert [a.action for a in audit] == ["assignment.accept"]

    def test_only_the_assignee_may_answer(self, orchestrator, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])
        row = audit_service.active_assignment(application.id, "junior_engineer")
        with pytest.raises(InvalidAssignmentTargetError):
            orchestrator.accept_assignment(row.id, staff["Clerk"].id)
        with pytest.raises(NotFoundError):
            orchestrator.accept_assignment(9999, staff["Clerk"].id)

    def test_unassign_through_the_orchestrator(self, orchestrator, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])

        event = orchestrator.unassign(application.id, "junior_engineer", reason="Transferred out")

        assert event.action == "Unassigned"
        assert orchestrator.get_application(application.id).assigned_junior_engineer_id is None
        audit = db.session.scalars(select(AuditLog).where(AuditLog.action == "assignment.unassign")).one()
        assert audit.comment == "Transferred out"

        with pytest.raises(ValidationError):
            orchestrator.unassign(application.id, "mayor")

    def test_reassign_moves_to_another_officer(self, orchestrator, make_application, make_officer, staff, drive):
        second = make_officer("JuniorArchitect")
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])

        result = drive(application.id, ["AssignToRole"])

        assert result.new_status == "JUNIOR_ENGINEER_PENDING"
        assert result.assignment["officer_id"] == second.id
        assert result.assignment["previous_officer_id"] == staff["JuniorArchitect"].id
        assert len(audit_service.active_assignments(application.id)) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Applications & notifications
# ═════════════════════════════════════════════════════════════════════════════


class TestApplications:
    def test_create_validates_input(self, orchestrator):
        with pytest.raises(ValidationError, match="applicant_name"):
            orchestrator.create_application(applicant_name=" ", applicant_email="a@example.com",
                                            position_type="Architect")
        with pytest.raises(ValidationError, match="applicant_email"):
            orchestrator.create_application(applicant_name="A", applicant_email="not-an-email",
                                            position_type="Architect")
        with pytest.raises(ValidationError, match="position_type") as exc:
            orchestrator.create_application(applicant_name="A", applicant_email="a@example.com",
                                            position_type="Plumber")
        assert "Architect" in exc.value.details["allowed"]

    def test_create_registers_documents_and_fee(self, orchestrator, make_application):
        application = make_application(position_type="Supervisor2", documents=[
            {"document_id": "DOC-1", "document_type": "identity"},
            {"document_id": "DOC-2", "is_required": False},
        ])
        assert application.status == "DRAFT"
        assert str(application.fee_amount) in ("1000", "1000.00")
        assert _docs(application.id) == {"DOC-1": "Pending", "DOC-2": "Pending"}

    def test_documents_cannot_be_added_after_closing(self, orchestrator, make_application, staff, drive):
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole", ("Reject", {"comment": "No"}), "Close"])
        with pytest.raises(ValidationError, match="closed"):
            orchestrator.register_documents(application.id, ["DOC-LATE"])

    def test_notification_failure_does_not_fail_the_action(self, orchestrator, make_application, make_rule, staff):
        make_rule(auto_assign_on_submission=True)
        application = make_application()
        with patch.object(NotificationService, "create", side_effect=RuntimeError("smtp down")):
            result = orchestrator.execute_workflow_action(application.id, "Submit")
        assert result.success
        assert result.new_status == "JUNIOR_ENGINEER_PENDING"
