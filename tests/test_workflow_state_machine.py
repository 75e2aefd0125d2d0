"""
Workflow state machine and transition table.

Covers:
    - default table shape: no edges out of terminal statuses, every
      non-terminal status has a way forward, rejections need a comment
    - seed validation, YAML loading, idempotent and replacing seeds
    - rule lookup errors (closed application, missing edge)
    - transition unit: version check, audit trail, slot release, rollback
"""

import pytest
import yaml
from sqlalchemy import func, select

from app.core.exceptions import (
    ConcurrentModificationError,
    GateNotSatisfiedError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.application import Appointment
from app.models.audit import AuditLog
from app.models.workflow import (
    DEFAULT_TRANSITIONS,
    OWNING_SLOT,
    TERMINAL_STATUSES,
    ApplicationStatus,
    WorkflowTransition,
)
from app.services import audit_service
from app.services.workflow_state_machine import (
    TransitionTable,
    load_transition_rows,
    seed_transitions,
    validate_transition_rows,
)

pytestmark = pytest.mark.unit


# ═════════════════════════════════════════════════════════════════════════════
# Default table
# ═════════════════════════════════════════════════════════════════════════════


class TestDefaultTable:
    def test_no_edge_leaves_a_terminal_status(self):
        assert not [r for r in DEFAULT_TRANSITIONS if r["from_status"] in TERMINAL_STATUSES]

    def test_every_open_status_has_an_outgoing_edge(self):
        sources = {r["from_status"] for r in DEFAULT_TRANSITIONS}
        open_statuses = {s.value for s in ApplicationStatus} - TERMINAL_STATUSES
        assert open_statuses <= sources

    def test_edges_are_unique_per_status_and_action(self):
        keys = [(r["from_status"], r["action"]) for r in DEFAULT_TRANSITIONS]
        assert len(keys) == len(set(keys))

    def test_rejections_require_a_comment(self):
        rejects = [r for r in DEFAULT_TRANSITIONS if r["action"] in ("Reject", "RejectDocument")]
        assert rejects
        assert all(r["requires_comment"] for r in rejects)

    def test_owned_statuses_allow_reassignment_and_escalation(self):
        for status, slot in OWNING_SLOT.items():
            for action in ("AssignToRole", "Escalate"):
                row = next(r for r in DEFAULT_TRANSITIONS
                           if r["from_status"] == status and r["action"] == action)
                assert row["to_status"] == status
                assert row["assign_slot"] == slot

    def test_certificate_needs_payment_and_both_final_signatures(self):
        row = next(r for r in DEFAULT_TRANSITIONS if r["action"] == "IssueCertificate")
        assert set(row["gates"]) == {
            "payment",
            "signature:executive_engineer_stage2",
            "signature:city_engineer_stage2",
        }

    def test_default_rows_pass_validation(self):
        assert len(validate_transition_rows(DEFAULT_TRANSITIONS)) == len(DEFAULT_TRANSITIONS)


# ═════════════════════════════════════════════════════════════════════════════
# Seeding
# ═════════════════════════════════════════════════════════════════════════════


class TestSeeding:
    def test_seed_is_idempotent(self):
        count = db.session.scalar(select(func.count(WorkflowTransition.id)))
        assert count == len(DEFAULT_TRANSITIONS)
        assert seed_transitions() == 0

    def test_replace_rewrites_the_table_and_audits(self):
        rows = [{"from_status": "DRAFT", "action": "Submit", "to_status": "SUBMITTED"}]
        assert seed_transitions(rows, replace=True) == 1
        db.session.commit()
        assert TransitionTable.lookup("SUBMITTED", "AssignToRole") is None
        assert TransitionTable.lookup("DRAFT", "Submit").to_status == "SUBMITTED"
        audit = db.session.scalars(
            select(AuditLog).where(AuditLog.action == "workflow_transition.seed")
        ).all()
        assert audit[-1].diff["rows"] == {"old": len(DEFAULT_TRANSITIONS), "new": 1}

    @pytest.mark.parametrize("row, field", [
        ({"from_status": "NOPE", "action": "Submit", "to_status": "SUBMITTED"}, "from_status"),
        ({"from_status": "DRAFT", "action": "Teleport", "to_status": "SUBMITTED"}, "action"),
        ({"from_status": "DRAFT", "action": "Submit", "to_status": "SUBMITTED",
          "assign_slot": "janitor"}, "assign_slot"),
        ({"from_status": "DRAFT", "action": "Submit", "to_status": "SUBMITTED",
          "gates": ["signature:nobody"]}, "gates"),
        ({"from_status": "DRAFT", "action": "RequestSignature", "to_status": "SUBMITTED"}, "to_status"),
    ])
    def test_invalid_rows_are_rejected(self, row, field):
        with pytest.raises(ValidationError) as exc:
            validate_transition_rows([row])
        assert field in exc.value.details

    def test_duplicate_edge_is_rejected(self):
        row = {"from_status": "DRAFT", "action": "Submit", "to_status": "SUBMITTED"}
        with pytest.raises(ValidationError, match="Duplicate"):
            validate_transition_rows([row, dict(row)])

    def test_load_rows_from_yaml(self, tmp_path):
        path = tmp_path / "transitions.yaml"
        path.write_text(yaml.safe_dump({"transitions": [
            {"from_status": "DRAFT", "action": "Submit", "to_status": "SUBMITTED"},
            {"from_status": "SUBMITTED", "action": "AssignToRole",
             "to_status": "JUNIOR_ENGINEER_PENDING", "assign_slot": "junior_engineer"},
        ]}))
        rows = load_transition_rows(str(path))
        assert [r["action"] for r in rows] == ["Submit", "AssignToRole"]
        assert rows[1]["assign_slot"] == "junior_engineer"
        assert rows[0]["gates"] == []

    def test_inactive_rows_are_ignored_by_lookup(self):
        row = db.session.scalars(
            select(WorkflowTransition).where(
                WorkflowTransition.from_status == "DRAFT", WorkflowTransition.action == "Submit",
            )
        ).one()
        row.is_active = False
        db.session.commit()
        assert TransitionTable.lookup("DRAFT", "Submit") is None

    def test_signature_request_into_a_non_signing_status_is_refused(self, orchestrator, make_application):
        db.session.add(WorkflowTransition(
            from_status="DRAFT", action="RequestSignature", to_status="SUBMITTED",
        ))
        db.session.commit()
        application = make_application()

        result = orchestrator.execute_workflow_action(application.id, "RequestSignature")

        assert result.errors[0]["code"] == "ILLEGAL_TRANSITION"
        assert "not a signing status" in result.errors[0]["message"]
        assert orchestrator.get_application(application.id).status == "DRAFT"


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransition:
    def test_rule_for_missing_edge(self, orchestrator, make_application):
        application = make_application()
        with pytest.raises(IllegalTransitionError) as exc:
            orchestrator.state_machine.rule_for(application, "Approve")
        assert exc.value.to_dict()["current_status"] == "DRAFT"

    def test_rule_for_closed_application(self, orchestrator, make_application):
        application = make_application()
        application.status = ApplicationStatus.COMPLETED.value
        db.session.commit()
        with pytest.raises(IllegalTransitionError, match="closed"):
            orchestrator.state_machine.rule_for(application, "Submit")
        assert orchestrator.state_machine.available_actions(application) == []

    def test_unknown_application(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.state_machine.transition(999, "Submit")

    def test_submit_numbers_the_application(self, orchestrator, make_application):
        application = make_application()
        outcome = orchestrator.state_machine.transition(application.id, "Submit")
        assert outcome.old_status == "DRAFT"
        assert outcome.new_status == "SUBMITTED"
        db.session.refresh(application)
        assert application.application_number.startswith("PMC-")
        assert application.application_number.endswith(f"{application.id:05d}")
        assert str(application.fee_amount) in ("5000", "5000.00")
        assert application.submitted_at is not None

    def test_stale_expected_version(self, orchestrator, make_application):
        application = make_application()
        stale = application.version
        orchestrator.state_machine.transition(application.id, "Submit")
        with pytest.raises(ConcurrentModificationError, match="expected version"):
            orchestrator.state_machine.transition(
                application.id, "AssignToRole", expected_version=stale,
            )
        assert orchestrator.get_application(application.id).status == "SUBMITTED"

    def test_version_increases_on_every_transition(self, orchestrator, make_application, staff):
        application = make_application()
        first = orchestrator.state_machine.transition(application.id, "Submit")
        second = orchestrator.state_machine.transition(application.id, "AssignToRole")
        assert second.version > first.version > 1

    def test_status_change_is_audited(self, orchestrator, make_application, staff):
        application = make_application()
        orchestrator.state_machine.transition(application.id, "Submit")
        orchestrator.state_machine.transition(application.id, "AssignToRole")
        rows = [r for r in audit_service.status_history(application.id) if "status" in r.diff]
        assert [r.action for r in rows] == ["application.Submit", "application.AssignToRole"]
        assert rows[1].diff["status"] == {"old": "SUBMITTED", "new": "JUNIOR_ENGINEER_PENDING"}
        assert rows[1].diff["assignment"]["officer_id"] == staff["JuniorArchitect"].id

        replay = audit_service.replay_application_status(application.id)
        assert replay["consistent"] is True
        assert replay["replayed_status"] == "JUNIOR_ENGINEER_PENDING"

    def test_self_loop_keeps_status_timestamp(self, orchestrator, make_application, staff):
        application = make_application()
        orchestrator.state_machine.transition(application.id, "Submit")
        orchestrator.state_machine.transition(application.id, "AssignToRole")
        orchestrator.state_machine.transition(
            application.id, "ScheduleAppointment", payload={"scheduled_at": "2026-03-10T10:00:00Z"},
        )
        before = orchestrator.get_application(application.id).status_changed_at
        orchestrator.state_machine.transition(
            application.id, "ScheduleAppointment", payload={"scheduled_at": "2026-03-12T10:00:00Z"},
        )
        after = orchestrator.get_application(application.id)
        assert after.status == "APPOINTMENT_SCHEDULED"
        assert after.status_changed_at == before

        appointments = db.session.scalars(
            select(Appointment).where(Appointment.application_id == application.id).order_by(Appointment.id)
        ).all()
        assert [a.status for a in appointments] == ["Rescheduled", "Scheduled"]
        assert appointments[0].rescheduled_to_id == appointments[1].id
        assert appointments[1].rescheduled_from_id == appointments[0].id

    def test_missing_comment_is_a_validation_error(self, orchestrator, make_application, staff):
        application = make_application()
        orchestrator.state_machine.transition(application.id, "Submit")
        orchestrator.state_machine.transition(application.id, "AssignToRole")
        with pytest.raises(ValidationError, match="comment"):
            orchestrator.state_machine.transition(application.id, "Reject", comment="   ")

    def test_failed_gate_keeps_status_and_version(self, orchestrator, make_application, staff):
        application = make_application()
        sm = orchestrator.state_machine
        sm.transition(application.id, "Submit")
        sm.transition(application.id, "AssignToRole")
        sm.transition(application.id, "ScheduleAppointment", payload={"scheduled_at": "2026-03-10T10:00:00Z"})
        sm.transition(application.id, "CompleteAppointment")
        version = orchestrator.get_application(application.id).version

        with pytest.raises(GateNotSatisfiedError) as exc:
            sm.transition(application.id, "ForwardToNextRole")
        assert exc.value.gate == "DocumentGate"

        application = orchestrator.get_application(application.id)
        assert application.status == "DOCUMENT_VERIFICATION_PENDING"
        assert application.version == version

    def test_forwarding_releases_the_previous_slot(self, orchestrator, make_application, staff, drive, steps):
        application = make_application()
        drive(application.id, steps["assistant_engineer"])
        active = audit_service.active_assignments(application.id)
        assert [(r.role_slot, r.assigned_to_officer_id) for r in active] == [
            ("assistant_engineer", staff["AssistantArchitect"].id),
        ]
        application = orchestrator.get_application(application.id)
        # the column keeps the last handler of a released slot
        assert application.assigned_junior_engineer_id == staff["JuniorArchitect"].id
