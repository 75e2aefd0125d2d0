"""
Shared pytest fixtures for the Professional Licensing Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - session: Per-test app context, transition seed, DB reset (autouse)
    - client: Flask test client
    - orchestrator: the app's WorkflowOrchestrator with fresh local collaborators
    - make_officer / make_rule / make_application: ORM factories
    - staff: one active officer per role of the Architect chain
    - drive: executes a list of actions and asserts each one succeeds
    - steps: action sequences reaching each stage of the Architect chain
"""

import itertools

import pytest

from app import create_app
from app.integrations import WorkflowGateways
from app.models import db as _db
from app.models.assignment import AutoAssignmentRule
from app.models.officer import Officer, OfficerRole
from app.services.scheduler_service import SchedulerService
from app.services.workflow_locks import reset_locks
from app.services.workflow_state_machine import seed_transitions


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, seed the workflow, recreate tables afterwards."""
    with app.app_context():
        reset_locks()
        app.extensions["workflow"].gateways = WorkflowGateways()
        seed_transitions()
        _db.session.commit()
        SchedulerService.ensure_jobs_registered()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        reset_locks()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def orchestrator(app):
    return app.extensions["workflow"]


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_officer():
    """Create and commit an Officer; employee ids sort in creation order."""
    counter = itertools.count(1)

    def _make(role, *, experience_months=24, skills=None, is_active=True, name=None):
        role = OfficerRole(role).value
        n = next(counter)
        officer = Officer(
            name=name or f"{role} {n}",
            email=f"{role.lower()}.{n}@pmc.test",
            employee_id=f"EMP-{n:04d}",
            role=role,
            experience_months=experience_months,
            skills=skills or [],
            is_active=is_active,
        )
        _db.session.add(officer)
        _db.session.commit()
        return officer

    return _make


@pytest.fixture()
def make_rule():
    def _make(position_type="Architect", role="JuniorArchitect", **fields):
        rule = AutoAssignmentRule(
            name=fields.pop("name", f"{position_type}/{role}"),
            position_type=position_type,
            target_officer_role=role,
            **fields,
        )
        _db.session.add(rule)
        _db.session.commit()
        return rule

    return _make


@pytest.fixture()
def make_application(orchestrator):
    def _make(position_type="Architect", documents=("DOC-ID", "DOC-DEGREE"), **kwargs):
        return orchestrator.create_application(
            applicant_name=kwargs.get("applicant_name", "Asha Kulkarni"),
            applicant_email=kwargs.get("applicant_email", "asha@example.com"),
            position_type=position_type,
            documents=list(documents) if documents else None,
        )

    return _make


@pytest.fixture()
def staff(make_officer):
    """One officer per role of the Architect approval chain."""
    return {
        role: make_officer(role)
        for role in (
            "JuniorArchitect",
            "AssistantArchitect",
            "ExecutiveEngineer",
            "CityEngineer",
            "Clerk",
        )
    }


# ── Workflow driver ──────────────────────────────────────────────────────


@pytest.fixture()
def drive(orchestrator):
    """Run ``[(action, payload), ...]`` on one application, asserting each succeeds."""

    def _drive(application_id, steps, **kwargs):
        result = None
        for step in steps:
            action, payload = (step, {}) if isinstance(step, str) else (step[0], dict(step[1]))
            comment = payload.pop("comment", None)
            result = orchestrator.execute_workflow_action(
                application_id, action, None, payload, comment=comment, **kwargs,
            )
            assert result.success, (action, result.errors)
        return result

    return _drive


@pytest.fixture()
def steps():
    """Action sequences from DRAFT to each stage of the Architect chain."""
    review = ["Approve", "RequestSignature", "CompleteSignature", "ForwardToNextRole"]
    to_je = ["Submit", "AssignToRole"]
    to_documents = to_je + [
        ("ScheduleAppointment", {"scheduled_at": "2026-03-10T10:00:00Z", "location": "Ward office 4"}),
        "CompleteAppointment",
    ]
    to_ae = to_documents + [
        ("VerifyDocument", {"document_id": "DOC-ID", "status": "Approved"}),
        ("VerifyDocument", {"document_id": "DOC-DEGREE", "status": "Approved"}),
        "ForwardToNextRole",
        "RequestSignature",
        "CompleteSignature",
        "ForwardToNextRole",
    ]
    to_payment = to_ae + review * 3
    to_completed = to_payment + [
        ("RecordPayment", {"status": "Success", "amount_paid": "5000"}),
        "ForwardToNextRole",
        "Approve",
        "ForwardToNextRole",
        "RequestSignature",
        "CompleteSignature",
        "ForwardToNextRole",
        "RequestSignature",
        "CompleteSignature",
        "IssueCertificate",
        "ForwardToNextRole",
    ]
    return {
        "junior_engineer": to_je,
        "documents": to_documents,
        "assistant_engineer": to_ae,
        "payment": to_payment,
        "completed": to_completed,
    }
