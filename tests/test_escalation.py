"""
Escalation sweep and the scheduler job that runs it.
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import ConcurrentModificationError
from app.models import db
from app.models.base import utcnow
from app.models.notification import Notification
from app.models.scheduling import ScheduledJob
from app.services import audit_service, scheduler_service
from app.services.escalation import overdue_assignments, run_escalations
from app.services.scheduler_service import SchedulerService, get_registered_jobs
from app.services.workflow_locks import application_guard, role_pool_guard
from app.services.workflow_state_machine import WorkflowStateMachine

pytestmark = pytest.mark.unit

SLOT = "junior_engineer"


@pytest.fixture()
def escalation_rule(make_rule):
    return make_rule(
        escalation_time_hours=24,
        escalation_role="AssistantArchitect",
        auto_assign_on_submission=False,
    )


@pytest.fixture()
def assigned(make_application, staff, drive, escalation_rule):
    """An Architect application sitting with the junior officer."""
    application = make_application()
    drive(application.id, ["Submit", "AssignToRole"])
    return application


def _later(hours):
    return utcnow() + timedelta(hours=hours)


class TestSweep:
    def test_overdue_assignment_is_transferred(self, orchestrator, assigned, staff):
        summary = run_escalations(orchestrator, now=_later(25))

        assert summary["checked"] == 1
        assert summary["escalated"] == [{
            "application_id": assigned.id,
            "role_slot": SLOT,
            "from_officer_id": staff["JuniorArchitect"].id,
            "to_officer_id": staff["AssistantArchitect"].id,
        }]
        row = audit_service.active_assignment(assigned.id, SLOT)
        assert row.action == "Transferred"
        assert row.assigned_to_officer_id == staff["AssistantArchitect"].id
        assert row.reason == "Escalated: no response within 24h"
        assert len(audit_service.active_assignments(assigned.id)) == 1

        application = orchestrator.get_application(assigned.id)
        assert application.status == "JUNIOR_ENGINEER_PENDING"
        notes = db.session.scalars(
            select(Notification).where(Notification.recipient == staff["AssistantArchitect"].email)
        ).all()
        assert [n.notification_type for n in notes] == ["assignment.escalated"]

    def test_not_yet_due(self, orchestrator, assigned):
        assert overdue_assignments(orchestrator.engine, _later(23)) == []
        assert run_escalations(orchestrator, now=_later(23))["checked"] == 0

    def test_accepted_assignment_is_not_escalated(self, orchestrator, assigned, staff):
        row = audit_service.active_assignment(assigned.id, SLOT)
        orchestrator.accept_assignment(row.id, staff["JuniorArchitect"].id)
        assert overdue_assignments(orchestrator.engine, _later(48)) == []

    def test_declined_assignment_is_escalated(self, orchestrator, assigned, staff):
        row = audit_service.active_assignment(assigned.id, SLOT)
        orchestrator.accept_assignment(row.id, staff["JuniorArchitect"].id, accepted=False)
        assert len(run_escalations(orchestrator, now=_later(25))["escalated"]) == 1

    def test_rule_without_escalation_settings(self, orchestrator, make_application, make_rule, staff, drive):
        make_rule(auto_assign_on_submission=False)
        application = make_application()
        drive(application.id, ["Submit", "AssignToRole"])
        assert overdue_assignments(orchestrator.engine, _later(1000)) == []

    def test_escalation_relaxes_role_constraints(self, orchestrator, assigned, make_rule, staff):
        make_rule(role="AssistantArchitect", minimum_experience_months=120)
        summary = run_escalations(orchestrator, now=_later(25))
        assert summary["escalated"][0]["to_officer_id"] == staff["AssistantArchitect"].id

    def test_no_officer_raises_one_standing_alert(self, orchestrator, assigned, staff):
        staff["AssistantArchitect"].is_active = False
        db.session.commit()

        first = run_escalations(orchestrator, now=_later(25))
        second = run_escalations(orchestrator, now=_later(26))

        assert first["alerts"] and second["alerts"]
        assert first["alerts"][0]["notification_id"] == second["alerts"][0]["notification_id"]
        alerts = db.session.scalars(
            select(Notification).where(Notification.notification_type == "escalation.failed")
        ).all()
        assert len(alerts) == 1
        assert alerts[0].recipient == orchestrator.settings.admin_email
        assert alerts[0].payload["role_slot"] == SLOT

        row = audit_service.active_assignment(assigned.id, SLOT)
        assert row.assigned_to_officer_id == staff["JuniorArchitect"].id

    def test_read_alert_is_raised_again(self, orchestrator, assigned, staff):
        staff["AssistantArchitect"].is_active = False
        db.session.commit()
        first = run_escalations(orchestrator, now=_later(25))
        db.session.get(Notification, first["alerts"][0]["notification_id"]).mark_read()
        db.session.commit()

        second = run_escalations(orchestrator, now=_later(26))

        assert second["alerts"][0]["notification_id"] != first["alerts"][0]["notification_id"]

    def test_busy_application_is_skipped(self, orchestrator, assigned):
        with application_guard(assigned.id):
            summary = run_escalations(orchestrator, now=_later(25))
        assert summary["skipped"] == 1
        assert summary["escalated"] == []

    def test_closed_or_unowned_applications_are_ignored(self, orchestrator, assigned, drive):
        drive(assigned.id, [("Reject", {"comment": "Incomplete file"})])
        assert overdue_assignments(orchestrator.engine, _later(48)) == []


class TestEscalationPoolLock:
    """Escalation serialises on the escalation role's pool, not the slot's own."""

    @pytest.fixture()
    def impatient(self, orchestrator):
        settings = replace(orchestrator.settings, role_pool_lock_timeout_seconds=0.05)
        return WorkflowStateMachine(orchestrator.engine, settings)

    @staticmethod
    def _hold_pool(role):
        acquired, release = threading.Event(), threading.Event()

        def _holder():
            with role_pool_guard(role, 999):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=_holder, daemon=True)
        thread.start()
        assert acquired.wait(5)
        return release, thread

    def test_pool_role_is_the_escalation_role(self, orchestrator, assigned, escalation_rule):
        engine = orchestrator.engine
        assert engine.pool_role(assigned, SLOT).value == "JuniorArchitect"
        assert engine.pool_role(assigned, SLOT, escalation_rule).value == "AssistantArchitect"

    def test_busy_escalation_pool_blocks_the_transfer(self, impatient, assigned, staff):
        release, thread = self._hold_pool("AssistantArchitect")
        try:
            with pytest.raises(ConcurrentModificationError, match="AssistantArchitect"):
                impatient.transition(assigned.id, "Escalate", now=_later(25))
        finally:
            release.set()
            thread.join(5)

        row = audit_service.active_assignment(assigned.id, SLOT)
        assert row.assigned_to_officer_id == staff["JuniorArchitect"].id
        assert row.action != "Transferred"

    def test_busy_slot_pool_does_not_block_the_transfer(self, impatient, assigned, staff):
        release, thread = self._hold_pool("JuniorArchitect")
        try:
            outcome = impatient.transition(assigned.id, "Escalate", now=_later(25))
        finally:
            release.set()
            thread.join(5)

        assert outcome.assignment.officer_id == staff["AssistantArchitect"].id


# ── Scheduler job ────────────────────────────────────────────────────────────


class TestEscalationJob:
    def test_job_is_registered(self):
        assert "assignment_escalation" in get_registered_jobs()
        job = db.session.scalars(
            select(ScheduledJob).where(ScheduledJob.job_name == "assignment_escalation")
        ).one()
        assert job.interval_minutes == 15
        assert job.is_enabled

    def test_run_records_the_outcome(self, assigned):
        db.session.commit()
        outcome = SchedulerService.run_job("assignment_escalation")
        db.session.expire_all()

        assert outcome["status"] == "success"
        assert outcome["result"]["checked"] == 0
        job = db.session.scalars(
            select(ScheduledJob).where(ScheduledJob.job_name == "assignment_escalation")
        ).one()
        assert job.run_count == 1
        assert job.last_run_status == "success"

    def test_disabled_job_is_skipped(self):
        SchedulerService.toggle_job("assignment_escalation", False)
        assert SchedulerService.run_job("assignment_escalation")["status"] == "skipped"

    def test_unknown_job(self):
        outcome = SchedulerService.run_job("nightly_backup")
        assert outcome["status"] == "error"
        assert "Unknown job" in outcome["error"]

    def test_overlapping_trigger_is_skipped(self):
        with scheduler_service._running["assignment_escalation"]:
            outcome = SchedulerService.run_job("assignment_escalation")
        assert outcome["status"] == "skipped"
        assert outcome["error"] == "already running"

    def test_due_jobs_follow_the_interval(self):
        assert SchedulerService.due_jobs() == ["assignment_escalation"]
        db.session.commit()
        SchedulerService.run_job("assignment_escalation")
        db.session.expire_all()

        assert SchedulerService.due_jobs() == []
        assert SchedulerService.due_jobs(now=_later(0.25)) == ["assignment_escalation"]

    def test_run_due_jobs_cli(self, app):
        db.session.commit()
        runner = app.test_cli_runner()

        first = runner.invoke(args=["run-due-jobs"])
        db.session.expire_all()
        second = runner.invoke(args=["run-due-jobs"])

        assert "assignment_escalation: success" in first.output
        assert "No jobs due." in second.output
