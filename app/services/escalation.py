"""
Escalation sweep.

An active assignment the officer has not accepted within the matching
rule's ``escalation_time_hours`` is escalated: the orchestrator issues the
``Escalate`` action, which transfers the slot to the least loaded officer
of the rule's ``escalation_role``.

When nobody can take it, a standing alert goes to the administrator. The
alert carries a dedup key, so the same failure is raised once until it is
read; the application stays where it is.

Usage:
    from app.services.escalation import run_escalations
    summary = run_escalations(orchestrator)
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.application import Application
from app.models.assignment import AssignmentHistory
from app.models.base import utcnow
from app.models.workflow import OWNING_SLOT, WorkflowAction, is_terminal
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)


def _alert_key(application_id: int, slot: str) -> str:
    return f"escalation-failed-{application_id}-{slot}"


def overdue_assignments(engine, now: datetime) -> list[tuple[AssignmentHistory, object]]:
    """(assignment, rule) pairs whose response window has elapsed."""
    rows = db.session.scalars(
        select(AssignmentHistory)
        .where(
            AssignmentHistory.is_active.is_(True),
            or_(AssignmentHistory.officer_accepted.is_(None),
                AssignmentHistory.officer_accepted.is_(False)),
        )
        .order_by(AssignmentHistory.assigned_at, AssignmentHistory.id)
    ).all()

    due = []
    for row in rows:
        application = db.session.get(Application, row.application_id)
        if application is None or is_terminal(application.status):
            continue
        if OWNING_SLOT.get(application.status) != row.role_slot:
            continue
        rule = engine.find_rule(application.position_type, engine.target_role(application, row.role_slot), now)
        if rule is None or not rule.escalation_time_hours or not rule.escalation_role:
            continue
        if row.age_hours(now) >= rule.escalation_time_hours:
            due.append((row, rule))
    return due


def raise_standing_alert(application_id: int, slot: str, reason: str, admin_email: str):
    notif = NotificationService.create(
        title=f"Escalation failed for application {application_id}",
        message=f"Slot {slot}: {reason}. The application keeps its current status until resolved.",
        category="escalation",
        severity="error",
        recipient=admin_email,
        notification_type="escalation.failed",
        payload={"application_id": application_id, "role_slot": slot, "reason": reason},
        application_id=application_id,
        dedup_key=_alert_key(application_id, slot),
    )
    db.session.commit()
    return notif


def run_escalations(orchestrator, *, now: datetime | None = None) -> dict:
    """Escalate every overdue assignment once; returns a summary for the caller/job log."""
    now = now or utcnow()
    due = overdue_assignments(orchestrator.engine, now)
    summary = {"checked": len(due), "escalated": [], "alerts": [], "skipped": 0, "failed": 0}

    for row, rule in due:
        application_id, slot = row.application_id, row.role_slot
        try:
            result = orchestrator.execute_workflow_action(
                application_id,
                WorkflowAction.ESCALATE.value,
                None,
                {"rule_id": rule.id},
                comment=f"No response within {rule.escalation_time_hours}h",
                now=now,
            )
        except ValidationError as exc:
            summary["failed"] += 1
            logger.warning("Escalation of application %s refused: %s", application_id, exc,
                           extra={"application_id": application_id, "event_type": "escalation_failed"})
            continue

        if result.success:
            summary["escalated"].append({
                "application_id": application_id,
                "role_slot": slot,
                "from_officer_id": row.assigned_to_officer_id,
                "to_officer_id": (result.assignment or {}).get("officer_id"),
            })
            continue

        codes = {err.get("code") for err in result.errors}
        if "CONCURRENT_MODIFICATION" in codes:
            summary["skipped"] += 1
            logger.info("Escalation of application %s skipped: busy", application_id,
                        extra={"application_id": application_id, "event_type": "escalation_skipped"})
        elif "NO_ELIGIBLE_OFFICER" in codes:
            reason = "; ".join(err.get("message", "") for err in result.errors)
            notif = raise_standing_alert(application_id, slot, reason, orchestrator.settings.admin_email)
            summary["alerts"].append({"application_id": application_id, "notification_id": notif.id})
            logger.warning("Escalation of application %s found no officer", application_id,
                           extra={"application_id": application_id, "event_type": "escalation_alert"})
        else:
            summary["failed"] += 1
            logger.warning("Escalation of application %s failed: %s", application_id, result.errors,
                           extra={"application_id": application_id, "event_type": "escalation_failed"})

    if due:
        logger.info("Escalation sweep: %d due, %d escalated, %d alerts",
                    len(due), len(summary["escalated"]), len(summary["alerts"]))
    return summary
