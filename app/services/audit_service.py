"""
Audit log & workload statistics.

Read side of the assignment ledger plus the status-change trail:
    - workload_of / workloads_for: active AssignmentHistory rows per officer,
      always counted live from the ledger (never cached)
    - active_assignment / assignment_history: per-application ledger queries
    - officer_statistics / role_workload_summary: reporting aggregates
    - record_status_change / status_history / replay_application_status:
      the application status trail and its replay check

Usage:
    from app.services import audit_service
    audit_service.workload_of(officer_id)
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from app.models import db
from app.models.application import Application
from app.models.assignment import AssignmentHistory
from app.models.audit import AuditLog, write_audit
from app.models.officer import Officer
from app.models.workflow import ApplicationStatus

logger = logging.getLogger(__name__)

STATUS_ACTION_PREFIX = "application."


# ── Workload ─────────────────────────────────────────────────────────────────

def workload_of(officer_id: int) -> int:
    """Number of active assignments held by *officer_id*."""
    return db.session.scalar(
        select(func.count(AssignmentHistory.id)).where(
            AssignmentHistory.assigned_to_officer_id == officer_id,
            AssignmentHistory.is_active.is_(True),
        )
    ) or 0


def workloads_for(officer_ids) -> dict[int, int]:
    """Active-assignment counts for many officers in one query (missing → 0)."""
    ids = list(officer_ids)
    if not ids:
        return {}
    rows = db.session.execute(
        select(AssignmentHistory.assigned_to_officer_id, func.count(AssignmentHistory.id))
        .where(
            AssignmentHistory.assigned_to_officer_id.in_(ids),
            AssignmentHistory.is_active.is_(True),
        )
        .group_by(AssignmentHistory.assigned_to_officer_id)
    ).all()
    counts = {officer_id: 0 for officer_id in ids}
    counts.update({officer_id: count for officer_id, count in rows})
    return counts


def active_assignment(application_id: int, slot: str) -> AssignmentHistory | None:
    return db.session.scalars(
        select(AssignmentHistory).where(
            AssignmentHistory.application_id == application_id,
            AssignmentHistory.role_slot == slot,
            AssignmentHistory.is_active.is_(True),
        ).order_by(AssignmentHistory.id.desc())
    ).first()


def active_assignments(application_id: int) -> list[AssignmentHistory]:
    return db.session.scalars(
        select(AssignmentHistory).where(
            AssignmentHistory.application_id == application_id,
            AssignmentHistory.is_active.is_(True),
        ).order_by(AssignmentHistory.id)
    ).all()


def assignment_history(application_id: int) -> list[AssignmentHistory]:
    return db.session.scalars(
        select(AssignmentHistory)
        .where(AssignmentHistory.application_id == application_id)
        .order_by(AssignmentHistory.id)
    ).all()


def officer_statistics(officer_id: int) -> dict:
    """Totals for one officer, computed from the ledger."""
    rows = db.session.scalars(
        select(AssignmentHistory).where(AssignmentHistory.assigned_to_officer_id == officer_id)
    ).all()
    active = [r for r in rows if r.is_active]
    finished = [r for r in rows if not r.is_active and r.assignment_duration_hours is not None]
    avg_hours = (
        round(sum(r.assignment_duration_hours for r in finished) / len(finished), 2)
        if finished else None
    )
    return {
        "officer_id": officer_id,
        "active": len(active),
        "total": len(rows),
        "completed": len(finished),
        "accepted": sum(1 for r in rows if r.officer_accepted is True),
        "declined": sum(1 for r in rows if r.officer_accepted is False),
        "average_duration_hours": avg_hours,
    }


def role_workload_summary(role: str | None = None, *, include_inactive: bool = False) -> list[dict]:
    q = select(Officer).order_by(Officer.role, Officer.employee_id, Officer.id)
    if role:
        q = q.where(Officer.role == role)
    if not include_inactive:
        q = q.where(Officer.is_active.is_(True))
    officers = db.session.scalars(q).all()
    counts = workloads_for(o.id for o in officers)
    return [
        {
            "officer_id": o.id,
            "name": o.name,
            "employee_id": o.employee_id,
            "role": o.role,
            "is_active": o.is_active,
            "workload": counts.get(o.id, 0),
        }
        for o in officers
    ]


# ── Status trail ─────────────────────────────────────────────────────────────

def record_status_change(
    application: Application,
    *,
    old_status: str,
    new_status: str,
    action: str,
    actor_officer_id: int | None = None,
    comment: str = "",
    extra: dict | None = None,
) -> AuditLog:
    """Append the status-change row for one transition (flush only)."""
    diff = {"status": {"old": old_status, "new": new_status}}
    if extra:
        diff.update(extra)
    actor = "system"
    if actor_officer_id is not None:
        officer = db.session.get(Officer, actor_officer_id)
        actor = officer.employee_id if officer else f"officer:{actor_officer_id}"
    return write_audit(
        entity_type="application",
        entity_id=application.id,
        action=f"{STATUS_ACTION_PREFIX}{action}",
        actor=actor,
        actor_officer_id=actor_officer_id,
        comment=comment,
        diff=diff,
    )


def status_history(application_id: int) -> list[AuditLog]:
    return db.session.scalars(
        select(AuditLog)
        .where(
            AuditLog.entity_type == "application",
            AuditLog.entity_id == str(application_id),
        )
        .order_by(AuditLog.id)
    ).all()


def replay_application_status(application_id: int) -> dict:
    """Rebuild the status from the audit trail and compare with the stored one.

    Every status row must start where the previous one ended; a break in the
    chain or a final status that differs from the application is reported.
    """
    application = db.session.get(Application, application_id)
    status = ApplicationStatus.DRAFT.value
    steps = []
    breaks = []
    for row in status_history(application_id):
        change = row.diff.get("status")
        if not change:
            continue
        if change.get("old") != status:
            breaks.append({"audit_id": row.id, "expected": status, "found": change.get("old")})
        status = change.get("new")
        steps.append({
            "audit_id": row.id,
            "action": row.action[len(STATUS_ACTION_PREFIX):],
            "from": change.get("old"),
            "to": status,
            "actor": row.actor,
            "timestamp": row.to_dict()["timestamp"],
        })
    current = application.status if application else None
    consistent = not breaks and current == status
    if not consistent:
        logger.warning(
            "Status replay mismatch for application %s: replayed=%s stored=%s",
            application_id, status, current,
            extra={"application_id": application_id, "event_type": "replay_mismatch"},
        )
    return {
        "application_id": application_id,
        "replayed_status": status,
        "current_status": current,
        "consistent": consistent,
        "breaks": breaks,
        "steps": steps,
    }
