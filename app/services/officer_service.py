"""
Officer directory and assignment-rule administration.

Validation, audit rows and commits for the CRUD side of routing:
officers (the assignment targets) and AutoAssignmentRule rows (the
per position-type/role configuration the engine reads).
"""

from __future__ import annotations

import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.assignment import AssignmentStrategy, AutoAssignmentRule
from app.models.audit import write_audit
from app.models.base import as_utc
from app.models.officer import Officer, OfficerRole, PositionType
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

_OFFICER_UPDATABLE = ("name", "department", "experience_months", "skills", "is_active", "role")
_RULE_FIELDS = (
    "name", "description", "position_type", "target_officer_role", "strategy", "priority",
    "max_workload_per_officer", "minimum_experience_months", "required_skills", "is_active",
    "effective_from", "effective_to", "auto_assign_on_submission", "send_notification",
    "escalation_time_hours", "escalation_role",
)


def _enum_value(enum_cls, value, field):
    try:
        return enum_cls(value).value
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field}: {value}", details={"allowed": [e.value for e in enum_cls]},
        ) from exc


def _non_negative_int(value, field, *, allow_none=False):
    if value is None and allow_none:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer") from exc
    if number < 0:
        raise ValidationError(f"{field} must be >= 0")
    return number


def _skills(value, field="skills"):
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        raise ValidationError(f"{field} must be a list of strings")
    return [s.strip() for s in value if s.strip()]


# ── Officers ─────────────────────────────────────────────────────────────────

def get_officer(officer_id: int) -> Officer:
    officer = db.session.get(Officer, officer_id)
    if officer is None:
        raise NotFoundError(resource="Officer", resource_id=officer_id)
    return officer


def list_officers(role: str | None = None, active: bool | None = None) -> list[Officer]:
    q = select(Officer).order_by(Officer.role, Officer.employee_id, Officer.id)
    if role:
        q = q.where(Officer.role == role)
    if active is not None:
        q = q.where(Officer.is_active.is_(active))
    return db.session.scalars(q).all()


def create_officer(data: dict) -> Officer:
    name = (data.get("name") or "").strip()
    employee_id = (data.get("employee_id") or "").strip()
    if not name:
        raise ValidationError("name is required")
    if not employee_id:
        raise ValidationError("employee_id is required")
    try:
        email = validate_email(data.get("email") or "", check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid email: {exc}") from exc
    role = _enum_value(OfficerRole, data.get("role"), "role")

    if db.session.scalars(select(Officer).where(Officer.email == email)).first():
        raise ConflictError("Officer", "email", email)
    if db.session.scalars(select(Officer).where(Officer.employee_id == employee_id)).first():
        raise ConflictError("Officer", "employee_id", employee_id)

    officer = Officer(
        name=name,
        email=email,
        employee_id=employee_id,
        role=role,
        department=data.get("department", ""),
        experience_months=_non_negative_int(data.get("experience_months", 0), "experience_months"),
        skills=_skills(data.get("skills")),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(officer)
    db.session.flush()
    write_audit(entity_type="officer", entity_id=officer.id, action="officer.create",
                diff={"role": role, "employee_id": employee_id})
    db.session.commit()
    logger.info("Officer %s created (%s)", officer.id, role,
                extra={"officer_id": officer.id, "event_type": "officer_created"})
    return officer


def update_officer(officer_id: int, data: dict) -> Officer:
    """Patch the updatable fields; deactivation keeps existing assignments."""
    officer = get_officer(officer_id)
    diff = {}
    for key in _OFFICER_UPDATABLE:
        if key not in data:
            continue
        value = data[key]
        if key == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationError("name cannot be empty")
        elif key == "experience_months":
            value = _non_negative_int(value, key)
        elif key == "skills":
            value = _skills(value)
        elif key == "is_active":
            value = bool(value)
        elif key == "role":
            value = _enum_value(OfficerRole, value, "role")
        old = getattr(officer, key)
        if old != value:
            diff[key] = {"old": old, "new": value}
            setattr(officer, key, value)
    if diff:
        write_audit(entity_type="officer", entity_id=officer.id, action="officer.update", diff=diff)
    db.session.commit()
    return officer


# ── Assignment rules ─────────────────────────────────────────────────────────

def get_rule(rule_id: int) -> AutoAssignmentRule:
    rule = db.session.get(AutoAssignmentRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="AutoAssignmentRule", resource_id=rule_id)
    return rule


def list_rules(position_type: str | None = None, role: str | None = None) -> list[AutoAssignmentRule]:
    q = select(AutoAssignmentRule).order_by(
        AutoAssignmentRule.position_type, AutoAssignmentRule.target_officer_role,
        AutoAssignmentRule.priority, AutoAssignmentRule.id,
    )
    if position_type:
        q = q.where(AutoAssignmentRule.position_type == position_type)
    if role:
        q = q.where(AutoAssignmentRule.target_officer_role == role)
    return db.session.scalars(q).all()


def _clean_rule_value(key, value):
    if key in ("name", "description"):
        value = (value or "").strip()
        if key == "name" and not value:
            raise ValidationError("name is required")
        return value
    if key == "position_type":
        return _enum_value(PositionType, value, key)
    if key == "target_officer_role":
        return _enum_value(OfficerRole, value, key)
    if key == "escalation_role":
        return _enum_value(OfficerRole, value, key) if value else None
    if key == "strategy":
        return _enum_value(AssignmentStrategy, value, key)
    if key in ("priority", "max_workload_per_officer"):
        return _non_negative_int(value, key)
    if key in ("minimum_experience_months", "escalation_time_hours"):
        return _non_negative_int(value, key, allow_none=True)
    if key == "required_skills":
        return _skills(value, key)
    if key in ("effective_from", "effective_to"):
        try:
            return parse_datetime(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{key} must be an ISO-8601 datetime") from exc
    return bool(value)


def _check_rule(rule: AutoAssignmentRule) -> None:
    if rule.max_workload_per_officer < 1:
        raise ValidationError("max_workload_per_officer must be at least 1")
    start, end = as_utc(rule.effective_from), as_utc(rule.effective_to)
    if start and end and end < start:
        raise ValidationError("effective_to must not precede effective_from")
    if bool(rule.escalation_time_hours) != bool(rule.escalation_role):
        raise ValidationError("escalation_time_hours and escalation_role must be set together")


def create_rule(data: dict) -> AutoAssignmentRule:
    for required in ("name", "position_type", "target_officer_role"):
        if not data.get(required):
            raise ValidationError(f"{required} is required")
    values = {k: _clean_rule_value(k, data[k]) for k in _RULE_FIELDS if k in data}
    rule = AutoAssignmentRule(**values)
    rule.max_workload_per_officer = values.get("max_workload_per_officer", 50)
    _check_rule(rule)
    db.session.add(rule)
    db.session.flush()
    write_audit(entity_type="assignment_rule", entity_id=rule.id, action="assignment_rule.create",
                diff={k: v for k, v in values.items() if k not in ("effective_from", "effective_to")})
    db.session.commit()
    return rule


def update_rule(rule_id: int, data: dict) -> AutoAssignmentRule:
    rule = get_rule(rule_id)
    diff = {}
    for key in _RULE_FIELDS:
        if key not in data:
            continue
        value = _clean_rule_value(key, data[key])
        old = getattr(rule, key)
        if old != value:
            diff[key] = {"old": old, "new": value}
            setattr(rule, key, value)
    if "reset_round_robin" in data and data["reset_round_robin"]:
        diff["last_round_robin_index"] = {"old": rule.last_round_robin_index, "new": 0}
        rule.last_round_robin_index = 0
    try:
        _check_rule(rule)
    except ValidationError:
        db.session.rollback()
        raise
    if diff:
        write_audit(entity_type="assignment_rule", entity_id=rule.id,
                    action="assignment_rule.update", diff=diff)
    db.session.commit()
    return rule
