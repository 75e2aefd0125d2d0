"""
Professional Licensing Portal
Officer domain model.

Models:
    - Officer: a reviewing officer that applications are routed to

Enums:
    - OfficerRole: the 13 officer roles in the approval chain
    - PositionType: the licence specialisation an applicant applies for

Role slots:
    Every Application carries one assignment slot per stage of the chain.
    The officer role that fills a slot depends on the position type for the
    junior/assistant stages and is shared for the senior stages.
"""

from enum import Enum

from app.models import db
from app.models.base import TimestampedModel, iso


class OfficerRole(str, Enum):
    JUNIOR_ARCHITECT = "JuniorArchitect"
    ASSISTANT_ARCHITECT = "AssistantArchitect"
    JUNIOR_LICENCE_ENGINEER = "JuniorLicenceEngineer"
    ASSISTANT_LICENCE_ENGINEER = "AssistantLicenceEngineer"
    JUNIOR_STRUCTURAL_ENGINEER = "JuniorStructuralEngineer"
    ASSISTANT_STRUCTURAL_ENGINEER = "AssistantStructuralEngineer"
    JUNIOR_SUPERVISOR1 = "JuniorSupervisor1"
    ASSISTANT_SUPERVISOR1 = "AssistantSupervisor1"
    JUNIOR_SUPERVISOR2 = "JuniorSupervisor2"
    ASSISTANT_SUPERVISOR2 = "AssistantSupervisor2"
    EXECUTIVE_ENGINEER = "ExecutiveEngineer"
    CITY_ENGINEER = "CityEngineer"
    CLERK = "Clerk"


class PositionType(str, Enum):
    ARCHITECT = "Architect"
    LICENCE_ENGINEER = "LicenceEngineer"
    STRUCTURAL_ENGINEER = "StructuralEngineer"
    SUPERVISOR1 = "Supervisor1"
    SUPERVISOR2 = "Supervisor2"


# ── Role slots ───────────────────────────────────────────────────────────────

SLOT_JUNIOR_ENGINEER = "junior_engineer"
SLOT_ASSISTANT_ENGINEER = "assistant_engineer"
SLOT_EXECUTIVE_ENGINEER = "executive_engineer"
SLOT_CITY_ENGINEER = "city_engineer"
SLOT_CLERK = "clerk"

ROLE_SLOTS = (
    SLOT_JUNIOR_ENGINEER,
    SLOT_ASSISTANT_ENGINEER,
    SLOT_EXECUTIVE_ENGINEER,
    SLOT_CITY_ENGINEER,
    SLOT_CLERK,
)

_JUNIOR_ROLES = {
    PositionType.ARCHITECT: OfficerRole.JUNIOR_ARCHITECT,
    PositionType.LICENCE_ENGINEER: OfficerRole.JUNIOR_LICENCE_ENGINEER,
    PositionType.STRUCTURAL_ENGINEER: OfficerRole.JUNIOR_STRUCTURAL_ENGINEER,
    PositionType.SUPERVISOR1: OfficerRole.JUNIOR_SUPERVISOR1,
    PositionType.SUPERVISOR2: OfficerRole.JUNIOR_SUPERVISOR2,
}

_ASSISTANT_ROLES = {
    PositionType.ARCHITECT: OfficerRole.ASSISTANT_ARCHITECT,
    PositionType.LICENCE_ENGINEER: OfficerRole.ASSISTANT_LICENCE_ENGINEER,
    PositionType.STRUCTURAL_ENGINEER: OfficerRole.ASSISTANT_STRUCTURAL_ENGINEER,
    PositionType.SUPERVISOR1: OfficerRole.ASSISTANT_SUPERVISOR1,
    PositionType.SUPERVISOR2: OfficerRole.ASSISTANT_SUPERVISOR2,
}

_SHARED_ROLES = {
    SLOT_EXECUTIVE_ENGINEER: OfficerRole.EXECUTIVE_ENGINEER,
    SLOT_CITY_ENGINEER: OfficerRole.CITY_ENGINEER,
    SLOT_CLERK: OfficerRole.CLERK,
}


def role_for_slot(slot: str, position_type: str | PositionType) -> OfficerRole:
    """Resolve the officer role that fills *slot* for an application of *position_type*."""
    if slot in _SHARED_ROLES:
        return _SHARED_ROLES[slot]
    position = PositionType(position_type)
    if slot == SLOT_JUNIOR_ENGINEER:
        return _JUNIOR_ROLES[position]
    if slot == SLOT_ASSISTANT_ENGINEER:
        return _ASSISTANT_ROLES[position]
    raise ValueError(f"Unknown role slot: {slot}")


def slot_for_role(role: str | OfficerRole) -> str:
    """Inverse of ``role_for_slot``; ignores the position type."""
    role = OfficerRole(role)
    if role in _JUNIOR_ROLES.values():
        return SLOT_JUNIOR_ENGINEER
    if role in _ASSISTANT_ROLES.values():
        return SLOT_ASSISTANT_ENGINEER
    for slot, shared in _SHARED_ROLES.items():
        if shared == role:
            return slot
    raise ValueError(f"Unmapped officer role: {role}")


class Officer(TimestampedModel):
    """
    Reviewing officer.

    Workload is not stored here; it is derived from active
    AssignmentHistory rows (see app.services.audit_service.workload_of).
    """

    __tablename__ = "officers"
    __table_args__ = (
        db.Index("idx_officer_role_active", "role", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), nullable=False, unique=True)
    employee_id = db.Column(db.String(50), nullable=False, unique=True)
    role = db.Column(db.String(40), nullable=False, comment="OfficerRole value")
    department = db.Column(db.String(100), default="")
    experience_months = db.Column(db.Integer, nullable=False, default=0)
    skills = db.Column(db.JSON, default=list, comment="Skill tags used by SkillBased routing")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    @property
    def skill_set(self) -> set[str]:
        return {s.strip().lower() for s in (self.skills or []) if s and s.strip()}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "employee_id": self.employee_id,
            "role": self.role,
            "department": self.department,
            "experience_months": self.experience_months,
            "skills": list(self.skills or []),
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Officer {self.id}: {self.employee_id} [{self.role}]>"
