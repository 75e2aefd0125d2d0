"""
Platform-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Two families live here:
  - generic service errors (NotFoundError, ValidationError, ConflictError)
  - the workflow taxonomy rooted at WorkflowError, which the orchestrator
    converts into WorkflowActionResult.errors

Usage:
    from app.core.exceptions import IllegalTransitionError, NotFoundError

    raise NotFoundError(resource="Application", resource_id=42)
    raise IllegalTransitionError("DRAFT", "Approve")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Application", "Officer").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Rejection without a comment is a ValidationError: it is caught at the
    API boundary before the state machine is invoked.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ═══════════════════════════════════════════════════════════════════════════
#  Workflow taxonomy
# ═══════════════════════════════════════════════════════════════════════════


class WorkflowError(Exception):
    """Base for every typed error the workflow core returns."""

    code = "WORKFLOW_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class IllegalTransitionError(WorkflowError):
    """(current_status, action) is not an edge of the transition table. Never retried."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, current_status: str, action: str, reason: str = "") -> None:
        self.current_status = current_status
        self.action = action
        self.reason = reason
        msg = f"Action '{action}' is not allowed from status '{current_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(current_status=self.current_status, action=self.action)
        return d


class GateNotSatisfiedError(WorkflowError):
    """A document, signature or payment precondition is unmet."""

    code = "GATE_NOT_SATISFIED"

    def __init__(self, gate: str, reason: str) -> None:
        self.gate = gate
        self.reason = reason
        super().__init__(f"{gate} gate not satisfied: {reason}")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(gate=self.gate, reason=self.reason)
        return d


class NoEligibleOfficerError(WorkflowError):
    """The candidate pool for a role is empty after rule filtering."""

    code = "NO_ELIGIBLE_OFFICER"

    def __init__(self, role: str, reason: str = "") -> None:
        self.role = role
        self.reason = reason
        msg = f"No eligible officer for role '{role}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["role"] = self.role
        return d


class ConcurrentModificationError(WorkflowError):
    """Another transition holds or has changed the application. Safe to retry after re-reading."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, application_id: int, reason: str = "") -> None:
        self.application_id = application_id
        self.reason = reason
        msg = f"Application {application_id} was modified concurrently"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["application_id"] = self.application_id
        return d


class InvalidAssignmentTargetError(WorkflowError):
    """Manual assignment to an inactive, unknown or wrong-role officer."""

    code = "INVALID_ASSIGNMENT_TARGET"

    def __init__(self, officer_id: int | None, reason: str) -> None:
        self.officer_id = officer_id
        self.reason = reason
        super().__init__(f"Officer {officer_id} cannot be assigned: {reason}")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["officer_id"] = self.officer_id
        return d
