"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, workflow_error_response, E

    return api_error(E.NOT_FOUND, "Application not found")
    return api_error(E.VALIDATION_REQUIRED, "comment is required")
    return workflow_error_response(exc)   # any WorkflowError
"""

from __future__ import annotations

from flask import jsonify

from app.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    GateNotSatisfiedError,
    IllegalTransitionError,
    InvalidAssignmentTargetError,
    NoEligibleOfficerError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from app.integrations.http_gateway import IntegrationError


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • WF_   prefix for workflow-core errors
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    INTEGRATION = "ERR_INTEGRATION"

    # Workflow core
    WF_ILLEGAL_TRANSITION = "WF_ILLEGAL_TRANSITION"
    WF_GATE_NOT_SATISFIED = "WF_GATE_NOT_SATISFIED"
    WF_NO_ELIGIBLE_OFFICER = "WF_NO_ELIGIBLE_OFFICER"
    WF_CONCURRENT_MODIFICATION = "WF_CONCURRENT_MODIFICATION"
    WF_INVALID_ASSIGNMENT_TARGET = "WF_INVALID_ASSIGNMENT_TARGET"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.INTEGRATION: 503,
    E.WF_ILLEGAL_TRANSITION: 409,
    E.WF_GATE_NOT_SATISFIED: 422,
    E.WF_NO_ELIGIBLE_OFFICER: 409,
    E.WF_CONCURRENT_MODIFICATION: 409,
    E.WF_INVALID_ASSIGNMENT_TARGET: 422,
}

_WORKFLOW_CODES: dict[type, str] = {
    IllegalTransitionError: E.WF_ILLEGAL_TRANSITION,
    GateNotSatisfiedError: E.WF_GATE_NOT_SATISFIED,
    NoEligibleOfficerError: E.WF_NO_ELIGIBLE_OFFICER,
    ConcurrentModificationError: E.WF_CONCURRENT_MODIFICATION,
    InvalidAssignmentTargetError: E.WF_INVALID_ASSIGNMENT_TARGET,
}


def status_for(code: str) -> int:
    return _DEFAULT_STATUS.get(code, 400)


def workflow_code(exc: WorkflowError) -> str:
    return _WORKFLOW_CODES.get(type(exc), E.INTERNAL)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (gate name, current status, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or status_for(code)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def workflow_error_response(exc: WorkflowError):
    """Map a workflow-core exception onto the standard envelope."""
    return api_error(workflow_code(exc), exc.message, details=exc.to_dict())


# ── Workflow action results ───────────────────────────────────────────
# WorkflowActionResult.errors carry the exception ``code``; the first one
# decides the HTTP status of a failed action.
_RESULT_STATUS: dict[str, int] = {
    IllegalTransitionError.code: 409,
    GateNotSatisfiedError.code: 422,
    NoEligibleOfficerError.code: 409,
    ConcurrentModificationError.code: 409,
    InvalidAssignmentTargetError.code: 422,
    "INTEGRATION_ERROR": 503,
}


def status_for_result(result) -> int:
    if result.success:
        return 200
    first = result.errors[0].get("code") if result.errors else None
    return _RESULT_STATUS.get(first, 400)


def register_error_handlers(bp) -> None:
    """Attach the standard envelope for service/workflow exceptions to *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(WorkflowError)
    def _handle_workflow(error: WorkflowError):
        return workflow_error_response(error)

    @bp.errorhandler(IntegrationError)
    def _handle_integration(error: IntegrationError):
        return api_error(E.INTEGRATION, error.message, details=error.to_dict())
