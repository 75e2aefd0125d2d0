"""
Application workflow blueprint.

Endpoints:
    POST /api/v1/applications                          create a draft application
    GET  /api/v1/applications                          list (status, position_type, officer_id filters)
    GET  /api/v1/applications/<id>                     detail with side records
    POST /api/v1/applications/<id>/actions             execute one workflow action
    GET  /api/v1/applications/<id>/available-actions   legal actions + gate readiness
    GET  /api/v1/applications/<id>/history             status-change audit trail
    GET  /api/v1/applications/<id>/assignments         assignment ledger
    GET  /api/v1/applications/<id>/replay              replay the trail against the stored status
    POST /api/v1/applications/<id>/documents           register documents for verification
    GET  /api/v1/workflow/transitions                  the active transition table

The orchestrator owns every write and commit; views only parse input and
shape output.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_, select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.application import (
    Application,
    Appointment,
    DigitalSignature,
    DocumentVerification,
    Payment,
    StageDecision,
)
from app.models.officer import ROLE_SLOTS
from app.services import audit_service
from app.services.workflow_state_machine import TransitionTable
from app.utils.errors import register_error_handlers, status_for_result

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _orchestrator():
    return current_app.extensions["workflow"]


def _int_or_none(value, field):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer") from exc


def _rows(model, application_id):
    return [
        r.to_dict() for r in db.session.scalars(
            select(model).where(model.application_id == application_id).order_by(model.id)
        )
    ]


# ═════════════════════════════════════════════════════════════════════════
# Applications
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/applications", methods=["POST"])
def create_application():
    """Body: {applicant_name, applicant_email, position_type, documents?}"""
    data = request.get_json(silent=True) or {}
    application = _orchestrator().create_application(
        applicant_name=data.get("applicant_name"),
        applicant_email=data.get("applicant_email"),
        position_type=data.get("position_type"),
        documents=data.get("documents"),
    )
    return jsonify(application.to_dict()), 201


@workflow_bp.route("/applications", methods=["GET"])
def list_applications():
    q = select(Application)
    status = request.args.get("status")
    if status:
        q = q.where(Application.status == status)
    position_type = request.args.get("position_type")
    if position_type:
        q = q.where(Application.position_type == position_type)
    officer_id = request.args.get("officer_id", type=int)
    if officer_id:
        q = q.where(or_(*[getattr(Application, f"assigned_{slot}_id") == officer_id for slot in ROLE_SLOTS]))

    total = db.session.scalar(select(func.count()).select_from(q.subquery()))
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items = db.session.scalars(q.order_by(Application.id.desc()).limit(limit).offset(offset)).all()
    return jsonify({"items": [a.to_dict() for a in items], "total": total}), 200


@workflow_bp.route("/applications/<int:application_id>", methods=["GET"])
def get_application(application_id):
    application = _orchestrator().get_application(application_id)
    data = application.to_dict()
    data.update(
        documents=_rows(DocumentVerification, application_id),
        signatures=_rows(DigitalSignature, application_id),
        appointments=_rows(Appointment, application_id),
        payments=_rows(Payment, application_id),
        decisions=_rows(StageDecision, application_id),
        active_assignments=[r.to_dict() for r in audit_service.active_assignments(application_id)],
    )
    return jsonify(data), 200


@workflow_bp.route("/applications/<int:application_id>/actions", methods=["POST"])
def execute_action(application_id):
    """Body: {action, actor_officer_id?, comment?, payload?, expected_version?}

    200 with the result on success; on a workflow refusal the same result
    body (success=false, unchanged status) with 409/422/503.
    """
    data = request.get_json(silent=True) or {}
    action = data.get("action") or ""
    if not isinstance(action, str):
        raise ValidationError("action must be a string", details={"field": "action"})
    action = action.strip()
    if not action:
        raise ValidationError("action is required")
    comment = data.get("comment") or ""
    if not isinstance(comment, str):
        raise ValidationError("comment must be a string", details={"field": "comment"})
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    result = _orchestrator().execute_workflow_action(
        application_id,
        action,
        _int_or_none(data.get("actor_officer_id"), "actor_officer_id"),
        payload,
        comment=comment,
        expected_version=_int_or_none(data.get("expected_version"), "expected_version"),
    )
    return jsonify(result.to_dict()), status_for_result(result)


@workflow_bp.route("/applications/<int:application_id>/available-actions", methods=["GET"])
def available_actions(application_id):
    orchestrator = _orchestrator()
    application = orchestrator.get_application(application_id)
    return jsonify({
        "application_id": application_id,
        "status": application.status,
        "next_action": orchestrator.next_action(application.status),
        "actions": orchestrator.state_machine.available_actions(application),
    }), 200


@workflow_bp.route("/applications/<int:application_id>/history", methods=["GET"])
def status_history(application_id):
    _orchestrator().get_application(application_id)
    return jsonify({"items": [r.to_dict() for r in audit_service.status_history(application_id)]}), 200


@workflow_bp.route("/applications/<int:application_id>/assignments", methods=["GET"])
def assignment_history(application_id):
    _orchestrator().get_application(application_id)
    rows = audit_service.assignment_history(application_id)
    if request.args.get("active") in ("1", "true"):
        rows = [r for r in rows if r.is_active]
    return jsonify({"items": [r.to_dict() for r in rows]}), 200


@workflow_bp.route("/applications/<int:application_id>/replay", methods=["GET"])
def replay(application_id):
    _orchestrator().get_application(application_id)
    return jsonify(audit_service.replay_application_status(application_id)), 200


@workflow_bp.route("/applications/<int:application_id>/documents", methods=["POST"])
def register_documents(application_id):
    """Body: {documents: [{document_id, document_type?, is_required?}, ...]}"""
    data = request.get_json(silent=True) or {}
    rows = _orchestrator().register_documents(application_id, data.get("documents"))
    return jsonify({"items": [r.to_dict() for r in rows]}), 201


# ═════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow/transitions", methods=["GET"])
def list_transitions():
    rows = TransitionTable.all_rules()
    from_status = request.args.get("from_status")
    if from_status:
        rows = [r for r in rows if r.from_status == from_status]
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)}), 200
