"""
Officer & assignment blueprint.

Endpoints:
    POST  /api/v1/officers                                   register an officer
    GET   /api/v1/officers                                   list (role, active filters) with workload
    PATCH /api/v1/officers/<id>                              update / deactivate
    GET   /api/v1/officers/workload                          live workload per officer (role filter)
    GET   /api/v1/officers/<id>/statistics                   ledger totals for one officer
    GET   /api/v1/assignment-rules                           list rules
    POST  /api/v1/assignment-rules                           create a rule
    PUT   /api/v1/assignment-rules/<id>                      update a rule
    POST  /api/v1/assignments/<id>/accept                    officer accepts / declines
    POST  /api/v1/applications/<id>/slots/<slot>/unassign    administrator unassigns a slot
    POST  /api/v1/assignment/escalations/run                 escalation sweep (external timer hook)
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from app.core.exceptions import ValidationError
from app.services import audit_service, officer_service
from app.services.scheduler_service import SchedulerService
from app.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

assignment_bp = Blueprint("assignment_bp", __name__, url_prefix="/api/v1")
register_error_handlers(assignment_bp)

ESCALATION_JOB = "assignment_escalation"


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes")


# ═════════════════════════════════════════════════════════════════════════
# Officers
# ═════════════════════════════════════════════════════════════════════════


@assignment_bp.route("/officers", methods=["POST"])
def create_officer():
    """Body: {name, email, employee_id, role, department?, experience_months?, skills?}"""
    officer = officer_service.create_officer(request.get_json(silent=True) or {})
    return jsonify(officer.to_dict()), 201


@assignment_bp.route("/officers", methods=["GET"])
def list_officers():
    officers = officer_service.list_officers(request.args.get("role"), _bool_arg("active"))
    workloads = audit_service.workloads_for(o.id for o in officers)
    items = [{**o.to_dict(), "workload": workloads.get(o.id, 0)} for o in officers]
    return jsonify({"items": items, "total": len(items)}), 200


@assignment_bp.route("/officers/workload", methods=["GET"])
def officer_workload():
    include_inactive = bool(_bool_arg("include_inactive"))
    items = audit_service.role_workload_summary(request.args.get("role"), include_inactive=include_inactive)
    return jsonify({"items": items, "total": len(items)}), 200


@assignment_bp.route("/officers/<int:officer_id>", methods=["PATCH"])
def update_officer(officer_id):
    officer = officer_service.update_officer(officer_id, request.get_json(silent=True) or {})
    return jsonify(officer.to_dict()), 200


@assignment_bp.route("/officers/<int:officer_id>/statistics", methods=["GET"])
def officer_statistics(officer_id):
    officer_service.get_officer(officer_id)
    return jsonify(audit_service.officer_statistics(officer_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Assignment rules
# ═════════════════════════════════════════════════════════════════════════


@assignment_bp.route("/assignment-rules", methods=["GET"])
def list_rules():
    rules = officer_service.list_rules(request.args.get("position_type"), request.args.get("role"))
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@assignment_bp.route("/assignment-rules", methods=["POST"])
def create_rule():
    rule = officer_service.create_rule(request.get_json(silent=True) or {})
    return jsonify(rule.to_dict()), 201


@assignment_bp.route("/assignment-rules/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    rule = officer_service.update_rule(rule_id, request.get_json(silent=True) or {})
    return jsonify(rule.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════


@assignment_bp.route("/assignments/<int:history_id>/accept", methods=["POST"])
def accept_assignment(history_id):
    """Body: {officer_id, accepted?: true}"""
    data = request.get_json(silent=True) or {}
    officer_id = data.get("officer_id")
    if not isinstance(officer_id, int):
        raise ValidationError("officer_id is required")
    row = current_app.extensions["workflow"].accept_assignment(
        history_id, officer_id, accepted=bool(data.get("accepted", True)),
    )
    return jsonify(row.to_dict()), 200


@assignment_bp.route("/applications/<int:application_id>/slots/<slot>/unassign", methods=["POST"])
def unassign_slot(application_id, slot):
    """Body: {actor_officer_id?, reason?}"""
    data = request.get_json(silent=True) or {}
    event = current_app.extensions["workflow"].unassign(
        application_id, slot,
        actor_officer_id=data.get("actor_officer_id"),
        reason=data.get("reason", ""),
    )
    return jsonify(event.to_dict()), 200


@assignment_bp.route("/assignment/escalations/run", methods=["POST"])
def run_escalations():
    """Run the escalation sweep now; the job row records the outcome."""
    outcome = SchedulerService.run_job(ESCALATION_JOB)
    status = 200 if outcome.get("status") in ("success", "skipped") else 500
    return jsonify(outcome), status
