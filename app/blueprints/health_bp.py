"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   simple 200 for load balancers
    GET /api/v1/health/live    database, transition table and escalation job status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select

from app.models import db
from app.models.scheduling import ScheduledJob
from app.models.workflow import WorkflowTransition

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe, always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Transition table ─────────────────────────────────────────────
    if overall:
        count = db.session.scalar(
            select(func.count()).select_from(WorkflowTransition).where(WorkflowTransition.is_active.is_(True))
        )
        checks["transitions"] = {"status": "ok" if count else "empty", "active": count}
        if not count:
            overall = False

        job = db.session.scalars(
            select(ScheduledJob).where(ScheduledJob.job_name == "assignment_escalation")
        ).first()
        checks["escalation_job"] = (
            {"status": "not_registered"} if job is None
            else {"status": job.last_run_status or "never_run", "run_count": job.run_count or 0}
        )

    checks["app"] = {
        "name": "Professional Licensing Portal",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
