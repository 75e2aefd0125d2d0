"""
Professional Licensing Portal
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")  # in-memory SQLite, no rate limits

CLI (``flask --app wsgi <command>``):
    seed-workflow [--file rows.yaml] [--replace]   load the transition table
    run-escalations                                run the escalation sweep now
    run-due-jobs                                   cron tick for periodic jobs
"""

import importlib
import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from app.config import WorkflowSettings, config
from app.integrations import build_gateways
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db

logger = logging.getLogger(__name__)

APP_NAME = "Professional Licensing Portal"

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)

_MODEL_MODULES = (
    "application", "assignment", "audit", "notification", "officer", "scheduling", "workflow",
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _require_json_body():
    """415 for API writes that carry a non-JSON body."""
    if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
        if request.data and "json" not in (request.content_type or ""):
            abort(415, description="Content-Type must be application/json")


def _seed_workflow(app):
    """Load the transition table on an empty database."""
    from app.services.workflow_state_machine import load_transition_rows, seed_transitions

    path = app.config.get("WORKFLOW_TRANSITIONS_FILE")
    if not path and not app.config.get("WORKFLOW_AUTO_SEED"):
        return
    rows = load_transition_rows(path) if path else None
    written = seed_transitions(rows)
    db.session.commit()
    if written:
        app.logger.info("Workflow transition table seeded with %d rows", written)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, or "development".

    Returns:
        Configured Flask application with the workflow orchestrator at
        ``app.extensions["workflow"]``.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "*").split(",") if o.strip()]
    CORS(app, origins="*" if origins == ["*"] else origins)

    init_request_timing(app)
    app.before_request(_require_json_body)

    for module in _MODEL_MODULES:
        importlib.import_module(f"app.models.{module}")

    # ── Workflow core ────────────────────────────────────────────────────
    from app.services.workflow_orchestrator import WorkflowOrchestrator

    settings = WorkflowSettings.from_mapping(app.config)
    app.extensions["workflow"] = WorkflowOrchestrator(settings, build_gateways(app.config))

    with app.app_context():
        db.create_all()
        _seed_workflow(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.assignment_bp import assignment_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.workflow_bp import workflow_bp

    for bp in (workflow_bp, assignment_bp, health_bp):
        app.register_blueprint(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": APP_NAME}

    # ── Periodic jobs (importing the module registers them) ──────────────
    importlib.import_module("app.services.scheduled_jobs")
    from app.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    with app.app_context():
        SchedulerService.ensure_jobs_registered()

    _register_cli(app)
    _register_error_handlers(app)

    # after blueprints are registered
    init_rate_limits(app, limiter)

    logger.info("%s started (%s)", APP_NAME, config_name)
    return app


def _register_cli(app):
    from app.services.scheduler_service import SchedulerService

    @app.cli.command("seed-workflow")
    @click.option("--file", "path", default=None, help="YAML file with transition rows")
    @click.option("--replace", is_flag=True, help="Replace an already-seeded table")
    def seed_workflow_cmd(path, replace):
        """Seed (or replace) the workflow transition table."""
        from app.services.workflow_state_machine import load_transition_rows, seed_transitions

        rows = load_transition_rows(path) if path else None
        count = seed_transitions(rows, replace=replace)
        db.session.commit()
        click.echo(f"Seeded {count} workflow transitions.")

    @app.cli.command("run-escalations")
    def run_escalations_cmd():
        """Run the assignment escalation sweep once."""
        outcome = SchedulerService.run_job("assignment_escalation")
        click.echo(f"{outcome['status']}: {outcome.get('result') or outcome.get('error')}")

    @app.cli.command("run-due-jobs")
    def run_due_jobs_cmd():
        """Run every periodic job whose interval has elapsed (call from cron)."""
        outcomes = SchedulerService.run_due_jobs()
        if not outcomes:
            click.echo("No jobs due.")
        for outcome in outcomes:
            click.echo(f"{outcome['job_name']}: {outcome['status']}")


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500
