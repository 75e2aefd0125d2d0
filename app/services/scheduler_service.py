"""
Professional Licensing Portal
Scheduler Service.

Job registry for periodic work (the escalation sweep). There is no timer
thread in the process: cron calls ``flask run-due-jobs`` (every job whose
interval has elapsed) or ``flask run-escalations`` / the escalation
endpoint (one job, now). Either way the job runs inside its own app
context and its ScheduledJob row records the outcome.

A job never overlaps itself within a process; a second trigger while it
is running is answered with ``skipped``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask
from sqlalchemy import select

from app.models import db
from app.models.base import utcnow
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_default_intervals: dict[str, int] = {}
_running: dict[str, threading.Lock] = {}


def register_job(name: str, *, interval_minutes: int = 15):
    """Register *fn(app) -> dict* as a periodic job.

        @register_job("assignment_escalation", interval_minutes=15)
        def run_assignment_escalation(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _default_intervals[name] = interval_minutes
        _running.setdefault(name, threading.Lock())
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.scalars(select(ScheduledJob).where(ScheduledJob.job_name == job_name)).first()


def _outcome(job_name, status, *, duration_ms=0, result=None, error=None) -> dict:
    return {"job_name": job_name, "status": status, "duration_ms": duration_ms,
            "result": result, "error": error}


class SchedulerService:
    """Job rows and job execution."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for name, fn in _job_registry.items():
            if _job_record(name) is None:
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or name).strip()[:500],
                    interval_minutes=_default_intervals[name],
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job now (unless disabled or already running) and record the outcome."""
        fn = _job_registry.get(job_name)
        if fn is None:
            return _outcome(job_name, "error", error=f"Unknown job: {job_name}")
        if cls._app is None:
            return _outcome(job_name, "error", error="Scheduler not initialized")

        guard = _running[job_name]
        if not guard.acquire(blocking=False):
            logger.info("Job %s is already running; trigger skipped", job_name,
                        extra={"event_type": "job_skipped"})
            return _outcome(job_name, "skipped", error="already running")
        try:
            with cls._app.app_context():
                return cls._execute(job_name, fn)
        finally:
            guard.release()

    @classmethod
    def _execute(cls, job_name: str, fn: Callable) -> dict:
        record = _job_record(job_name)
        if record is not None and not record.is_enabled:
            return _outcome(job_name, "skipped", error="disabled")

        start = time.monotonic()
        status, result, error = "success", None, None
        try:
            result = fn(cls._app)
        except Exception as exc:
            db.session.rollback()
            status, error = "failed", str(exc)
            logger.exception("Job %s failed: %s", job_name, exc,
                             extra={"event_type": "job_failed"})
        duration_ms = int((time.monotonic() - start) * 1000)

        record = _job_record(job_name)
        if record is not None:
            record.record_run(
                status=status,
                duration_ms=duration_ms,
                result=result if isinstance(result, dict) else {"output": str(result)},
                error=error,
            )
            db.session.commit()
        return _outcome(job_name, status, duration_ms=duration_ms, result=result, error=error)

    @classmethod
    def due_jobs(cls, now=None) -> list[str]:
        now = now or utcnow()
        return [name for name in _job_registry
                if (record := _job_record(name)) is not None and record.is_due(now)]

    @classmethod
    def run_due_jobs(cls, now=None) -> list[dict]:
        """Cron tick: run every enabled job whose interval has elapsed."""
        return [cls.run_job(name) for name in cls.due_jobs(now)]

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        record = _job_record(job_name)
        if record is None:
            return None
        record.is_enabled = enabled
        db.session.commit()
        return record.to_dict()
