"""
Professional Licensing Portal
Scheduling model.

ScheduledJob is the persistent side of a periodic job (the escalation
sweep): its interval, whether it is enabled, and the outcome of its last
run. The timer itself is external; cron calls the run endpoint or CLI and
this table decides whether a job is due and records what happened.
"""

from datetime import timedelta

from app.models import db
from app.models.base import as_utc, iso, utcnow


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_minutes = db.Column(db.Integer, nullable=False, default=15)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def is_due(self, now=None) -> bool:
        """Enabled and never run, or the interval has elapsed since the last run."""
        if not self.is_enabled:
            return False
        last = as_utc(self.last_run_at)
        if last is None:
            return True
        return (now or utcnow()) - last >= timedelta(minutes=self.interval_minutes or 0)

    def record_run(self, *, status, duration_ms, result=None, error=None, now=None):
        self.last_run_at = now or utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = error

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_minutes": self.interval_minutes,
            "is_enabled": self.is_enabled,
            "is_due": self.is_due(),
            "last_run_at": iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every {self.interval_minutes}m [{'on' if self.is_enabled else 'off'}]>"
