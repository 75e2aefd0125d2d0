"""
TimestampedModel: abstract base for workflow tables.

Adds created_at / updated_at columns and the UTC helpers every model uses.
SQLite drops tzinfo on round-trip, so values read back from the database are
normalised through ``as_utc`` before any arithmetic.
"""

from datetime import datetime, timezone

from app.models import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


class TimestampedModel(db.Model):
    """Abstract base with audit timestamps."""
    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
