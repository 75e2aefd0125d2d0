"""
Professional Licensing Portal
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Workflow settings are read once into ``WorkflowSettings`` by the app
factory and handed to the orchestrator; services never consult
``current_app.config`` for routing decisions.
"""

import json
import os
import secrets
from dataclasses import dataclass, field
from decimal import Decimal

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'licensing_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

_DEFAULT_POSITION_FEES = {
    "Architect": "5000",
    "LicenceEngineer": "3000",
    "StructuralEngineer": "3000",
    "Supervisor1": "1500",
    "Supervisor2": "1000",
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _position_fees() -> dict:
    raw = os.getenv("POSITION_FEES")
    return json.loads(raw) if raw else dict(_DEFAULT_POSITION_FEES)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Workflow ─────────────────────────────────────────────────────────
    MAX_RESUBMISSIONS = int(os.getenv("MAX_RESUBMISSIONS", "3"))
    WORKFLOW_LOCK_TIMEOUT_SECONDS = float(os.getenv("WORKFLOW_LOCK_TIMEOUT_SECONDS", "0"))
    ROLE_POOL_LOCK_TIMEOUT_SECONDS = float(os.getenv("ROLE_POOL_LOCK_TIMEOUT_SECONDS", "10"))
    DEFAULT_ASSIGNMENT_STRATEGY = os.getenv("DEFAULT_ASSIGNMENT_STRATEGY", "WorkloadBased")
    DEFAULT_MAX_WORKLOAD_PER_OFFICER = int(os.getenv("DEFAULT_MAX_WORKLOAD_PER_OFFICER", "50"))
    WORKFLOW_TRANSITIONS_FILE = os.getenv("WORKFLOW_TRANSITIONS_FILE")
    WORKFLOW_AUTO_SEED = _env_bool("WORKFLOW_AUTO_SEED", "true")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@licensing.local")
    APPLICATION_NUMBER_PREFIX = os.getenv("APPLICATION_NUMBER_PREFIX", "PMC")
    POSITION_FEES = _position_fees()

    # ── External collaborators (None → offline implementations) ─────────
    HSM_BASE_URL = os.getenv("HSM_BASE_URL")
    PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")
    DOCUMENT_STORE_URL = os.getenv("DOCUMENT_STORE_URL")
    INTEGRATION_TIMEOUT_SECONDS = int(os.getenv("INTEGRATION_TIMEOUT_SECONDS", "30"))
    INTEGRATION_API_KEY = os.getenv("INTEGRATION_API_KEY")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a single static connection; pool sizing does not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    WORKFLOW_TRANSITIONS_FILE = None
    HSM_BASE_URL = None
    PAYMENT_GATEWAY_URL = None
    DOCUMENT_STORE_URL = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


@dataclass(frozen=True)
class WorkflowSettings:
    """Process-wide workflow configuration, loaded once at startup."""

    max_resubmissions: int = 3
    lock_timeout_seconds: float = 0.0
    role_pool_lock_timeout_seconds: float = 10.0
    default_strategy: str = "WorkloadBased"
    default_max_workload: int = 50
    admin_email: str = "admin@licensing.local"
    application_number_prefix: str = "PMC"
    position_fees: dict = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, cfg) -> "WorkflowSettings":
        return cls(
            max_resubmissions=int(cfg.get("MAX_RESUBMISSIONS", 3)),
            lock_timeout_seconds=float(cfg.get("WORKFLOW_LOCK_TIMEOUT_SECONDS", 0)),
            role_pool_lock_timeout_seconds=float(cfg.get("ROLE_POOL_LOCK_TIMEOUT_SECONDS", 10)),
            default_strategy=cfg.get("DEFAULT_ASSIGNMENT_STRATEGY", "WorkloadBased"),
            default_max_workload=int(cfg.get("DEFAULT_MAX_WORKLOAD_PER_OFFICER", 50)),
            admin_email=cfg.get("ADMIN_EMAIL", "admin@licensing.local"),
            application_number_prefix=cfg.get("APPLICATION_NUMBER_PREFIX", "PMC"),
            position_fees=dict(cfg.get("POSITION_FEES") or {}),
        )

    def fee_for(self, position_type: str) -> Decimal:
        return Decimal(str(self.position_fees.get(position_type, "0")))
