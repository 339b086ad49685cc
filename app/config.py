"""
QMS Change Management Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'qms_change_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Change propagation ───────────────────────────────────────────────
    PROPAGATION_MAX_HOPS = int(os.getenv("PROPAGATION_MAX_HOPS", "8"))

    # ── Impact analysis ──────────────────────────────────────────────────
    IMPACT_SCORE_WEIGHTS = {
        "per_dependent": 0.5,
        "dependent_cap": 10,
        "rpn_over_threshold": 3.0,
        "flagged_field": 2.0,
    }
    # Lower bound of each level; anything below MEDIUM is LOW
    IMPACT_RISK_CUT_POINTS = {"MEDIUM": 3.0, "HIGH": 6.0, "CRITICAL": 8.5}
    IMPACT_FLAGGED_FIELDS = [
        "safety_characteristic",
        "regulatory_requirement",
        "customer_required",
        "special_characteristic",
        "safety_requirements",
        "safety_impact",
        "regulatory_impact",
    ]

    # ── Approval workflow ────────────────────────────────────────────────
    APPROVAL_DEFAULT_TIMEOUT_HOURS = int(os.getenv("APPROVAL_DEFAULT_TIMEOUT_HOURS", "48"))
    ESCALATION_FALLBACK_ROLE = os.getenv("ESCALATION_FALLBACK_ROLE", "QUALITY_MANAGER")
    EMERGENCY_BYPASS_DEFAULT_ROLES = ["ADMIN"]

    # ── Risk analytics ───────────────────────────────────────────────────
    RPN_BUCKETS = {"LOW": 1, "MEDIUM": 50, "HIGH": 100, "CRITICAL": 300}
    RPN_TREND_THRESHOLD_PCT = 5.0

    VERSION_HISTORY_DEFAULT_LIMIT = 50


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
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


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
