"""
ECO Lifecycle Engine
Configuration classes for Flask App Factory.

Every ECO_* knob reads from the environment with a default, so the same
image runs in dev, CI and production.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())
"""

import os

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url() -> str | None:
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return None
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _env_list(name: str, default: str) -> list[str]:
    return [p.strip() for p in os.getenv(name, default).split(",") if p.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    # Risk scoring
    ECO_RISK_SCORING_ENABLED = _env_bool("ECO_RISK_SCORING_ENABLED", "true")
    ECO_RISK_PROVIDERS = _env_list("ECO_RISK_PROVIDERS", "gemini,anthropic,openai,local")
    ECO_RISK_TIMEOUT_SECONDS = float(os.getenv("ECO_RISK_TIMEOUT_SECONDS", "10"))

    # Per-provider circuit breaker
    ECO_CB_FAILURE_THRESHOLD = int(os.getenv("ECO_CB_FAILURE_THRESHOLD", "5"))
    ECO_CB_WINDOW_SECONDS = int(os.getenv("ECO_CB_WINDOW_SECONDS", "60"))
    ECO_CB_OPEN_SECONDS = int(os.getenv("ECO_CB_OPEN_SECONDS", "30"))

    # Retries for lock/serialization failures in one ECO write
    ECO_TX_MAX_RETRIES = int(os.getenv("ECO_TX_MAX_RETRIES", "2"))

    ECO_DEFAULT_PRIORITY = os.getenv("ECO_DEFAULT_PRIORITY", "medium")
    ECO_DEFAULT_CHANGE_TYPE = os.getenv("ECO_DEFAULT_CHANGE_TYPE", "standard")


class DevelopmentConfig(Config):
    """Local dev: DATABASE_URL if set, otherwise a SQLite file under instance/."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or (
        "sqlite:///" + os.path.join(_PROJECT_ROOT, "instance", "ecoflow_dev.db")
    )
    # SQLite's default pool rejects pool_size / max_overflow
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS) if _database_url() else {}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    ECO_RISK_PROVIDERS = ["local"]
    ECO_RISK_TIMEOUT_SECONDS = 2.0
    ECO_TX_MAX_RETRIES = 2


class ProductionConfig(Config):
    """PostgreSQL only; refuses to start without DATABASE_URL."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
