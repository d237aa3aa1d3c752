"""
Per-environment settings, selected by APP_ENV in ``create_app``.

Every knob is an environment variable:

    DATABASE_URL              PostgreSQL in production, SQLite file in development
    SECRET_KEY                required in production
    REDIS_URL                 Flask-Limiter storage (memory:// when unset)
    CORS_ORIGINS              comma-separated, "*" outside production
    BLIND_CODE_MAX_ATTEMPTS   random_short collision retries
    DISTRIBUTION_RATE_LIMIT   per-caller limit on distribution endpoints
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'blindreview_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _database_url(default=None):
    # SQLAlchemy 2.0 only accepts the postgresql:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


def _pooled_engine(**extra):
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        **extra,
    }


class Config:
    # Regenerated per process unless SECRET_KEY is set
    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _pooled_engine()

    # Read by Flask-Limiter in init_app
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")
    DISTRIBUTION_RATE_LIMIT = os.getenv("DISTRIBUTION_RATE_LIMIT", "10/minute")

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    BLIND_CODE_MAX_ATTEMPTS = int(os.getenv("BLIND_CODE_MAX_ATTEMPTS", "10"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # The in-memory SQLite pool rejects pool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    # 30s per statement
    SQLALCHEMY_ENGINE_OPTIONS = _pooled_engine(
        connect_args={"options": "-c statement_timeout=30000"},
    )

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
