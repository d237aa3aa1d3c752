"""
Blind Review Engine
Flask Application Factory.

Usage:
    from blindreview import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from blindreview.config import config
from blindreview.core.exceptions import (
    AlreadySatisfied,
    ConflictBlocked,
    ImmutableViolation,
    NotAuthorized,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from blindreview.middleware.caller_context import init_caller_context
from blindreview.middleware.logging_config import configure_logging
from blindreview.middleware.rate_limiter import caller_rate_limit_key, init_rate_limits
from blindreview.models import db
from blindreview.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite engine events (global) ───────────────────────────────────────
# Foreign keys are off by default in SQLite, and pysqlite's implicit
# transaction handling breaks SAVEPOINT; BEGIN is emitted explicitly instead.


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _configure_sqlite(dbapi_conn, connection_record):
    """Enable foreign key enforcement and explicit BEGIN for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
limiter = Limiter(
    key_func=caller_rate_limit_key,
    default_limits=[],  # no global limit; applied per blueprint
)


def _register_error_handlers(app):
    """One handler per engine exception; every blueprint answers the same way."""

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(NotAuthorized)
    def _not_authorized(error):
        logger.info("Authorization refused: %s", error, extra={"user_id": error.user_id})
        return api_error(E.FORBIDDEN, str(error))

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @app.errorhandler(ConflictBlocked)
    def _conflict_blocked(error):
        return api_error(
            E.CONFLICT_BLOCKED, str(error),
            details={"proposal_id": error.proposal_id, "reviewer_ids": error.reviewer_ids},
        )

    @app.errorhandler(TransitionError)
    def _transition(error):
        return api_error(
            E.CONFLICT_STATE, str(error),
            details={"action": error.action, "current_status": error.current_status},
        )

    @app.errorhandler(AlreadySatisfied)
    def _already_satisfied(error):
        # Engine code swallows these; reaching here means a caller leaked one
        logger.debug("AlreadySatisfied reached the HTTP layer: %s", error)
        return {"status": "already_satisfied", "proposal_id": error.proposal_id,
                "reviewer_id": error.reviewer_id}, 200

    @app.errorhandler(ImmutableViolation)
    def _immutable(error):
        db.session.rollback()
        logger.critical("Immutable record mutation attempted: %s", error)
        return api_error(E.IMMUTABLE, str(error))

    @app.errorhandler(RateLimitExceeded)
    def _rate_limited(error):
        return api_error(E.RATE_LIMITED, f"Rate limit exceeded: {error.description}")

    @app.errorhandler(SQLAlchemyError)
    def _database(error):
        db.session.rollback()
        logger.exception("Database error")
        return api_error(E.DATABASE, "Database error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Caller identity (X-User-Id from the identity provider) ───────────
    init_caller_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from blindreview.models import audit as _audit_models                # noqa: F401
    from blindreview.models import call as _call_models                  # noqa: F401
    from blindreview.models import conflict as _conflict_models          # noqa: F401
    from blindreview.models import decision as _decision_models          # noqa: F401
    from blindreview.models import directory as _directory_models        # noqa: F401
    from blindreview.models import notification as _notification_models  # noqa: F401
    from blindreview.models import proposal as _proposal_models          # noqa: F401
    from blindreview.models import review as _review_models              # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS; migrations own changes) ─
    if config_name != "testing":
        with app.app_context():
            if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
                os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from blindreview.blueprints.audit_bp import audit_bp
    from blindreview.blueprints.call_bp import call_bp
    from blindreview.blueprints.distribution_bp import distribution_bp
    from blindreview.blueprints.health_bp import health_bp
    from blindreview.blueprints.review_bp import review_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(call_bp)
    app.register_blueprint(distribution_bp)
    app.register_blueprint(review_bp)
    app.register_blueprint(audit_bp)

    # ── Rate limits (after blueprints so they can be looked up by name) ──
    init_rate_limits(app, limiter)

    _register_error_handlers(app)

    return app
