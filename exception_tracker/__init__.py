"""
Operational Exception Tracker
Flask Application Factory.

Usage:
    from exception_tracker import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS

from exception_tracker.config import config
from exception_tracker.models import db
from exception_tracker.middleware.logging_config import configure_logging
from exception_tracker.middleware.principal_context import init_principal_context
from exception_tracker.middleware.timing import init_request_timing
from exception_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


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
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]) or ".", exist_ok=True)
    db.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_principal_context(app)

    # ── Import all models so create_all sees them ────────────────────────
    from exception_tracker.models import exception as _exception_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) and default SLA rules ──
    with app.app_context():
        db.create_all()
        if app.config.get("SEED_DEFAULT_SLA_RULES"):
            from exception_tracker.services.sla_engine import seed_default_sla_rules
            seed_default_sla_rules()

    # ── Blueprints ───────────────────────────────────────────────────────
    from exception_tracker.blueprints.exception_bp import exception_bp
    from exception_tracker.blueprints.health_bp import health_bp

    app.register_blueprint(exception_bp)
    app.register_blueprint(health_bp)

    # ── Scheduler (periodic SLA breach sweep) ────────────────────────────
    from exception_tracker.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sla-sweep")
    def sla_sweep_cmd():
        """Flag exceptions whose SLA due date has lapsed."""
        outcome = SchedulerService.run_job("sla_breach_sweep")
        logger.info("sla-sweep %s: %s", outcome["status"], outcome.get("result") or outcome.get("error"))

    @app.cli.command("seed-sla-rules")
    def seed_sla_rules_cmd():
        """Insert default SLA rules for severities without one."""
        from exception_tracker.services.sla_engine import seed_default_sla_rules
        count = seed_default_sla_rules()
        logger.info("Seeded %s SLA rule(s).", count)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"Not found: {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, "Method not allowed")

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    return app
