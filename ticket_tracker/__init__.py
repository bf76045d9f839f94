"""
Ticket Tracker
Flask application factory.

    from ticket_tracker import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")

Besides the usual extensions the factory builds the per-app sync state
(``app.extensions["job_registry"]`` and ``["sync_orchestrator"]``) and binds
the scheduler, which starts its thread only when SCHEDULER_ENABLED is set.
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from ticket_tracker.config import config
from ticket_tracker.models import db
from ticket_tracker.middleware.logging_config import configure_logging
from ticket_tracker.middleware.rate_limiter import init_rate_limits
from ticket_tracker.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

migrate = Migrate()
# Limits are attached per blueprint in init_rate_limits
limiter = Limiter(key_func=get_remote_address, default_limits=[])


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    # Movement and Escalation rows cascade with their WorkItem
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None, *, adapter_factory=None):
    """Build the app for ``config_name``.

    ``adapter_factory`` replaces ``build_source_adapter`` as the
    ``(source_type, config) -> adapter`` callable the orchestrator uses.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")
    settings = config[config_name]

    app = Flask(__name__, instance_relative_config=True)
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(settings() if config_name == "production" else settings)
    app.config.setdefault("RATELIMIT_STORAGE_URI", app.config["REDIS_URL"])

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _init_database(app)
    _init_sync(app, adapter_factory)
    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)
    _init_scheduler(app)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = (app.config.get("CORS_ORIGINS") or "").strip()
    if origins == "*":
        CORS(app)
    elif origins:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _init_database(app):
    # Model modules must be imported before create_all and Alembic autogenerate
    from ticket_tracker.models import project, scheduling, work_item  # noqa: F401

    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            # Migrations remain the source of truth; a partial schema is reported, not fatal
            logger.warning("create_all failed, run `flask db upgrade`: %s", exc)


def _init_sync(app, adapter_factory):
    from ticket_tracker.integrations.factory import build_source_adapter
    from ticket_tracker.services.job_registry import JobStatusRegistry
    from ticket_tracker.services.sync_orchestrator import SyncOrchestrator

    registry = JobStatusRegistry()
    app.extensions["job_registry"] = registry
    app.extensions["sync_orchestrator"] = SyncOrchestrator(
        app, registry, adapter_factory or build_source_adapter,
    )


def _register_blueprints(app):
    from ticket_tracker.blueprints.analytics_bp import analytics_bp
    from ticket_tracker.blueprints.escalations_bp import escalations_bp
    from ticket_tracker.blueprints.health_bp import health_bp
    from ticket_tracker.blueprints.scheduler_bp import scheduler_bp
    from ticket_tracker.blueprints.sync_bp import sync_bp
    from ticket_tracker.blueprints.work_items_bp import work_items_bp

    for blueprint in (sync_bp, work_items_bp, analytics_bp, escalations_bp,
                      scheduler_bp, health_bp):
        app.register_blueprint(blueprint)


def _register_error_handlers(app):
    """App-wide fallbacks; blueprint handlers cover domain exceptions."""

    @app.errorhandler(404)
    def _not_found(exc):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def _wrong_method(exc):
        return {"error": f"{request.method} not allowed on {request.path}"}, 405

    @app.errorhandler(429)
    def _throttled(exc):
        return {"error": "Too many requests", "retry_after": exc.description}, 429

    @app.errorhandler(500)
    def _server_error(exc):
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500


def _init_scheduler(app):
    # Importing the module registers the @register_job functions
    importlib.import_module("ticket_tracker.services.scheduled_jobs")
    from ticket_tracker.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    SchedulerService.start()
