"""
Health probes.

    GET /api/v1/health/ready   process is up (load balancer probe)
    GET /api/v1/health/live    database, sync orchestrator and scheduler state

``/live`` answers 503 with ``status: degraded`` when any check reports error.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from ticket_tracker.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _check_database() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _check_sync() -> dict:
    orchestrator = current_app.extensions.get("sync_orchestrator")
    registry = current_app.extensions.get("job_registry")
    if orchestrator is None or registry is None:
        return {"status": "error", "detail": "sync orchestrator not initialised"}
    sources = orchestrator.enabled_sources()
    return {
        "status": "ok",
        "enabled_sources": sources,
        "running": [s for s in sources if orchestrator.is_running(s)],
        "tracked_jobs": len(registry.list_jobs(limit=0)),
    }


def _check_scheduler() -> dict:
    scheduler = current_app.extensions.get("scheduler")
    if scheduler is None:
        return {"status": "error", "detail": "scheduler not initialised"}
    if not current_app.config.get("SCHEDULER_ENABLED"):
        return {"status": "disabled"}
    if not scheduler.is_running():
        return {"status": "error", "detail": "scheduler thread not running"}
    return {"status": "ok"}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _check_database(),
        "sync": _check_sync(),
        "scheduler": _check_scheduler(),
    }
    healthy = all(c["status"] != "error" for c in checks.values())
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
