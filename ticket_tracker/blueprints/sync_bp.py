"""
Sync blueprint: start source syncs and poll their job status.

Endpoints:
    POST /api/v1/sync/<source_type>            start a sync (202 + job id)
    GET  /api/v1/sync/jobs                     recent jobs, newest first
    GET  /api/v1/sync/jobs/<job_id>            one job (idle for unknown ids)
    POST /api/v1/sync/jobs/<job_id>/cancel     cooperative stop
    GET  /api/v1/sync/status                   per-source running / latest job

Job state is read from the JobStatusRegistry only; it is never re-derived
from the work item tables.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from ticket_tracker.blueprints import register_error_handlers
from ticket_tracker.integrations.factory import SOURCE_TYPES
from ticket_tracker.middleware.capabilities import require_capability
from ticket_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sync_bp = Blueprint("sync", __name__, url_prefix="/api/v1/sync")
register_error_handlers(sync_bp)


def _orchestrator():
    return current_app.extensions["sync_orchestrator"]


def _registry():
    return current_app.extensions["job_registry"]


@sync_bp.route("/<source_type>", methods=["POST"])
@require_capability("sync.trigger")
def start_sync(source_type):
    """Start a sync for one source type. Rejected with 409 while one is running."""
    orchestrator = _orchestrator()
    if source_type not in SOURCE_TYPES:
        return api_error(
            E.VALIDATION_INVALID,
            f"Unknown source type '{source_type}'. Must be one of: {', '.join(SOURCE_TYPES)}",
        )
    if source_type not in orchestrator.enabled_sources():
        return api_error(E.SYNC_SOURCE_DISABLED, f"Source '{source_type}' is disabled")

    job_id = orchestrator.start_sync(
        source_type, background=current_app.config.get("SYNC_RUN_IN_BACKGROUND", True),
    )
    status = _registry().get(job_id)
    return jsonify({"job_id": job_id, "status": status.to_dict()}), 202


@sync_bp.route("/jobs", methods=["GET"])
def list_jobs():
    limit = request.args.get("limit", 50, type=int)
    jobs = _registry().list_jobs(limit=max(1, min(limit, 200)))
    return jsonify({"items": [j.to_dict() for j in jobs], "total": len(jobs)}), 200


@sync_bp.route("/jobs/<job_id>", methods=["GET"])
def get_job(job_id):
    return jsonify(_registry().get(job_id).to_dict()), 200


@sync_bp.route("/jobs/<job_id>/cancel", methods=["POST"])
@require_capability("sync.cancel")
def cancel_job(job_id):
    if not _orchestrator().request_stop(job_id):
        return api_error(E.CONFLICT_STATE, f"Job {job_id} is not running")
    return jsonify({"job_id": job_id, "stop_requested": True}), 202


@sync_bp.route("/status", methods=["GET"])
def sync_status():
    """Running flag, enabled flag and latest job per source type."""
    orchestrator = _orchestrator()
    enabled = set(orchestrator.enabled_sources())
    latest = {s.source_type: s for s in _registry().current()}
    return jsonify({
        source: {
            "enabled": source in enabled,
            "running": orchestrator.is_running(source),
            "latest_job": latest[source].to_dict() if source in latest else None,
        }
        for source in SOURCE_TYPES
    }), 200
