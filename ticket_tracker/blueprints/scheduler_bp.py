"""
Scheduler blueprint: inspect and trigger periodic jobs.

Endpoints:
    GET   /api/v1/scheduler/jobs                 registered jobs + run history
    POST  /api/v1/scheduler/jobs/<name>/run      run one job now (inline)
    PATCH /api/v1/scheduler/jobs/<name>          {"is_enabled": bool}
"""

from flask import Blueprint, jsonify, request

from ticket_tracker.blueprints import register_error_handlers
from ticket_tracker.middleware.capabilities import require_capability
from ticket_tracker.services.scheduler_service import SchedulerService, get_registered_jobs
from ticket_tracker.utils.errors import E, api_error

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1/scheduler")
register_error_handlers(scheduler_bp)


@scheduler_bp.route("/jobs", methods=["GET"])
def list_jobs():
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs), "running": SchedulerService.is_running()}), 200


@scheduler_bp.route("/jobs/<job_name>/run", methods=["POST"])
@require_capability("admin")
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 200


@scheduler_bp.route("/jobs/<job_name>", methods=["PATCH"])
@require_capability("admin")
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("is_enabled"), bool):
        return api_error(E.VALIDATION_REQUIRED, "is_enabled (bool) is required")
    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.toggle_job(job_name, data["is_enabled"])
    if job is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(job), 200
