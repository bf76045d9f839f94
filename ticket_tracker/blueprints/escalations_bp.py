"""
Escalations blueprint.

Endpoints:
    POST /api/v1/escalations/sync   derive missing escalations now
    GET  /api/v1/escalations        ?work_item_id=&to_level=&limit=
"""

from flask import Blueprint, jsonify, request

from ticket_tracker.blueprints import register_error_handlers
from ticket_tracker.middleware.capabilities import require_capability
from ticket_tracker.services import escalation_service

escalations_bp = Blueprint("escalations", __name__, url_prefix="/api/v1/escalations")
register_error_handlers(escalations_bp)


@escalations_bp.route("/sync", methods=["POST"])
@require_capability("sync.trigger")
def sync_escalations():
    return jsonify(escalation_service.sync_escalations()), 200


@escalations_bp.route("", methods=["GET"])
def list_escalations():
    limit = request.args.get("limit", 100, type=int)
    items = escalation_service.list_escalations(
        work_item_id=request.args.get("work_item_id", type=int),
        to_level=request.args.get("to_level"),
        limit=max(1, min(limit, 1000)),
    )
    return jsonify({"items": items, "total": len(items)}), 200
