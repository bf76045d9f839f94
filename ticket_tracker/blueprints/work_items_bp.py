"""
Work items blueprint: canonical store reads, manual estimates,
justifications, projects, teams and the delivery points reference.

Endpoint groups:
  Work items        GET  /api/v1/work-items
                    GET  /api/v1/work-items/<id>
                    GET  /api/v1/work-items/<id>/movements
                    PUT  /api/v1/work-items/<id>/estimate
  Movements         GET  /api/v1/movements
                    PUT  /api/v1/movements/<id>/justification
  Projects          GET  /api/v1/projects
                    GET  /api/v1/projects/<id>/aggregation
                    POST /api/v1/projects/<id>/aggregation/recalculate
                    PUT  /api/v1/projects/<id>/team
  Teams             GET/POST /api/v1/teams
  Delivery points   GET  /api/v1/delivery-points/matrix
                    GET  /api/v1/delivery-points/calculate

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from ticket_tracker.blueprints import paginate_query, register_error_handlers
from ticket_tracker.middleware.capabilities import require_capability
from ticket_tracker.services import aggregation_service, reconciliation_service
from ticket_tracker.services import work_item_service as wis
from ticket_tracker.services.delivery_points import calculate_points, points_matrix
from ticket_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

work_items_bp = Blueprint("work_items", __name__, url_prefix="/api/v1")
register_error_handlers(work_items_bp)


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").lower() in ("1", "true", "yes")


# ═════════════════════════════════════════════════════════════════════════
# Work items
# ═════════════════════════════════════════════════════════════════════════


@work_items_bp.route("/work-items", methods=["GET"])
def list_work_items():
    """Filtered, paginated work items.

    Query params: source, item_type, status, project_id, external_key,
                  updated_since, updated_until, limit, offset
    """
    q = wis.work_item_query(
        source=request.args.get("source"),
        item_type=request.args.get("item_type"),
        status=request.args.get("status"),
        project_id=request.args.get("project_id", type=int),
        external_key=request.args.get("external_key"),
        updated_since=request.args.get("updated_since"),
        updated_until=request.args.get("updated_until"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [wi.to_dict() for wi in items], "total": total}), 200


@work_items_bp.route("/work-items/<int:item_id>", methods=["GET"])
def get_work_item(item_id):
    return jsonify(wis.get_work_item(item_id)), 200


@work_items_bp.route("/work-items/<int:item_id>/movements", methods=["GET"])
def list_item_movements(item_id):
    movements = wis.list_item_movements(item_id)
    return jsonify({"items": movements, "total": len(movements)}), 200


@work_items_bp.route("/work-items/<int:item_id>/estimate", methods=["PUT"])
@require_capability("estimates.update")
def update_estimate(item_id):
    """Body: {complexity: 1-4, risk: 1-4}. Points are recomputed; no Movement."""
    data = request.get_json(silent=True) or {}
    missing = [f for f in ("complexity", "risk") if data.get(f) is None]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required",
                         details={"missing": missing})
    return jsonify(reconciliation_service.update_estimate(
        item_id, data["complexity"], data["risk"],
    )), 200


# ═════════════════════════════════════════════════════════════════════════
# Movements
# ═════════════════════════════════════════════════════════════════════════


@work_items_bp.route("/movements", methods=["GET"])
def list_movements():
    """Query params: rollback_only, start, end, project_id, limit, offset."""
    q = wis.movement_query(
        rollback_only=_flag("rollback_only"),
        start=request.args.get("start"),
        end=request.args.get("end"),
        project_id=request.args.get("project_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [m.to_dict() for m in items], "total": total}), 200


@work_items_bp.route("/movements/<int:movement_id>/justification", methods=["PUT"])
@require_capability("movements.justify")
def justify_movement(movement_id):
    """Body: {justification, user}. ``user`` falls back to the X-User header."""
    data = request.get_json(silent=True) or {}
    text = (data.get("justification") or "").strip()
    user = (data.get("user") or request.headers.get("X-User") or "").strip()
    if not text:
        return api_error(E.VALIDATION_REQUIRED, "justification is required")
    if not user:
        return api_error(E.VALIDATION_REQUIRED, "user is required")
    return jsonify(reconciliation_service.justify_movement(movement_id, text, user)), 200


# ═════════════════════════════════════════════════════════════════════════
# Projects & teams
# ═════════════════════════════════════════════════════════════════════════


@work_items_bp.route("/projects", methods=["GET"])
def list_projects():
    projects = wis.list_projects(
        source=request.args.get("source"),
        team_id=request.args.get("team_id", type=int),
    )
    return jsonify({"items": projects, "total": len(projects)}), 200


@work_items_bp.route("/projects/<int:project_id>/aggregation", methods=["GET"])
def get_aggregation(project_id):
    wis.get_project(project_id)
    agg = aggregation_service.get_aggregation(project_id)
    if agg is None:
        return api_error(E.NOT_FOUND, f"Project id={project_id} has no aggregation yet")
    return jsonify(agg), 200


@work_items_bp.route("/projects/<int:project_id>/aggregation/recalculate", methods=["POST"])
@require_capability("aggregations.recalculate", project_arg="project_id")
def recalculate_aggregation(project_id):
    wis.get_project(project_id)
    agg = aggregation_service.recalculate_project(project_id)
    if agg is None:
        return api_error(E.DATABASE, "Aggregation could not be calculated")
    return jsonify(agg.to_dict()), 200


@work_items_bp.route("/projects/<int:project_id>/team", methods=["PUT"])
@require_capability("teams.manage", project_arg="project_id")
def set_project_team(project_id):
    """Body: {team_id: int | null}. A manual mapping survives later syncs."""
    data = request.get_json(silent=True) or {}
    if "team_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "team_id is required (null clears the mapping)")
    team_id = data["team_id"]
    if team_id is not None and (isinstance(team_id, bool) or not isinstance(team_id, int)):
        return api_error(E.VALIDATION_INVALID, "team_id must be an integer or null")
    return jsonify(wis.set_project_team(project_id, team_id)), 200


@work_items_bp.route("/teams", methods=["GET"])
def list_teams():
    teams = wis.list_teams()
    return jsonify({"items": teams, "total": len(teams)}), 200


@work_items_bp.route("/teams", methods=["POST"])
@require_capability("teams.manage")
def create_team():
    data = request.get_json(silent=True) or {}
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    return jsonify(wis.create_team(data["name"], data.get("description", ""))), 201


# ═════════════════════════════════════════════════════════════════════════
# Delivery points reference
# ═════════════════════════════════════════════════════════════════════════


@work_items_bp.route("/delivery-points/matrix", methods=["GET"])
def delivery_points_matrix():
    return jsonify(points_matrix(request.args.get("item_type", "ticket"))), 200


@work_items_bp.route("/delivery-points/calculate", methods=["GET"])
def delivery_points_calculate():
    complexity = request.args.get("complexity", type=int)
    risk = request.args.get("risk", type=int)
    if complexity is None or risk is None:
        return api_error(E.VALIDATION_REQUIRED, "complexity and risk are required integers")
    item_type = request.args.get("item_type", "ticket")
    return jsonify({
        "complexity": complexity,
        "risk": risk,
        "item_type": item_type,
        "delivery_points": calculate_points(complexity, risk, item_type),
    }), 200
