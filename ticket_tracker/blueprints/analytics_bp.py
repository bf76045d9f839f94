"""
Analytics blueprint: read-only reporting over the canonical store.

Endpoints:
    GET /api/v1/analytics/team-performance   ?team_id=
    GET /api/v1/analytics/rollbacks          ?start=&end=
    GET /api/v1/analytics/sla-compliance     ?lookahead_minutes=&item_type=
    GET /api/v1/analytics/trends             ?start=&end=&bucket=day|week&item_type=
    GET /api/v1/analytics/governance
"""

from datetime import datetime, timedelta, timezone

from flask import Blueprint, jsonify, request

from ticket_tracker.blueprints import register_error_handlers
from ticket_tracker.core.exceptions import ValidationError
from ticket_tracker.integrations.base import parse_timestamp
from ticket_tracker.services import analytics_service

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/v1/analytics")
register_error_handlers(analytics_bp)

_DEFAULT_TREND_DAYS = 30


def _timestamp_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    value = parse_timestamp(raw)
    if value is None:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp", details={name: raw})
    return value


@analytics_bp.route("/team-performance", methods=["GET"])
def team_performance():
    teams = analytics_service.team_performance(request.args.get("team_id", type=int))
    return jsonify({"items": teams, "total": len(teams)}), 200


@analytics_bp.route("/rollbacks", methods=["GET"])
def rollbacks():
    return jsonify(analytics_service.rollback_analysis(
        start=_timestamp_arg("start"), end=_timestamp_arg("end"),
    )), 200


@analytics_bp.route("/sla-compliance", methods=["GET"])
def sla_compliance():
    return jsonify(analytics_service.sla_compliance(
        lookahead_minutes=request.args.get("lookahead_minutes", type=int),
        item_type=request.args.get("item_type"),
    )), 200


@analytics_bp.route("/trends", methods=["GET"])
def trends():
    """Defaults to the last 30 days, daily buckets."""
    today = datetime.now(timezone.utc).date()
    start = request.args.get("start") or (today - timedelta(days=_DEFAULT_TREND_DAYS - 1)).isoformat()
    end = request.args.get("end") or today.isoformat()
    bucket = request.args.get("bucket", "day")
    series = analytics_service.trend_series(
        start, end, bucket=bucket, item_type=request.args.get("item_type"),
    )
    return jsonify({"bucket": bucket, "series": series}), 200


@analytics_bp.route("/governance", methods=["GET"])
def governance():
    return jsonify(analytics_service.governance_cockpit()), 200
