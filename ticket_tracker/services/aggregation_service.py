"""
Ticket Tracker
Delivery aggregation service.

DeliveryAggregation is a cached projection of a project's WorkItems. The
only writer is ``recalculate_project``; it recomputes every field from the
store in one query pass, so calling it twice in a row yields the same row.

On failure the transaction is rolled back and the previously cached row is
kept: stale-but-present beats absent for dashboards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError

from ticket_tracker.models import db
from ticket_tracker.models.project import DeliveryAggregation, Project
from ticket_tracker.models.work_item import TERMINAL_STATUSES, Movement, WorkItem

logger = logging.getLogger(__name__)


def completed_clause():
    """SQL predicate: item is in a terminal status for its own pipeline."""
    return db.or_(*[
        db.and_(WorkItem.item_type == item_type, WorkItem.status.in_(sorted(statuses)))
        for item_type, statuses in TERMINAL_STATUSES.items()
    ])


def compute_totals(project_id: int) -> dict:
    """Sum a project's WorkItems. Pure read; used by recalculation and tests."""
    completed = completed_clause()
    row = db.session.execute(
        select(
            func.count(WorkItem.id),
            func.coalesce(func.sum(WorkItem.delivery_points), 0),
            func.coalesce(func.sum(case((completed, 1), else_=0)), 0),
            func.coalesce(func.sum(case((completed, WorkItem.delivery_points), else_=0)), 0),
        ).where(WorkItem.project_id == project_id)
    ).one()
    rollbacks = db.session.execute(
        select(func.count(Movement.id))
        .join(WorkItem, Movement.work_item_id == WorkItem.id)
        .where(WorkItem.project_id == project_id, Movement.is_rollback.is_(True))
    ).scalar_one()

    total_items, total_points, completed_items, completed_points = (int(v or 0) for v in row)
    efficiency = round(completed_points / total_points * 100, 1) if total_points else 0.0
    return {
        "total_items": total_items,
        "completed_items": completed_items,
        "total_delivery_points": total_points,
        "completed_delivery_points": completed_points,
        "rollback_count": int(rollbacks or 0),
        "efficiency_percentage": efficiency,
    }


def recalculate_project(project_id: int) -> DeliveryAggregation | None:
    """Recompute and persist the DeliveryAggregation of one project.

    Returns:
        The fresh aggregation, or the previous cached one if recalculation
        failed (None when there never was one).
    """
    try:
        project = db.session.get(Project, project_id)
        if project is None:
            logger.warning("Aggregation skipped: project %s does not exist", project_id)
            return None

        totals = compute_totals(project_id)
        agg = project.aggregation
        if agg is None:
            agg = DeliveryAggregation(project_id=project_id)
            db.session.add(agg)
        for field, value in totals.items():
            setattr(agg, field, value)
        agg.last_calculated = datetime.now(timezone.utc)
        db.session.commit()
        logger.debug("Aggregation recalculated project=%s points=%d/%d",
                     project_id, totals["completed_delivery_points"],
                     totals["total_delivery_points"])
        return agg
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Aggregation recalculation failed for project %s; keeping cached values",
                         project_id)
        return db.session.execute(
            select(DeliveryAggregation).where(DeliveryAggregation.project_id == project_id)
        ).scalar_one_or_none()


def recalculate_all() -> dict:
    """Recalculate every project. Returns {"projects": n, "failed": [ids]}."""
    ids = db.session.execute(select(Project.id).order_by(Project.id)).scalars().all()
    failed = []
    for pid in ids:
        agg = recalculate_project(pid)
        if agg is None or agg.last_calculated is None:
            failed.append(pid)
    return {"projects": len(ids), "failed": failed}


def get_aggregation(project_id: int) -> dict | None:
    agg = db.session.execute(
        select(DeliveryAggregation).where(DeliveryAggregation.project_id == project_id)
    ).scalar_one_or_none()
    return agg.to_dict() if agg else None
