"""
Ticket Tracker
Work item read side plus team / project administration.

Status, estimate and points are never written here; those go through
reconciliation_service. This module owns:
    - filtered queries over WorkItems and Movements (paginated by blueprints)
    - Team creation
    - manual Project → Team mapping (sets ``is_manual_team_map``)
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from ticket_tracker.core.exceptions import ConflictError, NotFoundError, ValidationError
from ticket_tracker.integrations.base import parse_timestamp
from ticket_tracker.models import db
from ticket_tracker.models.project import Project, Team
from ticket_tracker.models.work_item import ITEM_TYPES, SOURCES, Movement, WorkItem

logger = logging.getLogger(__name__)


def _parse_when(name: str, value):
    if value in (None, ""):
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp", details={name: value})
    return parsed


# ═════════════════════════════════════════════════════════════════════════════
# Work items
# ═════════════════════════════════════════════════════════════════════════════

def work_item_query(
    *,
    source: str | None = None,
    item_type: str | None = None,
    status: str | None = None,
    project_id: int | None = None,
    external_key: str | None = None,
    updated_since=None,
    updated_until=None,
):
    """Build a filtered WorkItem query, newest first."""
    if source and source not in SOURCES:
        raise ValidationError(f"source must be one of: {', '.join(SOURCES)}")
    if item_type and item_type not in ITEM_TYPES:
        raise ValidationError(f"item_type must be one of: {', '.join(ITEM_TYPES)}")
    since = _parse_when("updated_since", updated_since)
    until = _parse_when("updated_until", updated_until)

    q = WorkItem.query
    if source:
        q = q.filter(WorkItem.source == source)
    if item_type:
        q = q.filter(WorkItem.item_type == item_type)
    if status:
        q = q.filter(WorkItem.status == status)
    if project_id is not None:
        q = q.filter(WorkItem.project_id == project_id)
    if external_key:
        q = q.filter(WorkItem.external_key == external_key)
    if since:
        q = q.filter(WorkItem.updated_at >= since)
    if until:
        q = q.filter(WorkItem.updated_at <= until)
    return q.order_by(WorkItem.updated_at.desc(), WorkItem.id.desc())


def get_work_item(work_item_id: int) -> dict:
    wi = db.session.get(WorkItem, work_item_id)
    if wi is None:
        raise NotFoundError(resource="WorkItem", resource_id=work_item_id)
    return wi.to_dict(include_movements=True)


def list_item_movements(work_item_id: int) -> list[dict]:
    if db.session.get(WorkItem, work_item_id) is None:
        raise NotFoundError(resource="WorkItem", resource_id=work_item_id)
    stmt = (
        select(Movement)
        .where(Movement.work_item_id == work_item_id)
        .order_by(Movement.moved_at, Movement.id)
    )
    return [m.to_dict() for m in db.session.execute(stmt).scalars()]


def movement_query(*, rollback_only: bool = False, start=None, end=None,
                   project_id: int | None = None):
    """Filtered Movement query, most recent first."""
    lo = _parse_when("start", start)
    hi = _parse_when("end", end)
    if lo and hi and lo > hi:
        raise ValidationError("start must not be after end")

    q = Movement.query
    if rollback_only:
        q = q.filter(Movement.is_rollback.is_(True))
    if lo:
        q = q.filter(Movement.moved_at >= lo)
    if hi:
        q = q.filter(Movement.moved_at <= hi)
    if project_id is not None:
        q = q.join(WorkItem, Movement.work_item_id == WorkItem.id).filter(
            WorkItem.project_id == project_id
        )
    return q.order_by(Movement.moved_at.desc(), Movement.id.desc())


# ═════════════════════════════════════════════════════════════════════════════
# Projects & teams
# ═════════════════════════════════════════════════════════════════════════════

def list_projects(*, source: str | None = None, team_id: int | None = None) -> list[dict]:
    stmt = select(Project).order_by(Project.source, Project.name)
    if source:
        stmt = stmt.where(Project.source == source)
    if team_id is not None:
        stmt = stmt.where(Project.team_id == team_id)
    return [p.to_dict(include_aggregation=True) for p in db.session.execute(stmt).scalars()]


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def set_project_team(project_id: int, team_id: int | None) -> dict:
    """Map a project to a team by hand. ``None`` clears the manual mapping."""
    project = get_project(project_id)
    if team_id is not None and db.session.get(Team, team_id) is None:
        raise NotFoundError(resource="Team", resource_id=team_id)

    project.team_id = team_id
    project.is_manual_team_map = team_id is not None
    db.session.commit()
    logger.info("Project %s mapped to team %s", project.external_key, team_id)
    return project.to_dict()


def list_teams() -> list[dict]:
    return [t.to_dict() for t in db.session.execute(select(Team).order_by(Team.name)).scalars()]


def create_team(name: str, description: str = "") -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if len(name) > 150:
        raise ValidationError("name must be ≤ 150 characters")
    if db.session.execute(select(Team.id).where(Team.name == name)).first():
        raise ConflictError(resource="Team", field="name", value=name)

    team = Team(name=name, description=(description or "").strip())
    db.session.add(team)
    db.session.commit()
    return team.to_dict()
