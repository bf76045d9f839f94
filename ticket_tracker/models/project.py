"""
Ticket Tracker
Project / Team models.

Models:
    - Team: Owns zero or more Projects; unit of team-level analytics
    - Project: Groups WorkItems discovered in an external source
    - DeliveryAggregation: Cached, recomputable per-project projection
"""

from datetime import datetime, timezone

from ticket_tracker.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Team(db.Model):
    __tablename__ = "teams"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False, unique=True)
    description = db.Column(db.String(500), default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    projects = db.relationship("Project", back_populates="team")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "project_count": len(self.projects),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Team {self.name}>"


class Project(db.Model):
    """
    Project discovered in an external source (Jira project, helpdesk group).

    ``is_manual_team_map`` marks a team assignment made by a person; sync
    never overwrites ``team_id`` while it is set.
    """

    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("source", "external_key", name="uq_projects_source_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(30), nullable=False)
    external_key = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(300), nullable=False)
    lead = db.Column(db.String(200), nullable=True)
    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    is_manual_team_map = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    team = db.relationship("Team", back_populates="projects")
    work_items = db.relationship("WorkItem", back_populates="project")
    aggregation = db.relationship(
        "DeliveryAggregation", back_populates="project",
        uselist=False, cascade="all, delete-orphan",
    )

    def to_dict(self, include_aggregation: bool = False):
        d = {
            "id": self.id,
            "source": self.source,
            "external_key": self.external_key,
            "name": self.name,
            "lead": self.lead,
            "team_id": self.team_id,
            "is_manual_team_map": self.is_manual_team_map,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_aggregation:
            d["aggregation"] = self.aggregation.to_dict() if self.aggregation else None
        return d

    def __repr__(self):
        return f"<Project {self.source}:{self.external_key}>"


class DeliveryAggregation(db.Model):
    """
    Denormalised delivery totals for one project.

    Never a source of truth: every value is derivable by summing the
    project's WorkItems, and only ``aggregation_service.recalculate_project``
    writes it.
    """

    __tablename__ = "delivery_aggregations"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    total_delivery_points = db.Column(db.Integer, nullable=False, default=0)
    completed_delivery_points = db.Column(db.Integer, nullable=False, default=0)
    total_items = db.Column(db.Integer, nullable=False, default=0)
    completed_items = db.Column(db.Integer, nullable=False, default=0)
    rollback_count = db.Column(db.Integer, nullable=False, default=0)
    efficiency_percentage = db.Column(db.Float, nullable=False, default=0.0)
    last_calculated = db.Column(db.DateTime(timezone=True), nullable=True)

    project = db.relationship("Project", back_populates="aggregation")

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "total_delivery_points": self.total_delivery_points,
            "completed_delivery_points": self.completed_delivery_points,
            "total_items": self.total_items,
            "completed_items": self.completed_items,
            "rollback_count": self.rollback_count,
            "efficiency_percentage": self.efficiency_percentage,
            "last_calculated": self.last_calculated.isoformat() if self.last_calculated else None,
        }

    def __repr__(self):
        return f"<DeliveryAggregation project={self.project_id} {self.completed_delivery_points}/{self.total_delivery_points}>"
