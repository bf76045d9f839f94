"""
Ticket Tracker
Work item models.

Models:
    - WorkItem: Canonical record for tickets, incidents and service requests
    - Movement: One observed status (or support tier) change of a WorkItem
    - Escalation: Upward support-tier transition derived from Movements

Pipelines are fixed, ordered tuples. The position of a status in its
pipeline is its rank; ``ROLLBACK_MARKER`` is deliberately absent from every
pipeline so it never acts as a rank target.
"""

from datetime import datetime, timezone

from ticket_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SOURCES = ("jira", "freshdesk", "freshservice")
ITEM_TYPES = ("ticket", "incident", "service_request")

TICKET_PIPELINE = (
    "todo",
    "in_progress",
    "blocked",
    "review",
    "devops",
    "ready_to_test",
    "qa_test",
    "security_testing",
    "uat",
    "cab_ready",
    "production_ready",
    "live",
)

HELPDESK_PIPELINE = ("open", "pending", "resolved", "closed")

ROLLBACK_MARKER = "rollback"

PIPELINES = {
    "ticket": TICKET_PIPELINE,
    "incident": HELPDESK_PIPELINE,
    "service_request": HELPDESK_PIPELINE,
}

TERMINAL_STATUSES = {
    "ticket": frozenset({"live"}),
    "incident": frozenset({"resolved", "closed"}),
    "service_request": frozenset({"resolved", "closed"}),
}

PRIORITIES = ("Low", "Medium", "High", "Critical")

SUPPORT_LEVELS = ("L1", "L2", "L3", "L4")


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(dt):
    return dt.isoformat() if dt else None


class WorkItem(db.Model):
    """
    Canonical work item reconciled from an external source.

    ``external_key`` is unique inside its ``source`` namespace. Status,
    estimate and delivery points are written only by the reconciliation
    service; API callers never set ``delivery_points`` directly.
    """

    __tablename__ = "work_items"
    __table_args__ = (
        db.UniqueConstraint("source", "external_key", name="uq_work_items_source_key"),
        db.Index("ix_work_items_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(30), nullable=False, index=True,
                       comment="jira, freshdesk, freshservice")
    item_type = db.Column(db.String(30), nullable=False, default="ticket",
                          comment="ticket, incident, service_request")
    external_key = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(500), nullable=False, default="")
    status = db.Column(db.String(40), nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="Medium")
    complexity = db.Column(db.Integer, nullable=False, default=1)
    risk = db.Column(db.Integer, nullable=False, default=1)
    delivery_points = db.Column(db.Integer, nullable=False, default=0)
    assignee = db.Column(db.String(200), nullable=True)
    support_level = db.Column(db.String(5), nullable=True,
                              comment="L1..L4 for helpdesk items; never decreases")

    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    sla_due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    source_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    project = db.relationship("Project", back_populates="work_items")
    movements = db.relationship(
        "Movement", back_populates="work_item",
        cascade="all, delete-orphan", order_by="Movement.moved_at",
    )

    @property
    def pipeline(self) -> tuple:
        return PIPELINES[self.item_type]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES[self.item_type]

    def to_dict(self, include_movements: bool = False):
        d = {
            "id": self.id,
            "source": self.source,
            "item_type": self.item_type,
            "external_key": self.external_key,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "complexity": self.complexity,
            "risk": self.risk,
            "delivery_points": self.delivery_points,
            "assignee": self.assignee,
            "support_level": self.support_level,
            "project_id": self.project_id,
            "sla_due_date": _iso(self.sla_due_date),
            "completed_at": _iso(self.completed_at),
            "source_updated_at": _iso(self.source_updated_at),
            "last_synced_at": _iso(self.last_synced_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_movements:
            d["movements"] = [m.to_dict() for m in self.movements]
        return d

    def __repr__(self):
        return f"<WorkItem {self.source}:{self.external_key} [{self.status}]>"


class Movement(db.Model):
    """
    A single observed transition of a WorkItem.

    Immutable once written, apart from the reviewer justification fields.
    Tier movements carry ``from_level``/``to_level`` and may have
    ``from_status == to_status``.
    """

    __tablename__ = "movements"
    __table_args__ = (
        db.Index("ix_movements_item_moved_at", "work_item_id", "moved_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_item_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_status = db.Column(db.String(40), nullable=False)
    to_status = db.Column(db.String(40), nullable=False)
    from_level = db.Column(db.String(5), nullable=True)
    to_level = db.Column(db.String(5), nullable=True)
    transition = db.Column(db.String(20), nullable=False, default="forward",
                           comment="forward, lateral, rollback")
    is_rollback = db.Column(db.Boolean, nullable=False, default=False, index=True)
    actor = db.Column(db.String(200), nullable=False, default="system")
    moved_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    points_at_move = db.Column(db.Integer, nullable=True,
                               comment="Delivery points of the item when the move was observed")

    justification = db.Column(db.Text, nullable=True)
    justified_by = db.Column(db.String(200), nullable=True)
    justified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    work_item = db.relationship("WorkItem", back_populates="movements")

    def to_dict(self):
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_level": self.from_level,
            "to_level": self.to_level,
            "transition": self.transition,
            "is_rollback": self.is_rollback,
            "actor": self.actor,
            "moved_at": _iso(self.moved_at),
            "points_at_move": self.points_at_move,
            "justification": self.justification,
            "justified_by": self.justified_by,
            "justified_at": _iso(self.justified_at),
        }

    def __repr__(self):
        return f"<Movement {self.work_item_id}: {self.from_status}->{self.to_status}>"


class Escalation(db.Model):
    """Upward support-tier transition, derived by the escalation sync pass."""

    __tablename__ = "escalations"
    __table_args__ = (
        db.UniqueConstraint(
            "work_item_id", "from_level", "to_level", "escalated_at",
            name="uq_escalations_item_levels_at",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_item_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    movement_id = db.Column(
        db.Integer, db.ForeignKey("movements.id", ondelete="SET NULL"), nullable=True,
    )
    from_level = db.Column(db.String(5), nullable=False)
    to_level = db.Column(db.String(5), nullable=False)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    escalated_by = db.Column(db.String(200), nullable=True)
    reason = db.Column(db.String(500), nullable=True)
    sla_breached = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    work_item = db.relationship("WorkItem")

    def to_dict(self):
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "external_key": self.work_item.external_key if self.work_item else None,
            "movement_id": self.movement_id,
            "from_level": self.from_level,
            "to_level": self.to_level,
            "escalated_at": _iso(self.escalated_at),
            "escalated_by": self.escalated_by,
            "reason": self.reason,
            "sla_breached": self.sla_breached,
        }

    def __repr__(self):
        return f"<Escalation {self.work_item_id}: {self.from_level}->{self.to_level}>"
