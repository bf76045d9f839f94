"""
Escalation sync.

Derives Escalation rows from Movements whose support tier moved upward
(L1 < L2 < L3 < L4). Safe to run repeatedly: a row already present for
(work_item_id, from_level, to_level, escalated_at) is never inserted
twice.

Usage:
    from ticket_tracker.services.escalation_service import sync_escalations
    result = sync_escalations()   # {"scanned": 12, "created": 3}
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ticket_tracker.models import db
from ticket_tracker.models.work_item import Escalation, Movement, WorkItem
from ticket_tracker.services.movement_classifier import is_escalation
from ticket_tracker.services.sla_policy import as_utc

logger = logging.getLogger(__name__)


def _existing_keys(work_item_ids: set[int]) -> set[tuple]:
    if not work_item_ids:
        return set()
    rows = db.session.execute(
        select(Escalation.work_item_id, Escalation.from_level,
               Escalation.to_level, Escalation.escalated_at)
        .where(Escalation.work_item_id.in_(work_item_ids))
    ).all()
    return {(wid, f, t, as_utc(at)) for wid, f, t, at in rows}


def sync_escalations() -> dict:
    """Insert missing Escalation rows. Returns {"scanned", "created"}."""
    candidates = db.session.execute(
        select(Movement, WorkItem)
        .join(WorkItem, Movement.work_item_id == WorkItem.id)
        .where(Movement.from_level.is_not(None), Movement.to_level.is_not(None))
        .order_by(Movement.moved_at)
    ).all()
    upward = [(m, wi) for m, wi in candidates if is_escalation(m.from_level, m.to_level)]
    existing = _existing_keys({wi.id for _, wi in upward})

    created = 0
    for movement, wi in upward:
        escalated_at = as_utc(movement.moved_at)
        key = (wi.id, movement.from_level, movement.to_level, escalated_at)
        if key in existing:
            continue
        breached = bool(
            wi.sla_due_date is not None and escalated_at > as_utc(wi.sla_due_date)
        )
        try:
            with db.session.begin_nested():
                db.session.add(Escalation(
                    work_item_id=wi.id,
                    movement_id=movement.id,
                    from_level=movement.from_level,
                    to_level=movement.to_level,
                    escalated_at=escalated_at,
                    escalated_by=movement.actor,
                    reason=f"Support tier raised {movement.from_level} → {movement.to_level}",
                    sla_breached=breached,
                ))
        except IntegrityError:
            # Inserted concurrently by another pass
            logger.debug("Escalation for %s already recorded", wi.external_key)
            continue
        existing.add(key)
        created += 1
    db.session.commit()

    if created:
        logger.info("Escalation sync: %d new of %d upward movements", created, len(upward))
    return {"scanned": len(upward), "created": created}


def list_escalations(*, work_item_id: int | None = None, to_level: str | None = None,
                     limit: int = 100) -> list[dict]:
    stmt = select(Escalation).order_by(Escalation.escalated_at.desc())
    if work_item_id is not None:
        stmt = stmt.where(Escalation.work_item_id == work_item_id)
    if to_level:
        stmt = stmt.where(Escalation.to_level == to_level)
    return [e.to_dict() for e in db.session.execute(stmt.limit(limit)).scalars()]
