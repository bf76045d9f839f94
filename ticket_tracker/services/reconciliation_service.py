"""
Ticket Tracker
Reconciliation Service.

Merges normalised source items into the canonical store:
  - Upsert WorkItems keyed by (source, external_key)
  - Classify every observed status change and persist exactly one Movement
  - Recompute delivery points whenever complexity/risk change (no Movement)
  - Ratchet helpdesk support tiers upward and record tier Movements
  - Recalculate each touched project's aggregation once per batch

Consistency:
  Each item is applied inside a SAVEPOINT and committed on its own, so a
  WorkItem status change and its Movement land together or not at all.
  A failing item is rolled back to its savepoint, recorded in the report,
  and the batch continues.

Ordering:
  Items older than the stored ``source_updated_at`` are treated as stale
  and skipped, so a re-ordered feed never regresses an item.

This module is the only writer of WorkItem status / estimate / points and
the only creator of Movements.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ticket_tracker.core.exceptions import (
    MalformedItemError,
    NotFoundError,
    ValidationError,
)
from ticket_tracker.integrations.base import ExternalProject, HistoryEntry, NormalizedWorkItem
from ticket_tracker.models import db
from ticket_tracker.models.project import Project
from ticket_tracker.models.work_item import (
    ITEM_TYPES,
    PRIORITIES,
    SOURCES,
    SUPPORT_LEVELS,
    Movement,
    WorkItem,
)
from ticket_tracker.services import aggregation_service
from ticket_tracker.services.delivery_points import calculate_points
from ticket_tracker.services.movement_classifier import (
    Transition,
    classify,
    is_escalation,
    is_terminal,
    is_valid_status,
)
from ticket_tracker.services.sla_policy import as_utc, due_date_for

logger = logging.getLogger(__name__)

# History entries within this tolerance of an existing Movement are duplicates
HISTORY_DEDUP_TOLERANCE = timedelta(seconds=2)

_MAX_REPORTED_FAILURES = 200


# ═══════════════════════════════════════════════════════════════════════════
#  Report
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ReconciliationReport:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    movements: int = 0
    rollbacks: int = 0
    failures: list[dict] = field(default_factory=list)
    projects_touched: set[int] = field(default_factory=set)
    status_changed: list[int] = field(default_factory=list)
    # Movement ids of the status changes recorded above, for history backfill
    status_moves: list[int] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged + self.stale + self.failed

    def add_failure(self, external_key: str | None, error: Exception | str) -> None:
        self.failures.append({"external_key": external_key or "?", "error": str(error)})

    def merge(self, other: "ReconciliationReport") -> "ReconciliationReport":
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.stale += other.stale
        self.movements += other.movements
        self.rollbacks += other.rollbacks
        self.failures.extend(other.failures)
        self.projects_touched |= other.projects_touched
        self.status_changed.extend(other.status_changed)
        self.status_moves.extend(other.status_moves)
        return self

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "movements": self.movements,
            "rollbacks": self.rollbacks,
            "failed": self.failed,
            "failures": self.failures[:_MAX_REPORTED_FAILURES],
            "projects_touched": sorted(self.projects_touched),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _validate(item: NormalizedWorkItem) -> None:
    if not item.external_key or not str(item.external_key).strip():
        raise MalformedItemError(None, "external key is required")
    if item.source not in SOURCES:
        raise ValidationError(f"Unknown source '{item.source}'", details={"source": item.source})
    if item.item_type not in ITEM_TYPES:
        raise ValidationError(f"Unknown item type '{item.item_type}'",
                              details={"item_type": item.item_type})
    if not is_valid_status(item.item_type, item.status):
        raise ValidationError(
            f"Status '{item.status}' is not valid for {item.item_type}",
            details={"status": item.status},
        )
    if item.priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority '{item.priority}'",
                              details={"priority": item.priority})
    if item.support_level is not None and item.support_level not in SUPPORT_LEVELS:
        raise ValidationError(f"Unknown support level '{item.support_level}'",
                              details={"support_level": item.support_level})


def _resolve_project_id(source: str, project_key: str | None, cache: dict) -> int | None:
    """Map a source project key to a Project id, creating a placeholder if unseen."""
    if not project_key:
        return None
    cache_key = (source, project_key)
    if cache_key in cache:
        return cache[cache_key]
    project = db.session.execute(
        select(Project).where(Project.source == source, Project.external_key == project_key)
    ).scalar_one_or_none()
    if project is None:
        project = Project(source=source, external_key=project_key, name=project_key)
        db.session.add(project)
        db.session.flush()
    cache[cache_key] = project.id
    return project.id


def _find(source: str, external_key: str) -> WorkItem | None:
    return db.session.execute(
        select(WorkItem).where(WorkItem.source == source, WorkItem.external_key == external_key)
    ).scalar_one_or_none()


def _make_movement(
    wi: WorkItem,
    from_status: str,
    to_status: str,
    transition: Transition,
    *,
    actor: str | None,
    moved_at: datetime,
    from_level: str | None = None,
    to_level: str | None = None,
) -> Movement:
    movement = Movement(
        work_item_id=wi.id,
        from_status=from_status,
        to_status=to_status,
        from_level=from_level,
        to_level=to_level,
        transition=transition.value,
        is_rollback=transition is Transition.ROLLBACK,
        actor=actor or "system",
        moved_at=moved_at,
        points_at_move=wi.delivery_points,
    )
    db.session.add(movement)
    return movement


# ═══════════════════════════════════════════════════════════════════════════
#  Per-item application
# ═══════════════════════════════════════════════════════════════════════════

def _create_item(item: NormalizedWorkItem, project_id: int | None, now: datetime) -> WorkItem:
    complexity = item.complexity if item.complexity is not None else 1
    risk = item.risk if item.risk is not None else 1
    created_at = as_utc(item.created_at) if item.created_at else now
    wi = WorkItem(
        source=item.source,
        item_type=item.item_type,
        external_key=item.external_key,
        title=item.title or "",
        status=item.status,
        priority=item.priority,
        complexity=complexity,
        risk=risk,
        delivery_points=calculate_points(complexity, risk, item.item_type),
        assignee=item.assignee,
        support_level=item.support_level,
        project_id=project_id,
        sla_due_date=due_date_for(created_at, item.priority),
        completed_at=now if is_terminal(item.item_type, item.status) else None,
        source_updated_at=item.updated_at,
        last_synced_at=now,
        created_at=created_at,
    )
    db.session.add(wi)
    db.session.flush()
    return wi


def _update_item(
    wi: WorkItem,
    item: NormalizedWorkItem,
    project_id: int | None,
    now: datetime,
    report: ReconciliationReport,
) -> bool:
    """Apply the diff of ``item`` onto ``wi``. Returns True if anything changed."""
    changed = False
    moved_at = as_utc(item.updated_at) if item.updated_at else now

    # Estimate first so a Movement records the points the item now carries
    complexity = item.complexity if item.complexity is not None else wi.complexity
    risk = item.risk if item.risk is not None else wi.risk
    if (complexity, risk) != (wi.complexity, wi.risk):
        wi.complexity, wi.risk = complexity, risk
        changed = True
    points = calculate_points(wi.complexity, wi.risk, wi.item_type)
    if points != wi.delivery_points:
        wi.delivery_points = points
        changed = True

    # Tiers only ratchet upward; a first-seen tier is seeded without a Movement
    if item.support_level and wi.support_level is None:
        wi.support_level = item.support_level
        changed = True
    level_moved = is_escalation(wi.support_level, item.support_level)
    new_level = item.support_level if level_moved else wi.support_level

    if item.status != wi.status:
        transition = classify(wi.pipeline, wi.status, item.status)
        movement = _make_movement(
            wi, wi.status, item.status, transition,
            actor=item.actor, moved_at=moved_at,
            from_level=wi.support_level if level_moved else None,
            to_level=new_level if level_moved else None,
        )
        report.movements += 1
        if transition is Transition.ROLLBACK:
            report.rollbacks += 1
            logger.info("Rollback %s:%s %s -> %s", wi.source, wi.external_key,
                        wi.status, item.status,
                        extra={"external_key": wi.external_key, "source_type": wi.source})
        report.status_changed.append(wi.id)
        db.session.flush()
        report.status_moves.append(movement.id)
        wi.status = item.status
        wi.completed_at = now if is_terminal(wi.item_type, wi.status) else None
        changed = True
    elif level_moved:
        _make_movement(
            wi, wi.status, wi.status, Transition.LATERAL,
            actor=item.actor, moved_at=moved_at,
            from_level=wi.support_level, to_level=new_level,
        )
        report.movements += 1
    if level_moved:
        wi.support_level = new_level
        changed = True

    if item.priority != wi.priority:
        wi.priority = item.priority
        wi.sla_due_date = due_date_for(wi.created_at, wi.priority)
        changed = True

    for attr in ("assignee", "title"):
        value = getattr(item, attr)
        if value is not None and value != getattr(wi, attr):
            setattr(wi, attr, value)
            changed = True

    if project_id is not None and project_id != wi.project_id:
        if wi.project_id is not None:
            report.projects_touched.add(wi.project_id)
        wi.project_id = project_id
        changed = True

    if item.updated_at:
        wi.source_updated_at = item.updated_at
    wi.last_synced_at = now
    return changed


def _apply(item: NormalizedWorkItem, project_cache: dict, report: ReconciliationReport,
           now: datetime) -> None:
    _validate(item)
    project_id = _resolve_project_id(item.source, item.project_key, project_cache)
    wi = _find(item.source, item.external_key)

    if wi is None:
        wi = _create_item(item, project_id, now)
        report.created += 1
    elif (
        item.updated_at is not None
        and wi.source_updated_at is not None
        and as_utc(item.updated_at) < as_utc(wi.source_updated_at)
    ):
        report.stale += 1
        return
    elif _update_item(wi, item, project_id, now, report):
        report.updated += 1
    else:
        report.unchanged += 1

    if wi.project_id is not None:
        report.projects_touched.add(wi.project_id)


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════

def reconcile(
    items: Iterable[NormalizedWorkItem],
    *,
    recalculate: bool = True,
    project_cache: dict | None = None,
) -> ReconciliationReport:
    """Upsert a batch of normalised items.

    Args:
        items: Normalised items, any mix of sources.
        recalculate: Recalculate each touched project's aggregation once at
            the end. The orchestrator passes False and recalculates after
            the last batch of a project instead.
        project_cache: Optional (source, project_key) → id cache shared
            across batches of one run.

    Returns:
        ReconciliationReport with counts and per-item failures.
    """
    report = ReconciliationReport()
    cache = project_cache if project_cache is not None else {}
    now = datetime.now(timezone.utc)

    for item in items:
        key = getattr(item, "external_key", None)
        counts_before = _snapshot(report)
        cached_before = set(cache)
        try:
            with db.session.begin_nested():
                _apply(item, cache, report, now)
            db.session.commit()
        except (ValidationError, MalformedItemError) as exc:
            _undo_counts(report, counts_before)
            _forget_new_projects(cache, cached_before)
            report.add_failure(key, exc)
            logger.warning("Item %s skipped: %s", key, exc, extra={"external_key": key})
        except SQLAlchemyError as exc:
            _undo_counts(report, counts_before)
            # A failed flush may have poisoned cached project ids
            cache.clear()
            report.add_failure(key, f"database error: {exc.__class__.__name__}")
            logger.exception("Item %s failed to persist", key, extra={"external_key": key})
        except Exception as exc:
            _undo_counts(report, counts_before)
            cache.clear()
            report.add_failure(key, exc)
            logger.exception("Unexpected error reconciling %s", key, extra={"external_key": key})

    if recalculate:
        for project_id in sorted(report.projects_touched):
            aggregation_service.recalculate_project(project_id)

    logger.info(
        "Reconciled batch: created=%d updated=%d unchanged=%d stale=%d movements=%d "
        "rollbacks=%d failed=%d",
        report.created, report.updated, report.unchanged, report.stale,
        report.movements, report.rollbacks, report.failed,
    )
    return report


_COUNTERS = ("created", "updated", "unchanged", "stale", "movements", "rollbacks")


def _snapshot(report: ReconciliationReport) -> tuple:
    return tuple(getattr(report, name) for name in _COUNTERS) + (
        len(report.status_changed), len(report.status_moves),
    )


def _forget_new_projects(cache: dict, cached_before: set) -> None:
    # Placeholder projects flushed inside a rolled-back savepoint no longer exist
    for cache_key in set(cache) - cached_before:
        del cache[cache_key]


def _undo_counts(report: ReconciliationReport, before: tuple) -> None:
    """Roll the counters back to what they were before a failed item."""
    for name, value in zip(_COUNTERS, before):
        setattr(report, name, value)
    del report.status_changed[before[-2]:]
    del report.status_moves[before[-1]:]


def upsert_project(source: str, external: ExternalProject) -> Project:
    """Create or refresh a Project from source metadata.

    A manual team mapping (``is_manual_team_map``) is never touched here.
    """
    project = db.session.execute(
        select(Project).where(Project.source == source, Project.external_key == external.key)
    ).scalar_one_or_none()
    if project is None:
        project = Project(source=source, external_key=external.key,
                          name=external.name or external.key, lead=external.lead)
        db.session.add(project)
        logger.info("Discovered project %s:%s", source, external.key)
    else:
        project.name = external.name or project.name
        if external.lead:
            project.lead = external.lead
    db.session.commit()
    return project


def backfill_history(work_item_id: int, entries: Iterable[HistoryEntry],
                     observed_moves: Iterable[int] = ()) -> int:
    """Import source-side history as Movements, skipping ones already present.

    ``observed_moves`` are ids of Movements reconciliation recorded for this
    item during the current run. Their ``moved_at`` is only the item's last
    edit time, so each one claims the latest history entry with the same
    from/to, whatever its timestamp, and takes that entry's time instead
    of being imported a second time.

    Any other entry duplicates an existing Movement when from/to match and
    the timestamps are within HISTORY_DEDUP_TOLERANCE. Entries with statuses
    outside the item's pipeline, or with from == to, are ignored.

    Returns:
        Number of Movements created.
    """
    wi = db.session.get(WorkItem, work_item_id)
    if wi is None:
        raise NotFoundError(resource="WorkItem", resource_id=work_item_id)

    pending = sorted(
        entry for entry in entries
        if entry.from_status != entry.to_status
        and is_valid_status(wi.item_type, entry.from_status)
        and is_valid_status(wi.item_type, entry.to_status)
    )
    observed = set(observed_moves)
    created = 0
    rollbacks = 0
    with db.session.begin_nested():
        for movement in wi.movements:
            if movement.id not in observed:
                continue
            match = next(
                (e for e in reversed(pending)
                 if (e.from_status, e.to_status) == (movement.from_status, movement.to_status)),
                None,
            )
            if match is not None:
                pending = [e for e in pending if e is not match]
                movement.moved_at = as_utc(match.timestamp)
                if match.actor and movement.actor == "system":
                    movement.actor = match.actor

        existing = [(m.from_status, m.to_status, as_utc(m.moved_at)) for m in wi.movements]
        for entry in pending:
            ts = as_utc(entry.timestamp)
            if any(
                f == entry.from_status and t == entry.to_status
                and abs(at - ts) <= HISTORY_DEDUP_TOLERANCE
                for f, t, at in existing
            ):
                continue
            transition = classify(wi.pipeline, entry.from_status, entry.to_status)
            _make_movement(wi, entry.from_status, entry.to_status, transition,
                           actor=entry.actor, moved_at=ts)
            existing.append((entry.from_status, entry.to_status, ts))
            created += 1
            rollbacks += transition is Transition.ROLLBACK
    db.session.commit()

    if rollbacks and wi.project_id is not None:
        aggregation_service.recalculate_project(wi.project_id)
    if created:
        logger.info("Backfilled %d movements for %s:%s", created, wi.source, wi.external_key,
                    extra={"external_key": wi.external_key})
    return created


def update_estimate(work_item_id: int, complexity, risk) -> dict:
    """Set complexity/risk by hand. Recomputes points; never creates a Movement.

    Raises:
        NotFoundError: unknown item.
        ValidationError: complexity/risk outside 1..4.
    """
    wi = db.session.get(WorkItem, work_item_id)
    if wi is None:
        raise NotFoundError(resource="WorkItem", resource_id=work_item_id)

    points = calculate_points(complexity, risk, wi.item_type)
    previous = wi.delivery_points
    wi.complexity, wi.risk, wi.delivery_points = complexity, risk, points
    db.session.commit()

    if wi.project_id is not None and points != previous:
        aggregation_service.recalculate_project(wi.project_id)
    logger.info("Estimate for %s set to C%d/R%d (%d -> %d points)", wi.external_key,
                complexity, risk, previous, points, extra={"external_key": wi.external_key})
    return wi.to_dict()


def justify_movement(movement_id: int, text: str, user: str) -> dict:
    """Attach (or replace) a reviewer justification on a Movement.

    When a different reviewer re-justifies, both texts are kept:
        "[PREVIOUS BY alice]: old\\n[UPDATED BY bob]: new"
    """
    if not text or not text.strip():
        raise ValidationError("justification text is required")
    if not user or not user.strip():
        raise ValidationError("justifying user is required")

    movement = db.session.get(Movement, movement_id)
    if movement is None:
        raise NotFoundError(resource="Movement", resource_id=movement_id)

    text = text.strip()
    if movement.justification and movement.justified_by and movement.justified_by != user:
        movement.justification = (
            f"[PREVIOUS BY {movement.justified_by}]: {movement.justification}\n"
            f"[UPDATED BY {user}]: {text}"
        )
    else:
        movement.justification = text
    movement.justified_by = user
    movement.justified_at = datetime.now(timezone.utc)
    db.session.commit()
    return movement.to_dict()
