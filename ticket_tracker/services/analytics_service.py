"""
Ticket Tracker
Analytics Engine: read-only projections over the canonical store.

Views:
    team_performance      per-team items, points, completion rate, rollbacks
    rollback_analysis     rollback movements in a time window
    sla_compliance        breached / at-risk counts and compliance rate
    trend_series          contiguous day/week buckets, zero-filled
    breach_aging          overdue open items bucketed by how late they are
    team_breach_matrix    team × priority breached counts
    compliance_trend      daily compliance of items created that day
    stability_vs_velocity per-project delivered points vs rollback rate
    escalation_summary    escalations by tier pair
    governance_cockpit    all governance views in one payload

Nothing here writes to the database or calls an external system.

Usage:
    from ticket_tracker.services import analytics_service
    report = analytics_service.sla_compliance(lookahead_minutes=30)
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import case, func, select

from ticket_tracker.core.exceptions import NotFoundError, ValidationError
from ticket_tracker.models import db
from ticket_tracker.models.project import Project, Team
from ticket_tracker.models.work_item import ITEM_TYPES, PRIORITIES, Escalation, Movement, WorkItem
from ticket_tracker.services.aggregation_service import completed_clause
from ticket_tracker.services.movement_classifier import is_terminal
from ticket_tracker.services.sla_policy import as_utc


BUCKETS = ("day", "week")
_DEFAULT_LOOKAHEAD_MINUTES = 60
_MAX_TREND_BUCKETS = 366


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def _safe_pct(numerator: int | float, denominator: int | float) -> float:
    """Zero-safe percentage."""
    return round((numerator / denominator) * 100, 1) if denominator else 0.0


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now else datetime.now(timezone.utc)


def _lookahead(minutes: int | None) -> timedelta:
    if minutes is None:
        minutes = (
            current_app.config.get("SLA_AT_RISK_LOOKAHEAD_MINUTES", _DEFAULT_LOOKAHEAD_MINUTES)
            if has_app_context() else _DEFAULT_LOOKAHEAD_MINUTES
        )
    if minutes < 0:
        raise ValidationError("lookahead_minutes must not be negative")
    return timedelta(minutes=minutes)


def _check_item_type(item_type: str | None) -> None:
    if item_type is not None and item_type not in ITEM_TYPES:
        raise ValidationError(
            f"Unknown item type '{item_type}'. Must be one of: {', '.join(ITEM_TYPES)}"
        )


def _is_breached(wi: WorkItem, now: datetime) -> bool:
    """Breached: due date passed while the item is still open."""
    return (
        wi.sla_due_date is not None
        and not is_terminal(wi.item_type, wi.status)
        and now > as_utc(wi.sla_due_date)
    )


def _is_at_risk(wi: WorkItem, now: datetime, lookahead: timedelta) -> bool:
    if wi.sla_due_date is None or is_terminal(wi.item_type, wi.status):
        return False
    due = as_utc(wi.sla_due_date)
    return now <= due <= now + lookahead


def _items_with_due_date(item_type: str | None = None) -> list[WorkItem]:
    stmt = select(WorkItem).where(WorkItem.sla_due_date.is_not(None))
    if item_type:
        stmt = stmt.where(WorkItem.item_type == item_type)
    return list(db.session.execute(stmt).scalars())


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date '{value}'; expected YYYY-MM-DD") from None


# ═════════════════════════════════════════════════════════════════════════════
# Team performance
# ═════════════════════════════════════════════════════════════════════════════

def team_performance(team_id: int | None = None) -> list[dict]:
    """Per-team totals; completion rate is 0 for a team without items."""
    stmt = select(Team).order_by(Team.name)
    if team_id is not None:
        if db.session.get(Team, team_id) is None:
            raise NotFoundError(resource="Team", resource_id=team_id)
        stmt = stmt.where(Team.id == team_id)
    teams = db.session.execute(stmt).scalars().all()

    completed = completed_clause()
    item_rows = db.session.execute(
        select(
            Project.team_id,
            func.count(WorkItem.id),
            func.coalesce(func.sum(WorkItem.delivery_points), 0),
            func.coalesce(func.sum(case((completed, 1), else_=0)), 0),
            func.coalesce(func.sum(case((completed, WorkItem.delivery_points), else_=0)), 0),
        )
        .join(Project, WorkItem.project_id == Project.id)
        .where(Project.team_id.is_not(None))
        .group_by(Project.team_id)
    ).all()
    items_by_team = {row[0]: tuple(int(v or 0) for v in row[1:]) for row in item_rows}

    rollback_rows = db.session.execute(
        select(Project.team_id, func.count(Movement.id))
        .join(WorkItem, Movement.work_item_id == WorkItem.id)
        .join(Project, WorkItem.project_id == Project.id)
        .where(Project.team_id.is_not(None), Movement.is_rollback.is_(True))
        .group_by(Project.team_id)
    ).all()
    rollbacks_by_team = dict(rollback_rows)

    result = []
    for team in teams:
        total_items, total_points, completed_items, completed_points = items_by_team.get(
            team.id, (0, 0, 0, 0)
        )
        result.append({
            "team_id": team.id,
            "team": team.name,
            "project_count": len(team.projects),
            "total_items": total_items,
            "completed_items": completed_items,
            "total_delivery_points": total_points,
            "completed_delivery_points": completed_points,
            "completion_rate": _safe_pct(completed_items, total_items),
            "rollback_count": int(rollbacks_by_team.get(team.id, 0)),
        })
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Rollbacks
# ═════════════════════════════════════════════════════════════════════════════

def rollback_analysis(start: datetime | None = None, end: datetime | None = None,
                      top: int = 5) -> dict:
    """Rollback movements with ``start <= moved_at <= end``.

    ``avg_points_lost`` uses the item's current delivery points.
    """
    stmt = (
        select(Movement, WorkItem)
        .join(WorkItem, Movement.work_item_id == WorkItem.id)
        .where(Movement.is_rollback.is_(True))
        .order_by(Movement.moved_at)
    )
    rows = db.session.execute(stmt).all()
    lo = as_utc(start) if start else None
    hi = as_utc(end) if end else None
    if lo and hi and lo > hi:
        raise ValidationError("start must not be after end")
    rows = [
        (m, wi) for m, wi in rows
        if (lo is None or as_utc(m.moved_at) >= lo) and (hi is None or as_utc(m.moved_at) <= hi)
    ]

    per_project = Counter(wi.project_id for _, wi in rows if wi.project_id is not None)
    names = {}
    if per_project:
        names = dict(db.session.execute(
            select(Project.id, Project.name).where(Project.id.in_(list(per_project)))
        ).all())
    by_stage = Counter(f"{m.from_status} → {m.to_status}" for m, _ in rows)
    # Points carried when the rollback was recorded
    points = [
        m.points_at_move if m.points_at_move is not None else wi.delivery_points
        for m, wi in rows
    ]

    return {
        "rollback_count": len(rows),
        "avg_points_lost": round(sum(points) / len(points), 1) if points else 0.0,
        "total_points_affected": sum(points),
        "affected_projects": len(per_project),
        "affected_items": len({wi.id for _, wi in rows}),
        "top_projects": [
            {"project_id": pid, "project": names.get(pid), "rollbacks": count}
            for pid, count in per_project.most_common(top)
        ],
        "by_transition": dict(by_stage.most_common()),
        "window": {
            "start": lo.isoformat() if lo else None,
            "end": hi.isoformat() if hi else None,
        },
    }


# ═════════════════════════════════════════════════════════════════════════════
# SLA
# ═════════════════════════════════════════════════════════════════════════════

def _compliance(total: int, breached: int) -> float:
    if total == 0:
        return 100.0
    return max(0.0, min(100.0, round((total - breached) / total * 100, 1)))


def sla_compliance(now: datetime | None = None, lookahead_minutes: int | None = None,
                   item_type: str | None = None) -> dict:
    """Breached / at-risk counts and compliance rate over items with a due date.

    compliance_rate = (total − breached) / total × 100, exactly 100 when
    there are no items.
    """
    _check_item_type(item_type)
    now = _now(now)
    lookahead = _lookahead(lookahead_minutes)

    per_priority = {p: {"total": 0, "breached": 0, "at_risk": 0} for p in PRIORITIES}
    total = breached = at_risk = 0
    for wi in _items_with_due_date(item_type):
        bucket = per_priority.setdefault(wi.priority, {"total": 0, "breached": 0, "at_risk": 0})
        total += 1
        bucket["total"] += 1
        if _is_breached(wi, now):
            breached += 1
            bucket["breached"] += 1
        elif _is_at_risk(wi, now, lookahead):
            at_risk += 1
            bucket["at_risk"] += 1

    for bucket in per_priority.values():
        bucket["compliance_rate"] = _compliance(bucket["total"], bucket["breached"])

    return {
        "total": total,
        "breached": breached,
        "at_risk": at_risk,
        "compliant": total - breached,
        "compliance_rate": _compliance(total, breached),
        "lookahead_minutes": int(lookahead.total_seconds() // 60),
        "by_priority": per_priority,
        "as_of": now.isoformat(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Trends
# ═════════════════════════════════════════════════════════════════════════════

def _bucket_start(day: date, bucket: str) -> date:
    return day - timedelta(days=day.weekday()) if bucket == "week" else day


def _bucket_label(day: date, bucket: str) -> str:
    if bucket == "week":
        year, week, _ = day.isocalendar()
        return f"{year}-W{week:02d}"
    return day.isoformat()


def trend_series(start, end, bucket: str = "day", item_type: str | None = None) -> list[dict]:
    """Contiguous, ascending buckets between ``start`` and ``end`` (inclusive).

    Buckets without activity are emitted with zero values.
    """
    if bucket not in BUCKETS:
        raise ValidationError(f"bucket must be one of: {', '.join(BUCKETS)}")
    _check_item_type(item_type)
    first, last = _as_date(start), _as_date(end)
    if first > last:
        raise ValidationError("start must not be after end")

    step = timedelta(days=7 if bucket == "week" else 1)
    keys = []
    cursor = _bucket_start(first, bucket)
    while cursor <= last:
        keys.append(cursor)
        cursor += step
        if len(keys) > _MAX_TREND_BUCKETS:
            raise ValidationError(f"range too large (max {_MAX_TREND_BUCKETS} buckets)")

    series = {
        k: {"bucket": _bucket_label(k, bucket), "start": k.isoformat(),
            "created": 0, "completed": 0, "completed_points": 0, "rollbacks": 0}
        for k in keys
    }
    lo = datetime.combine(keys[0], time.min, tzinfo=timezone.utc)
    hi = datetime.combine(last + timedelta(days=1), time.min, tzinfo=timezone.utc)

    def _slot(ts):
        if ts is None:
            return None
        ts = as_utc(ts)
        if not lo <= ts < hi:
            return None
        return series.get(_bucket_start(ts.date(), bucket))

    item_stmt = select(WorkItem)
    if item_type:
        item_stmt = item_stmt.where(WorkItem.item_type == item_type)
    for wi in db.session.execute(item_stmt).scalars():
        slot = _slot(wi.created_at)
        if slot is not None:
            slot["created"] += 1
        slot = _slot(wi.completed_at)
        if slot is not None and is_terminal(wi.item_type, wi.status):
            slot["completed"] += 1
            slot["completed_points"] += wi.delivery_points

    mv_stmt = (
        select(Movement.moved_at)
        .join(WorkItem, Movement.work_item_id == WorkItem.id)
        .where(Movement.is_rollback.is_(True))
    )
    if item_type:
        mv_stmt = mv_stmt.where(WorkItem.item_type == item_type)
    for moved_at in db.session.execute(mv_stmt).scalars():
        slot = _slot(moved_at)
        if slot is not None:
            slot["rollbacks"] += 1

    return [series[k] for k in keys]


# ═════════════════════════════════════════════════════════════════════════════
# Governance views
# ═════════════════════════════════════════════════════════════════════════════

AGING_BUCKETS = (("0-4h", 4), ("4-24h", 24), ("24h+", None))


def breach_aging(now: datetime | None = None, limit: int = 20) -> dict:
    """Overdue open items grouped by hours past due."""
    now = _now(now)
    buckets = {label: 0 for label, _ in AGING_BUCKETS}
    overdue = []
    for wi in _items_with_due_date():
        if not _is_breached(wi, now):
            continue
        hours = (now - as_utc(wi.sla_due_date)).total_seconds() / 3600
        for label, ceiling in AGING_BUCKETS:
            if ceiling is None or hours < ceiling:
                buckets[label] += 1
                break
        overdue.append((hours, wi))

    overdue.sort(key=lambda pair: pair[0], reverse=True)
    return {
        "total_breached": len(overdue),
        "buckets": buckets,
        "oldest": [
            {"id": wi.id, "external_key": wi.external_key, "source": wi.source,
             "priority": wi.priority, "status": wi.status,
             "hours_overdue": round(hours, 1)}
            for hours, wi in overdue[:limit]
        ],
    }


def team_breach_matrix(now: datetime | None = None) -> dict:
    """Breached counts per team and priority. Items without a team go to "Unassigned"."""
    now = _now(now)
    rows = db.session.execute(
        select(WorkItem, Team.name)
        .outerjoin(Project, WorkItem.project_id == Project.id)
        .outerjoin(Team, Project.team_id == Team.id)
        .where(WorkItem.sla_due_date.is_not(None))
    ).all()

    matrix: dict[str, Counter] = defaultdict(Counter)
    for wi, team_name in rows:
        if _is_breached(wi, now):
            matrix[team_name or "Unassigned"][wi.priority] += 1

    return {
        "priorities": list(PRIORITIES),
        "rows": [
            {"team": team, "counts": {p: counts.get(p, 0) for p in PRIORITIES},
             "total": sum(counts.values())}
            for team, counts in sorted(matrix.items())
        ],
    }


def compliance_trend(days: int = 14, now: datetime | None = None) -> list[dict]:
    """Daily compliance rate of the items created on each of the last ``days`` days."""
    if days < 1 or days > _MAX_TREND_BUCKETS:
        raise ValidationError(f"days must be between 1 and {_MAX_TREND_BUCKETS}")
    now = _now(now)
    first = now.date() - timedelta(days=days - 1)
    per_day = {first + timedelta(days=i): [0, 0] for i in range(days)}

    for wi in _items_with_due_date():
        if wi.created_at is None:
            continue
        counts = per_day.get(as_utc(wi.created_at).date())
        if counts is None:
            continue
        counts[0] += 1
        if _is_breached(wi, now):
            counts[1] += 1

    return [
        {"date": day.isoformat(), "total": total, "breached": breached,
         "compliance_rate": _compliance(total, breached)}
        for day, (total, breached) in sorted(per_day.items())
    ]


def stability_vs_velocity() -> list[dict]:
    """Per project: delivered points (velocity) against the share of moves that rolled back."""
    completed = completed_clause()
    velocity = dict(db.session.execute(
        select(WorkItem.project_id,
               func.coalesce(func.sum(case((completed, WorkItem.delivery_points), else_=0)), 0))
        .where(WorkItem.project_id.is_not(None))
        .group_by(WorkItem.project_id)
    ).all())
    moves = {
        pid: (int(total or 0), int(rollbacks or 0))
        for pid, total, rollbacks in db.session.execute(
            select(WorkItem.project_id, func.count(Movement.id),
                   func.coalesce(func.sum(case((Movement.is_rollback.is_(True), 1), else_=0)), 0))
            .join(WorkItem, Movement.work_item_id == WorkItem.id)
            .where(WorkItem.project_id.is_not(None))
            .group_by(WorkItem.project_id)
        ).all()
    }

    result = []
    for project in db.session.execute(select(Project).order_by(Project.name)).scalars():
        total_moves, rollbacks = moves.get(project.id, (0, 0))
        result.append({
            "project_id": project.id,
            "project": project.name,
            "velocity_points": int(velocity.get(project.id, 0) or 0),
            "movements": total_moves,
            "rollbacks": rollbacks,
            "rollback_rate": _safe_pct(rollbacks, total_moves),
        })
    return result


def escalation_summary() -> dict:
    rows = db.session.execute(
        select(Escalation.from_level, Escalation.to_level, func.count(Escalation.id),
               func.coalesce(func.sum(case((Escalation.sla_breached.is_(True), 1), else_=0)), 0))
        .group_by(Escalation.from_level, Escalation.to_level)
        .order_by(Escalation.from_level, Escalation.to_level)
    ).all()
    pairs = [
        {"from_level": f, "to_level": t, "count": int(count), "sla_breached": int(breached or 0)}
        for f, t, count, breached in rows
    ]
    return {
        "total": sum(p["count"] for p in pairs),
        "sla_breached": sum(p["sla_breached"] for p in pairs),
        "by_level": pairs,
    }


def governance_cockpit(now: datetime | None = None) -> dict:
    """Single payload for the governance dashboard."""
    now = _now(now)
    return {
        "sla": sla_compliance(now=now),
        "breach_aging": breach_aging(now=now),
        "team_breach_matrix": team_breach_matrix(now=now),
        "compliance_trend": compliance_trend(days=7, now=now),
        "rollbacks": rollback_analysis(end=now),
        "stability_vs_velocity": stability_vs_velocity(),
        "escalations": escalation_summary(),
        "generated_at": now.isoformat(),
    }
