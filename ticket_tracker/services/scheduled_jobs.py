"""
Ticket Tracker
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - sync_jira / sync_freshdesk / sync_freshservice: one inline source sync
      each; skipped when the source is disabled or a sync is already running
    - escalation_sync: derives Escalation rows from tier Movements
    - aggregation_refresh: recalculates every project's DeliveryAggregation
"""

from __future__ import annotations

import logging
from typing import Any

from ticket_tracker.core.exceptions import SyncBusyError
from ticket_tracker.services import aggregation_service, escalation_service
from ticket_tracker.services.job_registry import FAILED
from ticket_tracker.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


def _run_source_sync(app, source_type: str) -> dict[str, Any]:
    orchestrator = app.extensions["sync_orchestrator"]
    if source_type not in orchestrator.enabled_sources():
        return {"status": "skipped", "reason": f"{source_type} disabled"}
    try:
        job_id = orchestrator.start_sync(source_type, background=False)
    except SyncBusyError as exc:
        logger.info("Scheduled %s sync skipped: %s", source_type, exc,
                    extra={"source_type": source_type})
        return {"status": "skipped", "reason": "busy", "job_id": exc.job_id}

    status = orchestrator.registry.get(job_id)
    if status.state == FAILED:
        raise RuntimeError(status.message)
    return {"job_id": job_id, "state": status.state, "message": status.message,
            "summary": status.summary}


# ═══════════════════════════════════════════════════════════════════════════
#  Source syncs
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sync_jira")
def sync_jira(app) -> dict[str, Any]:
    """Sync Jira projects and issues."""
    return _run_source_sync(app, "jira")


@register_job("sync_freshdesk")
def sync_freshdesk(app) -> dict[str, Any]:
    """Sync Freshdesk tickets."""
    return _run_source_sync(app, "freshdesk")


@register_job("sync_freshservice")
def sync_freshservice(app) -> dict[str, Any]:
    """Sync Freshservice incidents and service requests."""
    return _run_source_sync(app, "freshservice")


# ═══════════════════════════════════════════════════════════════════════════
#  Housekeeping
# ═══════════════════════════════════════════════════════════════════════════

@register_job("escalation_sync")
def run_escalation_sync(app) -> dict[str, Any]:
    """Derive escalations from support tier movements."""
    return escalation_service.sync_escalations()


@register_job("aggregation_refresh")
def refresh_aggregations(app) -> dict[str, Any]:
    """Recalculate every project's delivery aggregation."""
    result = aggregation_service.recalculate_all()
    if result["failed"]:
        logger.warning("Aggregation refresh failed for projects %s", result["failed"])
    return result
