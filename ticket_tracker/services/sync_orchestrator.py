"""
Ticket Tracker
Sync Orchestrator.

Drives one sync run per source type:

    authenticate → list_projects → upsert_project + list_work_items
        → batches of SYNC_BATCH_SIZE → reconcile(recalculate=False)
        → one aggregation recalculation per project
        → optional history backfill → escalation sync (helpdesk sources)

State machine per job (owned by the JobStatusRegistry):

    queued → running → completed | failed

At most one run per source type is allowed. The guard is a per-source
``threading.Lock`` acquired without blocking; a second request while one is
running is rejected with SyncBusyError, never queued. Different source
types sync in parallel.

Progress: 5% on start, 10–90% proportional to batches processed,
95% while finalising, 100% on completion.

Nothing raised inside a run escapes the worker: every exception becomes a
failed job with a readable message, and the guard is always released.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Callable, Mapping

from flask import has_app_context

from ticket_tracker.core.exceptions import SourceUnreachableError, SyncBusyError, ValidationError
from ticket_tracker.integrations.base import BaseSourceAdapter
from ticket_tracker.integrations.factory import SOURCE_TYPES, build_source_adapter
from ticket_tracker.models import db
from ticket_tracker.models.work_item import WorkItem
from ticket_tracker.services import aggregation_service, escalation_service
from ticket_tracker.services.job_registry import JobStatusRegistry
from ticket_tracker.services.reconciliation_service import (
    ReconciliationReport,
    backfill_history,
    reconcile,
    upsert_project,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, Mapping], BaseSourceAdapter]

HELPDESK_SOURCES = frozenset({"freshdesk", "freshservice"})

_PROGRESS_START = 5
_PROGRESS_BATCH_FLOOR = 10
_PROGRESS_BATCH_SPAN = 80
_PROGRESS_FINALISING = 95


class SyncOrchestrator:
    """Runs source syncs with a single-flight guard per source type.

    Args:
        app: Flask application; background runs push its app context.
        registry: Where job state lives and transitions are published.
        adapter_factory: ``(source_type, config) -> BaseSourceAdapter``.
            Defaults to ``build_source_adapter``; tests inject their own.
    """

    def __init__(
        self,
        app=None,
        registry: JobStatusRegistry | None = None,
        adapter_factory: AdapterFactory = build_source_adapter,
    ):
        self.app = app
        self.registry = registry or JobStatusRegistry()
        self.adapter_factory = adapter_factory
        self._guards = {source: threading.Lock() for source in SOURCE_TYPES}
        self._state_lock = threading.Lock()
        self._active: dict[str, str] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}

    # ── Queries ─────────────────────────────────────────────────────────

    def enabled_sources(self) -> list[str]:
        config = self.app.config
        return [s for s in SOURCE_TYPES if config.get(f"{s.upper()}_ENABLED")]

    def is_running(self, source_type: str) -> bool:
        guard = self._guards.get(source_type)
        return bool(guard and guard.locked())

    def active_job(self, source_type: str) -> str | None:
        with self._state_lock:
            return self._active.get(source_type)

    # ── Commands ────────────────────────────────────────────────────────

    def start_sync(self, source_type: str, *, background: bool = True) -> str:
        """Start a sync run and return its job id.

        Raises:
            ValidationError: unknown or disabled source type.
            SyncBusyError: a run for this source type is in progress.
        """
        if source_type not in SOURCE_TYPES:
            raise ValidationError(
                f"Unknown source type '{source_type}'. Must be one of: {', '.join(SOURCE_TYPES)}",
                details={"source_type": source_type},
            )
        if source_type not in self.enabled_sources():
            raise ValidationError(
                f"Source '{source_type}' is disabled",
                details={"source_type": source_type, "reason": "disabled"},
            )

        guard = self._guards[source_type]
        if not guard.acquire(blocking=False):
            raise SyncBusyError(source_type, self.active_job(source_type))

        try:
            status = self.registry.create(source_type)
            cancel = threading.Event()
            with self._state_lock:
                self._active[source_type] = status.job_id
                self._cancel[status.job_id] = cancel
        except Exception:
            guard.release()
            raise

        job_id = status.job_id
        logger.info("Sync %s queued for %s", job_id, source_type,
                    extra={"job_id": job_id, "source_type": source_type})

        if background:
            thread = threading.Thread(
                target=self._run_guarded,
                args=(source_type, job_id, cancel),
                name=f"sync-{source_type}",
                daemon=True,
            )
            with self._state_lock:
                self._threads[job_id] = thread
            thread.start()
        else:
            self._run_guarded(source_type, job_id, cancel)
        return job_id

    def request_stop(self, job_id: str) -> bool:
        """Ask a running job to stop at its next batch boundary."""
        with self._state_lock:
            event = self._cancel.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("Stop requested for sync %s", job_id, extra={"job_id": job_id})
        return True

    def join(self, job_id: str, timeout: float | None = None) -> bool:
        """Wait for a background job; True when it has finished."""
        with self._state_lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ── Worker ──────────────────────────────────────────────────────────

    def _run_guarded(self, source_type: str, job_id: str, cancel: threading.Event) -> None:
        extra = {"job_id": job_id, "source_type": source_type}
        try:
            if has_app_context():
                self._run(source_type, job_id, cancel)
            else:
                with self.app.app_context():
                    self._run(source_type, job_id, cancel)
        except Exception as exc:
            logger.exception("Sync %s crashed", job_id, extra=extra)
            self._fail(job_id, f"{source_type} sync failed: {exc}")
        finally:
            with self._state_lock:
                self._active.pop(source_type, None)
                self._cancel.pop(job_id, None)
            self._guards[source_type].release()
            # Dropped last so join() never returns while the guard is held
            with self._state_lock:
                self._threads.pop(job_id, None)

    def _fail(self, job_id: str, message: str, summary: dict | None = None) -> None:
        try:
            self.registry.fail(job_id, message, summary)
        except KeyError:
            logger.error("Sync %s vanished from the registry", job_id, extra={"job_id": job_id})

    def _run(self, source_type: str, job_id: str, cancel: threading.Event) -> None:
        extra = {"job_id": job_id, "source_type": source_type}
        config = self.app.config
        self.registry.mark_running(job_id, f"{source_type} sync started")
        self.registry.update_progress(job_id, _PROGRESS_START, "authenticating")

        adapter = self.adapter_factory(source_type, config)
        try:
            # ── Fetch ────────────────────────────────────────────────────
            try:
                if not adapter.authenticate():
                    self._fail(job_id, f"{source_type} rejected the configured credentials")
                    logger.warning("Sync %s: authentication failed", job_id, extra=extra)
                    return
                plan = []
                for external in adapter.list_projects():
                    project = upsert_project(source_type, external)
                    plan.append((project.id, adapter.list_work_items(external.key)))
            except SourceUnreachableError as exc:
                db.session.rollback()
                self._fail(job_id, str(exc))
                logger.warning("Sync %s: %s", job_id, exc, extra=extra)
                return

            # ── Reconcile ────────────────────────────────────────────────
            batch_size = max(1, int(config.get("SYNC_BATCH_SIZE", 50)))
            total_batches = sum(math.ceil(len(items) / batch_size) for _, items in plan) or 1
            report = ReconciliationReport()
            project_cache: dict = {}
            done = 0
            recalculated: set[int] = set()

            self.registry.update_progress(
                job_id, _PROGRESS_BATCH_FLOOR,
                f"{len(plan)} projects, {total_batches} batches",
            )
            for project_id, items in plan:
                for start in range(0, len(items), batch_size):
                    if cancel.is_set():
                        self._fail(job_id, "cancelled", report.to_dict())
                        logger.info("Sync %s cancelled after %d batches", job_id, done, extra=extra)
                        return
                    batch = items[start:start + batch_size]
                    report.merge(reconcile(batch, recalculate=False, project_cache=project_cache))
                    done += 1
                    progress = _PROGRESS_BATCH_FLOOR + int(_PROGRESS_BATCH_SPAN * done / total_batches)
                    self.registry.update_progress(job_id, progress, f"{done}/{total_batches} batches")
                    logger.debug("Sync %s batch %d/%d", job_id, done, total_batches,
                                 extra={**extra, "progress": progress})

                for rejected in adapter.pop_rejected():
                    report.add_failure(rejected.external_key, rejected)
                aggregation_service.recalculate_project(project_id)
                recalculated.add(project_id)

            # ── Finalise ─────────────────────────────────────────────────
            self.registry.update_progress(job_id, _PROGRESS_FINALISING, "finalising")
            for rejected in adapter.pop_rejected():
                report.add_failure(rejected.external_key, rejected)
            # Items can point at projects the source did not list
            for project_id in sorted(report.projects_touched - recalculated):
                aggregation_service.recalculate_project(project_id)

            summary = report.to_dict()
            summary["projects"] = len(plan)
            summary["batches"] = done
            if config.get("SYNC_BACKFILL_HISTORY"):
                summary["history_movements"] = self._backfill(adapter, report, extra)
            if source_type in HELPDESK_SOURCES:
                summary["escalations"] = escalation_service.sync_escalations()

            message = (
                f"{source_type} sync completed: {report.created} created, "
                f"{report.updated} updated, {report.failed} failed"
            )
            if report.failed:
                message += f" (completed with {report.failed} warnings)"
            self.registry.complete(job_id, message, summary)
            logger.info(message, extra=extra)
        finally:
            adapter.close()

    def _backfill(self, adapter: BaseSourceAdapter, report: ReconciliationReport, extra: dict) -> int:
        """Import source history for items whose status changed in this run."""
        created = 0
        observed = set(report.status_moves)
        for work_item_id in dict.fromkeys(report.status_changed):
            wi = db.session.get(WorkItem, work_item_id)
            if wi is None:
                continue
            try:
                created += backfill_history(
                    work_item_id, adapter.list_history(wi.external_key), observed,
                )
            except SourceUnreachableError as exc:
                logger.warning("History backfill stopped: %s", exc, extra=extra)
                break
        return created
