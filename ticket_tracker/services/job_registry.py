"""
Ticket Tracker
Job Status Registry.

Process-lifetime map of sync job id → SyncJobStatus. One registry is
constructed in ``create_app`` and injected into the SyncOrchestrator and
the sync blueprint through ``app.extensions["job_registry"]``.

Writes come only from the orchestrator that owns a job; request threads
only read. Every read returns a copy, so callers can never mutate shared
state by accident.

Transitions are published to subscribers (``subscribe``) so observers
never have to infer job state from the store.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
IDLE = "idle"

FINISHED_STATES = frozenset({COMPLETED, FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncJobStatus:
    job_id: str
    source_type: str | None
    state: str = QUEUED
    progress: int = 0
    message: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    summary: dict = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "source_type": self.source_type,
            "state": self.state,
            "progress": self.progress,
            "message": self.message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "summary": dict(self.summary),
        }


Listener = Callable[[SyncJobStatus], None]


class JobStatusRegistry:
    """Lock-protected registry of sync jobs."""

    def __init__(self, max_jobs: int = 200):
        self._lock = threading.Lock()
        self._jobs: dict[str, SyncJobStatus] = {}
        self._listeners: list[Listener] = []
        self._max_jobs = max_jobs

    # ── Writes (orchestrator only) ──────────────────────────────────────

    def create(self, source_type: str) -> SyncJobStatus:
        status = SyncJobStatus(
            job_id=uuid.uuid4().hex,
            source_type=source_type,
            message=f"{source_type} sync queued",
        )
        with self._lock:
            self._jobs[status.job_id] = status
            snapshot = replace(status, summary=dict(status.summary))
            overflow = len(self._jobs) > self._max_jobs
        self._publish(snapshot)
        if overflow:
            self.prune(self._max_jobs)
        return snapshot

    def mark_running(self, job_id: str, message: str = "") -> SyncJobStatus:
        return self._transition(
            job_id, state=RUNNING, message=message or "running", started_at=_utcnow(),
        )

    def update_progress(self, job_id: str, progress: int, message: str | None = None) -> SyncJobStatus:
        changes = {"progress": max(0, min(100, int(progress)))}
        if message is not None:
            changes["message"] = message
        return self._transition(job_id, **changes)

    def complete(self, job_id: str, message: str, summary: dict | None = None) -> SyncJobStatus:
        return self._transition(
            job_id, state=COMPLETED, progress=100, message=message,
            summary=dict(summary or {}), finished_at=_utcnow(),
        )

    def fail(self, job_id: str, message: str, summary: dict | None = None) -> SyncJobStatus:
        changes = {"state": FAILED, "message": message, "finished_at": _utcnow()}
        if summary is not None:
            changes["summary"] = dict(summary)
        return self._transition(job_id, **changes)

    def _transition(self, job_id: str, **changes) -> SyncJobStatus:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise KeyError(job_id)
            if current.is_finished:
                logger.warning("Ignoring update for finished job %s", job_id,
                               extra={"job_id": job_id})
                return replace(current, summary=dict(current.summary))
            updated = replace(current, **changes)
            self._jobs[job_id] = updated
            snapshot = replace(updated, summary=dict(updated.summary))
        self._publish(snapshot)
        return snapshot

    # ── Reads ───────────────────────────────────────────────────────────

    def get(self, job_id: str) -> SyncJobStatus:
        """Status of ``job_id``; unknown ids report a synthetic idle status."""
        with self._lock:
            status = self._jobs.get(job_id)
            if status is None:
                return SyncJobStatus(job_id=job_id, source_type=None, state=IDLE,
                                     message="no such job")
            return replace(status, summary=dict(status.summary))

    def current(self, source_type: str | None = None) -> list[SyncJobStatus]:
        """Latest job per source type (or only for ``source_type``)."""
        latest: dict[str, SyncJobStatus] = {}
        with self._lock:
            for status in self._jobs.values():
                if source_type and status.source_type != source_type:
                    continue
                latest[status.source_type] = status
            return [replace(s, summary=dict(s.summary)) for s in latest.values()]

    def list_jobs(self, limit: int = 50) -> list[SyncJobStatus]:
        """Most recent jobs first."""
        with self._lock:
            jobs = list(self._jobs.values())[-limit:] if limit else list(self._jobs.values())
            return [replace(s, summary=dict(s.summary)) for s in reversed(jobs)]

    # ── Housekeeping ────────────────────────────────────────────────────

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register a transition listener. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def prune(self, keep: int = 50) -> int:
        """Drop the oldest finished jobs so at most ``keep`` remain. Running jobs stay."""
        with self._lock:
            finished = [jid for jid, s in self._jobs.items() if s.is_finished]
            excess = len(self._jobs) - keep
            removed = 0
            for job_id in finished:
                if removed >= excess:
                    break
                del self._jobs[job_id]
                removed += 1
        return removed

    def _publish(self, status: SyncJobStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(replace(status, summary=dict(status.summary)))
            except Exception:
                logger.exception("Job status listener failed for %s", status.job_id,
                                 extra={"job_id": status.job_id})
