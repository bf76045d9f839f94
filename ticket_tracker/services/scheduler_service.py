"""
Ticket Tracker
Periodic job runner.

Jobs are plain ``fn(app)`` callables registered with ``@register_job``.
One ScheduledJob row per job holds its interval, pause flag and last
run. A single daemon thread wakes every TICK_SECONDS and runs whatever
is due; the thread only starts when SCHEDULER_ENABLED is set, while the
API can trigger any job by hand regardless.

A job signals "nothing to do" by returning ``{"status": "skipped", ...}``;
any exception it raises is recorded as a failed run and never reaches
the timer thread.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

from ticket_tracker.models import db
from ticket_tracker.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

TICK_SECONDS = 30

_job_registry: dict[str, Callable] = {}

# Fixed intervals; source syncs follow SYNC_INTERVAL_SECONDS instead
_FIXED_INTERVALS = {
    "escalation_sync": 900,
    "aggregation_refresh": 3600,
}
_FALLBACK_INTERVAL = 86400


def register_job(name: str):
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def default_interval(job_name: str, app_config) -> int:
    """Seconds between runs for a newly registered job."""
    if job_name.startswith("sync_"):
        return int(app_config.get("SYNC_INTERVAL_SECONDS", 3600))
    return _FIXED_INTERVALS.get(job_name, _FALLBACK_INTERVAL)


def _summary_line(fn: Callable, name: str) -> str:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0] if doc else f"Scheduled job {name}"


def _job_record(name: str) -> ScheduledJob | None:
    return ScheduledJob.query.filter_by(job_name=name).first()


class SchedulerService:
    """Process-wide scheduler bound to one Flask app via ``init_app``."""

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("Scheduler bound with jobs: %s", ", ".join(sorted(_job_registry)))

    # ── Persistence ──────────────────────────────────────────────────────

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ScheduledJob row for every registered job that lacks one."""
        if cls._app is None:
            return []

        with cls._app.app_context():
            missing = [name for name in _job_registry if _job_record(name) is None]
            created = [
                ScheduledJob(
                    job_name=name,
                    description=_summary_line(_job_registry[name], name),
                    schedule_type="interval",
                    schedule_config={"seconds": default_interval(name, cls._app.config)},
                    status="active",
                    is_enabled=True,
                )
                for name in missing
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered scheduled jobs: %s", ", ".join(missing))
        return created

    @classmethod
    def list_jobs(cls) -> list[dict]:
        out = []
        for name in _job_registry:
            record = _job_record(name)
            out.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return out

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        record = _job_record(job_name)
        if record is None:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Scheduled job %s %s", job_name, record.status)
        return record.to_dict()

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job now and record the outcome on its ScheduledJob row.

        Returns ``{"job_name", "status", "duration_ms", "result", "error"}``
        where status is success, skipped or failed; an unknown job or an
        unbound scheduler yields ``{"status": "error", ...}`` instead.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"status": "error", "error": "Scheduler not initialized"}

        outcome = {"job_name": job_name, "status": "success", "result": None, "error": None}
        started = time.monotonic()
        try:
            with cls._app.app_context():
                outcome["result"] = fn(cls._app)
        except Exception as exc:
            outcome.update(status="failed", error=str(exc))
            logger.exception("Scheduled job %s failed", job_name)
        else:
            result = outcome["result"]
            if isinstance(result, dict) and result.get("status") == "skipped":
                outcome["status"] = "skipped"
        outcome["duration_ms"] = int((time.monotonic() - started) * 1000)

        cls._store_outcome(outcome)
        return outcome

    @classmethod
    def _store_outcome(cls, outcome: dict) -> None:
        result = outcome["result"]
        try:
            with cls._app.app_context():
                record = _job_record(outcome["job_name"])
                if record is None:
                    return
                record.record_run(
                    status=outcome["status"],
                    duration_ms=outcome["duration_ms"],
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=outcome["error"],
                )
                db.session.commit()
        except Exception:
            logger.exception("Could not store run of %s", outcome["job_name"])

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(timezone.utc)
        with cls._app.app_context():
            return [
                name for name in _job_registry
                if (record := _job_record(name)) is not None and record.is_due(now)
            ]

    @classmethod
    def tick(cls, now: datetime | None = None) -> list[dict]:
        if cls._app is None:
            return []
        return [cls.run_job(name) for name in cls.due_jobs(now)]

    # ── Timer thread ─────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> bool:
        """Start the timer thread; False when disabled or already running."""
        if cls._app is None or not cls._app.config.get("SCHEDULER_ENABLED"):
            return False
        if cls.is_running():
            return False

        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(cls._stop_event,), name="scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started, tick=%ss", TICK_SECONDS)
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = cls._stop_event = None

    @classmethod
    def is_running(cls) -> bool:
        return cls._thread is not None and cls._thread.is_alive()

    @classmethod
    def _loop(cls, stop_event: threading.Event) -> None:
        # Never-run jobs are due, so the first pass syncs every source at boot
        while not stop_event.is_set():
            try:
                cls.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(TICK_SECONDS)
