"""Persisted state of the periodic jobs run by SchedulerService."""

from datetime import datetime, timezone

from ticket_tracker.models import db
from ticket_tracker.services.sla_policy import as_utc

JOB_STATUSES = ("active", "paused", "failed")
RUN_STATUSES = ("success", "failed", "skipped")


def _utcnow():
    return datetime.now(timezone.utc)


class ScheduledJob(db.Model):
    """One row per registered job (sync_jira, escalation_sync, ...).

    The row is created on first registration and survives restarts, so
    interval changes and pauses made through the API stick.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    # {"seconds": N}
    schedule_config = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), default="active")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def interval_seconds(self) -> int:
        return int((self.schedule_config or {}).get("seconds", 0))

    def is_due(self, now: datetime) -> bool:
        """Enabled and never run, or the interval has elapsed since the last run."""
        if not self.is_enabled:
            return False
        if self.last_run_at is None:
            return True
        interval = self.interval_seconds
        return bool(interval) and (now - as_utc(self.last_run_at)).total_seconds() >= interval

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        data = {
            column: getattr(self, column)
            for column in (
                "id", "job_name", "description", "schedule_type", "schedule_config",
                "status", "is_enabled", "last_run_status", "last_run_duration_ms",
                "last_run_result", "run_count", "error_count", "last_error",
            )
        }
        data["last_run_at"] = self.last_run_at.isoformat() if self.last_run_at else None
        data["interval_seconds"] = self.interval_seconds
        return data

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} {self.status} every {self.interval_seconds}s>"
