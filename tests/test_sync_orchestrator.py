"""Tests for the sync orchestrator.

Coverage:
  1. Inline run reconciles every project and completes at 100%
  2. Progress only moves forward
  3. Unreachable source / rejected credentials fail the job without writes
  4. Per-item problems complete the job "with warnings"
  5. Single-flight per source type; other source types run in parallel
  6. Cooperative cancel stops at the next batch boundary
  7. Unknown / disabled sources are rejected up front
  8. History backfill and helpdesk escalation pass run at the end

Background runs here never touch the database: the in-memory SQLite
connection is shared between threads.
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from ticket_tracker.core.exceptions import SourceUnreachableError, SyncBusyError, ValidationError
from ticket_tracker.integrations.base import ExternalProject, HistoryEntry
from ticket_tracker.integrations.stub_adapter import StubAdapter
from ticket_tracker.models.project import Project
from ticket_tracker.models.work_item import Movement, WorkItem
from ticket_tracker.services.job_registry import COMPLETED, FAILED, JobStatusRegistry
from ticket_tracker.services.sync_orchestrator import SyncOrchestrator

from conftest import BASE_TIME


# ── Helpers ─────────────────────────────────────────────────────────────────


def _orchestrator(app, factory=None) -> SyncOrchestrator:
    return SyncOrchestrator(app, JobStatusRegistry(),
                            factory or (lambda source, config: StubAdapter(source)))


def _fixture(items, history=None, key="DEMO"):
    return {
        "projects": [ExternalProject(key=key, name=f"{key} project")],
        "items": {key: list(items)},
        "history": history or {},
    }


class _BlockingAdapter(StubAdapter):
    """Holds the run inside authenticate() until released, then fails."""

    def __init__(self, source_type, entered, release):
        super().__init__(source_type)
        self.entered = entered
        self.release = release

    def authenticate(self):
        self.entered.set()
        self.release.wait(5)
        raise SourceUnreachableError(self.source_type, "connection reset")


class _BrokenAdapter(StubAdapter):
    def list_projects(self):
        raise RuntimeError("boom")


class _RejectingAdapter(StubAdapter):
    def list_work_items(self, project_key):
        self.reject("DEMO-BAD", "issue payload missing key or fields")
        return super().list_work_items(project_key)


# ── Tests ────────────────────────────────────────────────────────────────────


class TestInlineRun:

    def test_stub_sync_completes(self, app):
        orch = _orchestrator(app)
        job_id = orch.start_sync("jira", background=False)

        status = orch.registry.get(job_id)
        assert status.state == COMPLETED
        assert status.progress == 100
        assert status.summary["created"] == 3
        assert status.summary["projects"] == 1
        assert status.message == "jira sync completed: 3 created, 0 updated, 0 failed"
        assert WorkItem.query.filter_by(source="jira").count() == 3
        project = Project.query.filter_by(external_key="DEMO").one()
        assert project.aggregation.total_items == 3
        assert not orch.is_running("jira")

    def test_second_run_updates_nothing(self, app):
        orch = _orchestrator(app)
        orch.start_sync("jira", background=False)
        job_id = orch.start_sync("jira", background=False)
        summary = orch.registry.get(job_id).summary
        assert summary["created"] == 0
        assert summary["unchanged"] == 3
        assert summary["movements"] == 0

    def test_progress_is_monotonic(self, app):
        orch = _orchestrator(app)
        seen = []
        orch.registry.subscribe(lambda s: seen.append(s.progress))

        orch.start_sync("jira", background=False)

        assert seen == sorted(seen)
        assert seen[-1] == 100
        # 3 items in batches of 2
        assert 50 in seen and 90 in seen and 95 in seen

    def test_helpdesk_sync_runs_escalation_pass(self, app):
        orch = _orchestrator(app)
        job_id = orch.start_sync("freshservice", background=False)
        summary = orch.registry.get(job_id).summary
        assert summary["escalations"] == {"scanned": 0, "created": 0}


class TestFailures:

    def test_unreachable_source_fails_without_writes(self, app):
        orch = _orchestrator(app, lambda s, c: StubAdapter(s, unreachable=True))
        job_id = orch.start_sync("jira", background=False)

        status = orch.registry.get(job_id)
        assert status.state == FAILED
        assert "unreachable" in status.message
        assert WorkItem.query.count() == 0
        assert not orch.is_running("jira")

    def test_rejected_credentials(self, app):
        orch = _orchestrator(app, lambda s, c: StubAdapter(s, credentials_valid=False))
        job_id = orch.start_sync("jira", background=False)
        status = orch.registry.get(job_id)
        assert status.state == FAILED
        assert status.message == "jira rejected the configured credentials"

    def test_unexpected_error_becomes_failed_job(self, app):
        orch = _orchestrator(app, lambda s, c: _BrokenAdapter(s))
        job_id = orch.start_sync("jira", background=False)

        status = orch.registry.get(job_id)
        assert status.state == FAILED
        assert status.message == "jira sync failed: boom"
        assert not orch.is_running("jira")

    def test_item_problems_complete_with_warnings(self, app, item):
        fixture = _fixture([
            item("DEMO-1", project_key="DEMO"),
            item("DEMO-2", project_key="DEMO", status="shipped"),
        ])
        orch = _orchestrator(app, lambda s, c: _RejectingAdapter(s, fixture))
        job_id = orch.start_sync("jira", background=False)

        status = orch.registry.get(job_id)
        assert status.state == COMPLETED
        assert status.message.endswith("(completed with 2 warnings)")
        assert status.summary["failed"] == 2
        assert {f["external_key"] for f in status.summary["failures"]} == {"DEMO-2", "DEMO-BAD"}
        assert WorkItem.query.count() == 1


class TestSingleFlight:

    def test_same_source_rejected_other_source_runs(self, app):
        entered, release = threading.Event(), threading.Event()

        def _factory(source, config):
            if source == "jira":
                return _BlockingAdapter(source, entered, release)
            return StubAdapter(source)

        orch = _orchestrator(app, _factory)
        first = orch.start_sync("jira")
        try:
            assert entered.wait(5)
            assert orch.is_running("jira")

            with pytest.raises(SyncBusyError) as busy:
                orch.start_sync("jira")
            assert busy.value.job_id == first

            other = orch.start_sync("freshdesk", background=False)
            assert orch.registry.get(other).state == COMPLETED
        finally:
            release.set()
            assert orch.join(first, timeout=5)

        assert orch.registry.get(first).state == FAILED
        assert not orch.is_running("jira")
        assert orch.active_job("jira") is None

    def test_guard_released_after_failure(self, app):
        orch = _orchestrator(app, lambda s, c: StubAdapter(s, unreachable=True))
        orch.start_sync("jira", background=False)
        second = orch.start_sync("jira", background=False)
        assert orch.registry.get(second).state == FAILED


class TestCancel:

    def test_stop_at_batch_boundary(self, app):
        orch = _orchestrator(app)
        orch.registry.subscribe(
            lambda s: s.progress > 10 and s.state == "running" and orch.request_stop(s.job_id)
        )

        job_id = orch.start_sync("jira", background=False)

        status = orch.registry.get(job_id)
        assert status.state == FAILED
        assert status.message == "cancelled"
        assert status.summary["created"] == 2
        assert WorkItem.query.count() == 2

    def test_stop_unknown_job(self, app):
        assert _orchestrator(app).request_stop("nope") is False


class TestValidation:

    def test_unknown_source(self, app):
        with pytest.raises(ValidationError, match="Unknown source type"):
            _orchestrator(app).start_sync("servicenow")

    def test_disabled_source(self, app):
        orch = _orchestrator(app)
        with patch.dict(app.config, {"FRESHDESK_ENABLED": False}):
            assert "freshdesk" not in orch.enabled_sources()
            with pytest.raises(ValidationError) as exc:
                orch.start_sync("freshdesk")
        assert exc.value.details["reason"] == "disabled"


class TestBackfill:

    def test_history_imported_for_changed_items(self, app, item):
        """Entries older than the first sync are imported too.

        Backfill runs for every item whose status changed in this run and
        pulls its whole source changelog, so the two transitions from the
        day before DEMO-1 was first seen become Movements as well.
        """
        fixture = _fixture([item("DEMO-1", project_key="DEMO", status="todo")])
        orch = _orchestrator(app, lambda s, c: StubAdapter(s, fixture))

        with patch.dict(app.config, {"SYNC_BACKFILL_HISTORY": True}):
            orch.start_sync("jira", background=False)
            moved = BASE_TIME + timedelta(hours=2)
            fixture["items"]["DEMO"] = [
                item("DEMO-1", project_key="DEMO", status="in_progress", updated_at=moved),
            ]
            fixture["history"]["DEMO-1"] = [
                HistoryEntry(BASE_TIME - timedelta(days=1), "todo", "review"),
                HistoryEntry(BASE_TIME - timedelta(hours=12), "review", "todo"),
                HistoryEntry(moved, "todo", "in_progress"),
            ]
            job_id = orch.start_sync("jira", background=False)

        summary = orch.registry.get(job_id).summary
        assert summary["history_movements"] == 2
        assert Movement.query.count() == 3
        assert Movement.query.filter_by(is_rollback=True).count() == 1

    def test_observed_change_not_imported_twice(self, app, item):
        fixture = _fixture([item("D-1", project_key="DEMO", status="qa_test")])
        orch = _orchestrator(app, lambda s, c: StubAdapter(s, fixture))

        with patch.dict(app.config, {"SYNC_BACKFILL_HISTORY": True}):
            orch.start_sync("jira", background=False)
            moved = BASE_TIME + timedelta(hours=1)
            # A comment five minutes later bumps updated_at past the transition
            fixture["items"]["DEMO"] = [
                item("D-1", project_key="DEMO", status="in_progress",
                     updated_at=moved + timedelta(minutes=5)),
            ]
            fixture["history"]["D-1"] = [HistoryEntry(moved, "qa_test", "in_progress")]
            job_id = orch.start_sync("jira", background=False)

        assert orch.registry.get(job_id).summary["history_movements"] == 0
        movement = Movement.query.one()
        assert movement.is_rollback
        assert movement.moved_at.replace(tzinfo=None) == moved.replace(tzinfo=None)
