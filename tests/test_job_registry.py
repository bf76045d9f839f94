"""Tests for the in-process job status registry.

Coverage:
  1. queued → running → completed | failed transitions
  2. Unknown ids read as idle
  3. Finished jobs ignore late updates
  4. Reads are copies; listeners see every transition
  5. Pruning keeps running jobs
"""

import pytest

from ticket_tracker.services.job_registry import (
    COMPLETED,
    FAILED,
    IDLE,
    QUEUED,
    RUNNING,
    JobStatusRegistry,
)


@pytest.fixture()
def registry():
    return JobStatusRegistry()


class TestTransitions:

    def test_happy_path(self, registry):
        job = registry.create("jira")
        assert job.state == QUEUED
        assert job.progress == 0

        registry.mark_running(job.job_id, "started")
        running = registry.get(job.job_id)
        assert running.state == RUNNING
        assert running.started_at is not None

        registry.update_progress(job.job_id, 50, "half")
        assert registry.get(job.job_id).progress == 50

        registry.complete(job.job_id, "done", {"created": 3})
        done = registry.get(job.job_id)
        assert done.state == COMPLETED
        assert done.progress == 100
        assert done.summary == {"created": 3}
        assert done.finished_at is not None
        assert done.is_finished

    def test_fail_keeps_progress(self, registry):
        job = registry.create("freshdesk")
        registry.mark_running(job.job_id)
        registry.update_progress(job.job_id, 40)
        registry.fail(job.job_id, "freshdesk unreachable: timeout")

        failed = registry.get(job.job_id)
        assert failed.state == FAILED
        assert failed.progress == 40
        assert "unreachable" in failed.message

    def test_progress_is_clamped(self, registry):
        job = registry.create("jira")
        assert registry.update_progress(job.job_id, 250).progress == 100
        assert registry.update_progress(job.job_id, -5).progress == 0

    def test_finished_job_ignores_updates(self, registry):
        job = registry.create("jira")
        registry.complete(job.job_id, "done")
        registry.update_progress(job.job_id, 10, "late")
        registry.fail(job.job_id, "late failure")

        status = registry.get(job.job_id)
        assert status.state == COMPLETED
        assert status.message == "done"

    def test_unknown_job_write_raises(self, registry):
        with pytest.raises(KeyError):
            registry.mark_running("nope")


class TestReads:

    def test_unknown_id_is_idle(self, registry):
        status = registry.get("does-not-exist")
        assert status.state == IDLE
        assert status.source_type is None
        assert status.to_dict()["state"] == "idle"

    def test_reads_are_copies(self, registry):
        job = registry.create("jira")
        registry.complete(job.job_id, "done", {"created": 1})
        copy = registry.get(job.job_id)
        copy.summary["created"] = 999
        copy.state = FAILED
        assert registry.get(job.job_id).summary == {"created": 1}
        assert registry.get(job.job_id).state == COMPLETED

    def test_current_is_latest_per_source(self, registry):
        registry.create("jira")
        latest = registry.create("jira")
        registry.create("freshdesk")
        current = {s.source_type: s.job_id for s in registry.current()}
        assert current["jira"] == latest.job_id
        assert set(current) == {"jira", "freshdesk"}
        assert [s.job_id for s in registry.current("jira")] == [latest.job_id]

    def test_list_newest_first(self, registry):
        ids = [registry.create("jira").job_id for _ in range(3)]
        assert [s.job_id for s in registry.list_jobs()] == ids[::-1]
        assert len(registry.list_jobs(limit=2)) == 2


class TestListeners:

    def test_listener_sees_transitions_until_unsubscribed(self, registry):
        seen = []
        unsubscribe = registry.subscribe(lambda s: seen.append((s.job_id, s.state)))
        job = registry.create("jira")
        registry.mark_running(job.job_id)
        unsubscribe()
        registry.complete(job.job_id, "done")

        assert seen == [(job.job_id, QUEUED), (job.job_id, RUNNING)]

    def test_failing_listener_does_not_break_registry(self, registry):
        def _boom(status):
            raise RuntimeError("listener bug")

        registry.subscribe(_boom)
        job = registry.create("jira")
        registry.complete(job.job_id, "done")
        assert registry.get(job.job_id).state == COMPLETED


class TestPrune:

    def test_prune_drops_oldest_finished_only(self, registry):
        running = registry.create("jira")
        registry.mark_running(running.job_id)
        finished = []
        for _ in range(3):
            job = registry.create("freshdesk")
            registry.complete(job.job_id, "done")
            finished.append(job.job_id)

        removed = registry.prune(keep=2)

        assert removed == 2
        remaining = {s.job_id for s in registry.list_jobs(limit=0)}
        assert remaining == {running.job_id, finished[-1]}

    def test_overflow_prunes_automatically(self):
        registry = JobStatusRegistry(max_jobs=3)
        for _ in range(5):
            job = registry.create("jira")
            registry.complete(job.job_id, "done")
        assert len(registry.list_jobs(limit=0)) <= 4
