"""Tests for the reconciliation service.

Coverage:
  1. New / forward / rollback mix produces the expected rows and Movements
  2. Re-running the same batch changes nothing (idempotence)
  3. No duplicate (source, external_key) rows, even inside one batch
  4. A bad item is reported and the rest of the batch still lands
  5. Estimate changes recompute points and never create a Movement
  6. Stale (older) source updates are skipped
  7. Support tiers only move upward and record tier Movements
  8. History backfill de-duplicates against existing Movements
  9. Reviewer justifications keep the previous reviewer's text
 10. Project upsert never overwrites a manual team mapping
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from ticket_tracker.core.exceptions import NotFoundError, ValidationError
from ticket_tracker.integrations.base import ExternalProject, HistoryEntry
from ticket_tracker.models import db
from ticket_tracker.models.project import Project, Team
from ticket_tracker.models.work_item import Movement, WorkItem
from ticket_tracker.services import reconciliation_service as rs
from ticket_tracker.services.sla_policy import as_utc

from conftest import BASE_TIME


# ── Helpers ─────────────────────────────────────────────────────────────────


def _later(hours=1):
    return BASE_TIME + timedelta(hours=hours)


def _get(key, source="jira") -> WorkItem:
    return WorkItem.query.filter_by(source=source, external_key=key).one()


def _movement_count() -> int:
    return db.session.execute(select(func.count(Movement.id))).scalar_one()


def _helpdesk_item(item, key="2001", **overrides):
    fields = {
        "source": "freshservice",
        "item_type": "incident",
        "status": "open",
        "priority": "High",
        "project_key": "FRESHSERVICE",
        "support_level": "L2",
    }
    fields.update(overrides)
    return item(key, **fields)


# ── Tests ────────────────────────────────────────────────────────────────────


class TestReconcileScenario:

    def test_new_forward_and_rollback_in_one_batch(self, item):
        rs.reconcile([
            item("PAY-2", status="in_progress"),
            item("PAY-3", status="qa_test"),
        ])
        assert _movement_count() == 0

        report = rs.reconcile([
            item("PAY-1", status="todo", updated_at=_later()),
            item("PAY-2", status="review", updated_at=_later()),
            item("PAY-3", status="in_progress", updated_at=_later()),
        ])

        assert WorkItem.query.count() == 3
        assert report.created == 1
        assert report.updated == 2
        assert report.movements == 2
        assert report.rollbacks == 1
        assert _movement_count() == 2

        rollback = Movement.query.filter_by(is_rollback=True).one()
        assert rollback.work_item.external_key == "PAY-3"
        assert (rollback.from_status, rollback.to_status) == ("qa_test", "in_progress")
        assert rollback.transition == "rollback"
        forward = Movement.query.filter_by(is_rollback=False).one()
        assert forward.transition == "forward"
        assert as_utc(forward.moved_at) == _later()

    def test_same_batch_twice_is_idempotent(self, item):
        batch = [
            item("PAY-1", status="todo"),
            item("PAY-2", status="review", assignee="Ada", complexity=2, risk=3),
        ]
        rs.reconcile(batch)
        before = [wi.to_dict() for wi in WorkItem.query.order_by(WorkItem.id)]

        report = rs.reconcile(batch)

        assert report.created == 0
        assert report.updated == 0
        assert report.unchanged == 2
        assert report.movements == 0
        after = [wi.to_dict() for wi in WorkItem.query.order_by(WorkItem.id)]
        for b, a in zip(before, after):
            for key in ("status", "complexity", "risk", "delivery_points", "assignee"):
                assert b[key] == a[key]
        assert _movement_count() == 0

    def test_duplicate_keys_collapse_to_one_row(self, item):
        rs.reconcile([
            item("PAY-9", status="todo"),
            item("PAY-9", status="in_progress", updated_at=_later()),
        ])
        rows = WorkItem.query.filter_by(external_key="PAY-9").all()
        assert len(rows) == 1
        assert rows[0].status == "in_progress"

    def test_same_key_in_different_sources_is_two_items(self, item):
        rs.reconcile([
            item("42", status="todo"),
            item("42", source="freshdesk", item_type="service_request", status="open",
                 project_key="FRESHDESK"),
        ])
        assert WorkItem.query.filter_by(external_key="42").count() == 2

    def test_bad_items_are_reported_and_batch_continues(self, item):
        report = rs.reconcile([
            item("PAY-1", status="shipped"),
            item("", status="todo"),
            item("PAY-2", priority="Urgent"),
            item("PAY-3", status="todo"),
        ])

        assert report.created == 1
        assert report.failed == 3
        assert {f["external_key"] for f in report.failures} == {"PAY-1", "?", "PAY-2"}
        assert WorkItem.query.count() == 1
        assert report.processed == 4

    def test_rejected_first_item_of_new_project_does_not_poison_the_next(self, item):
        cache = {}
        report = rs.reconcile([
            item("NEW-1", project_key="NEWP", complexity=5),
            item("NEW-2", project_key="NEWP"),
        ], project_cache=cache)

        assert report.created == 1
        assert [f["external_key"] for f in report.failures] == ["NEW-1"]
        wi = _get("NEW-2")
        project = db.session.get(Project, wi.project_id)
        assert project.external_key == "NEWP"
        assert cache == {("jira", "NEWP"): project.id}

    def test_failed_update_leaves_no_partial_movement(self, item):
        rs.reconcile([item("PAY-1", status="review")])
        report = rs.reconcile([item("PAY-1", status="uat", complexity=9, updated_at=_later())])

        assert report.failed == 1
        assert report.movements == 0
        wi = _get("PAY-1")
        assert (wi.status, wi.complexity) == ("review", 1)


class TestEstimates:

    def test_c3_r4_is_seventy_then_risk_drop_lowers_points(self, item):
        rs.reconcile([item("PAY-1", complexity=3, risk=4)])
        wi = _get("PAY-1")
        assert wi.delivery_points == 70

        report = rs.reconcile([item("PAY-1", complexity=3, risk=1, updated_at=_later())])

        assert report.updated == 1
        assert report.movements == 0
        assert _get("PAY-1").delivery_points == 40
        assert _movement_count() == 0

    def test_missing_estimate_defaults_then_keeps_local_value(self, item):
        rs.reconcile([item("PAY-1")])
        wi = _get("PAY-1")
        assert (wi.complexity, wi.risk, wi.delivery_points) == (1, 1, 20)

        rs.update_estimate(wi.id, 4, 2)
        rs.reconcile([item("PAY-1", updated_at=_later())])
        assert _get("PAY-1").delivery_points == 60

    def test_update_estimate_recomputes_without_movement(self, item):
        rs.reconcile([item("PAY-1", status="review")])
        wi = _get("PAY-1")

        result = rs.update_estimate(wi.id, 3, 4)

        assert result["delivery_points"] == 70
        assert _movement_count() == 0
        agg = db.session.get(Project, wi.project_id).aggregation
        assert agg.total_delivery_points == 70

    def test_update_estimate_validates(self, item):
        rs.reconcile([item("PAY-1")])
        with pytest.raises(ValidationError):
            rs.update_estimate(_get("PAY-1").id, 0, 2)
        with pytest.raises(NotFoundError):
            rs.update_estimate(99999, 1, 1)

    def test_movement_records_points_after_estimate_change(self, item):
        rs.reconcile([item("PAY-1", status="todo")])
        rs.reconcile([item("PAY-1", status="review", complexity=2, risk=2, updated_at=_later())])
        movement = Movement.query.one()
        assert movement.points_at_move == 40


class TestOrdering:

    def test_older_update_is_skipped(self, item):
        rs.reconcile([item("PAY-1", status="review", updated_at=_later(2))])

        report = rs.reconcile([item("PAY-1", status="todo", updated_at=_later(1))])

        assert report.stale == 1
        assert report.movements == 0
        assert _get("PAY-1").status == "review"

    def test_terminal_status_sets_completed_at(self, item):
        rs.reconcile([item("PAY-1", status="uat")])
        assert _get("PAY-1").completed_at is None

        rs.reconcile([item("PAY-1", status="live", updated_at=_later())])
        assert _get("PAY-1").completed_at is not None

        rs.reconcile([item("PAY-1", status="rollback", updated_at=_later(2))])
        wi = _get("PAY-1")
        assert wi.completed_at is None
        assert Movement.query.filter_by(to_status="rollback").one().is_rollback

    def test_priority_change_moves_due_date(self, item):
        rs.reconcile([item("PAY-1", priority="Low")])
        low_due = as_utc(_get("PAY-1").sla_due_date)
        assert low_due == BASE_TIME + timedelta(hours=168)

        rs.reconcile([item("PAY-1", priority="Critical", updated_at=_later())])
        assert as_utc(_get("PAY-1").sla_due_date) == BASE_TIME + timedelta(hours=4)


class TestSupportLevels:

    def test_tier_raise_records_lateral_tier_movement(self, item):
        rs.reconcile([_helpdesk_item(item)])

        report = rs.reconcile([_helpdesk_item(item, support_level="L3", updated_at=_later())])

        wi = _get("2001", source="freshservice")
        assert wi.support_level == "L3"
        assert report.movements == 1
        movement = Movement.query.one()
        assert (movement.from_level, movement.to_level) == ("L2", "L3")
        assert movement.from_status == movement.to_status == "open"
        assert movement.transition == "lateral"
        assert not movement.is_rollback

    def test_tier_never_decreases(self, item):
        rs.reconcile([_helpdesk_item(item, support_level="L3")])
        rs.reconcile([_helpdesk_item(item, support_level="L1", updated_at=_later())])
        assert _get("2001", source="freshservice").support_level == "L3"
        assert _movement_count() == 0

    def test_status_and_tier_change_share_one_movement(self, item):
        rs.reconcile([_helpdesk_item(item)])
        rs.reconcile([_helpdesk_item(item, status="pending", support_level="L4",
                                     updated_at=_later())])
        movement = Movement.query.one()
        assert (movement.from_status, movement.to_status) == ("open", "pending")
        assert (movement.from_level, movement.to_level) == ("L2", "L4")

    def test_first_seen_tier_is_seeded_silently(self, item):
        rs.reconcile([_helpdesk_item(item, support_level=None)])
        rs.reconcile([_helpdesk_item(item, support_level="L2", updated_at=_later())])
        assert _get("2001", source="freshservice").support_level == "L2"
        assert _movement_count() == 0


class TestBackfillHistory:

    def test_duplicates_within_tolerance_are_skipped(self, item):
        rs.reconcile([item("PAY-1", status="todo")])
        rs.reconcile([item("PAY-1", status="in_progress", updated_at=_later())])
        wi = _get("PAY-1")
        entries = [
            HistoryEntry(_later() + timedelta(seconds=1), "todo", "in_progress", "ada"),
            HistoryEntry(BASE_TIME - timedelta(days=2), "in_progress", "todo", "bob"),
            HistoryEntry(BASE_TIME - timedelta(days=3), "todo", "todo", "bob"),
            HistoryEntry(BASE_TIME - timedelta(days=4), "todo", "launched", "bob"),
        ]

        assert rs.backfill_history(wi.id, entries) == 1
        assert rs.backfill_history(wi.id, entries) == 0
        assert Movement.query.filter_by(work_item_id=wi.id).count() == 2
        assert Movement.query.filter_by(is_rollback=True).count() == 1

    def test_observed_move_takes_changelog_time_instead_of_duplicate(self, item):
        rs.reconcile([item("PAY-1", status="qa_test")])
        # Edited after the transition: updated_at is later than the changelog entry
        report = rs.reconcile([
            item("PAY-1", status="in_progress", updated_at=_later() + timedelta(minutes=5)),
        ])
        wi = _get("PAY-1")
        entries = [HistoryEntry(_later(), "qa_test", "in_progress", "ada")]

        assert rs.backfill_history(wi.id, entries, report.status_moves) == 0
        movement = Movement.query.filter_by(work_item_id=wi.id).one()
        assert movement.is_rollback
        assert as_utc(movement.moved_at) == _later()
        assert movement.actor == "ada"

    def test_observed_move_claims_latest_matching_entry(self, item):
        rs.reconcile([item("PAY-1", status="review")])
        report = rs.reconcile([item("PAY-1", status="todo", updated_at=_later(5))])
        wi = _get("PAY-1")
        entries = [
            HistoryEntry(_later(1), "review", "todo"),
            HistoryEntry(_later(2), "todo", "review"),
            HistoryEntry(_later(3), "review", "todo"),
        ]

        assert rs.backfill_history(wi.id, entries, report.status_moves) == 2
        moves = Movement.query.filter_by(work_item_id=wi.id).order_by(Movement.moved_at).all()
        assert [as_utc(m.moved_at) for m in moves] == [_later(1), _later(2), _later(3)]
        assert Movement.query.filter_by(is_rollback=True).count() == 2

    def test_rollbacks_refresh_aggregation(self, item):
        rs.reconcile([item("PAY-1", status="review")])
        wi = _get("PAY-1")
        rs.backfill_history(wi.id, [HistoryEntry(BASE_TIME, "qa_test", "review")])
        assert db.session.get(Project, wi.project_id).aggregation.rollback_count == 1

    def test_unknown_item(self):
        with pytest.raises(NotFoundError):
            rs.backfill_history(12345, [])


class TestJustification:

    def _rollback_movement(self, item) -> Movement:
        rs.reconcile([item("PAY-1", status="qa_test")])
        rs.reconcile([item("PAY-1", status="in_progress", updated_at=_later())])
        return Movement.query.one()

    def test_first_justification(self, item):
        movement = self._rollback_movement(item)
        result = rs.justify_movement(movement.id, "  Failed regression  ", "alice")
        assert result["justification"] == "Failed regression"
        assert result["justified_by"] == "alice"
        assert result["justified_at"] is not None

    def test_other_reviewer_keeps_previous_text(self, item):
        movement = self._rollback_movement(item)
        rs.justify_movement(movement.id, "Failed regression", "alice")
        result = rs.justify_movement(movement.id, "Env outage, not a defect", "bob")
        assert result["justification"] == (
            "[PREVIOUS BY alice]: Failed regression\n"
            "[UPDATED BY bob]: Env outage, not a defect"
        )
        assert result["justified_by"] == "bob"

    def test_same_reviewer_replaces(self, item):
        movement = self._rollback_movement(item)
        rs.justify_movement(movement.id, "first", "alice")
        assert rs.justify_movement(movement.id, "second", "alice")["justification"] == "second"

    def test_validation(self, item):
        movement = self._rollback_movement(item)
        with pytest.raises(ValidationError):
            rs.justify_movement(movement.id, "   ", "alice")
        with pytest.raises(ValidationError):
            rs.justify_movement(movement.id, "text", "")
        with pytest.raises(NotFoundError):
            rs.justify_movement(99999, "text", "alice")


class TestProjects:

    def test_items_create_placeholder_project(self, item):
        rs.reconcile([item("NEW-1", project_key="NEW")])
        project = Project.query.filter_by(source="jira", external_key="NEW").one()
        assert project.name == "NEW"
        assert _get("NEW-1").project_id == project.id

    def test_upsert_keeps_manual_team_mapping(self):
        team = Team(name="Payments")
        db.session.add(team)
        project = rs.upsert_project("jira", ExternalProject(key="PAY", name="Payments"))
        project.team_id = team.id
        project.is_manual_team_map = True
        db.session.commit()

        refreshed = rs.upsert_project("jira", ExternalProject(key="PAY", name="Payments v2",
                                                              lead="Grace"))

        assert refreshed.id == project.id
        assert refreshed.name == "Payments v2"
        assert refreshed.lead == "Grace"
        assert refreshed.team_id == team.id
        assert refreshed.is_manual_team_map is True

    def test_reconcile_recalculates_touched_projects(self, item):
        rs.reconcile([item("PAY-1", status="live"), item("PAY-2", status="todo")])
        agg = Project.query.filter_by(external_key="PAY").one().aggregation
        assert agg.total_items == 2
        assert agg.completed_items == 1
        assert agg.efficiency_percentage == 50.0
