"""Tests for the movement / rollback classifier.

Coverage:
  1. Forward, lateral and rollback by rank
  2. Rollback marker handling on either side
  3. Unknown statuses rejected
  4. Support tier escalation ordering
"""

import pytest

from ticket_tracker.core.exceptions import ValidationError
from ticket_tracker.models.work_item import HELPDESK_PIPELINE, TICKET_PIPELINE
from ticket_tracker.services.movement_classifier import (
    Transition,
    classify,
    is_escalation,
    is_terminal,
    is_valid_status,
    pipeline_for,
    rank,
)


class TestClassify:

    def test_forward(self):
        assert classify(TICKET_PIPELINE, "in_progress", "review") is Transition.FORWARD

    def test_rollback(self):
        assert classify(TICKET_PIPELINE, "qa_test", "in_progress") is Transition.ROLLBACK

    def test_same_status_is_lateral(self):
        assert classify(TICKET_PIPELINE, "review", "review") is Transition.LATERAL

    def test_skipping_stages_is_still_forward(self):
        assert classify(TICKET_PIPELINE, "todo", "live") is Transition.FORWARD

    def test_entering_marker_is_rollback_regardless_of_rank(self):
        assert classify(TICKET_PIPELINE, "todo", "rollback") is Transition.ROLLBACK
        assert classify(TICKET_PIPELINE, "live", "rollback") is Transition.ROLLBACK

    def test_leaving_marker_is_forward(self):
        assert classify(TICKET_PIPELINE, "rollback", "in_progress") is Transition.FORWARD

    def test_helpdesk_reopen_is_rollback(self):
        assert classify(HELPDESK_PIPELINE, "resolved", "open") is Transition.ROLLBACK

    def test_antisymmetric_on_distinct_ranks(self):
        for a in TICKET_PIPELINE:
            for b in TICKET_PIPELINE:
                if a == b:
                    continue
                there = classify(TICKET_PIPELINE, a, b)
                back = classify(TICKET_PIPELINE, b, a)
                assert {there, back} == {Transition.FORWARD, Transition.ROLLBACK}

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError, match="not part of the pipeline"):
            classify(TICKET_PIPELINE, "todo", "shipped")


class TestPipelineHelpers:

    def test_rank_excludes_marker(self):
        with pytest.raises(ValidationError):
            rank(TICKET_PIPELINE, "rollback")

    def test_pipeline_for_unknown_type(self):
        with pytest.raises(ValidationError, match="Unknown item type"):
            pipeline_for("epic")

    def test_valid_status(self):
        assert is_valid_status("ticket", "rollback")
        assert is_valid_status("incident", "pending")
        assert not is_valid_status("incident", "review")

    def test_terminal(self):
        assert is_terminal("ticket", "live")
        assert is_terminal("service_request", "closed")
        assert not is_terminal("ticket", "production_ready")


class TestEscalation:

    @pytest.mark.parametrize("a,b", [("L1", "L2"), ("L2", "L4"), ("L1", "L3")])
    def test_upward_moves(self, a, b):
        assert is_escalation(a, b)

    @pytest.mark.parametrize("a,b", [("L2", "L1"), ("L3", "L3"), (None, "L2"), ("L2", None),
                                     ("L2", "L9")])
    def test_not_escalations(self, a, b):
        assert not is_escalation(a, b)
