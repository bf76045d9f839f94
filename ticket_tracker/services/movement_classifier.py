"""
Ticket Tracker
Movement / Rollback classifier.

Classifies one status transition against a fixed, ordered pipeline:

    rank(to) <  rank(from)   → ROLLBACK
    rank(to) == rank(from)   → LATERAL
    rank(to) >  rank(from)   → FORWARD
    to == ROLLBACK_MARKER    → ROLLBACK (regardless of rank)

The rollback marker is not part of any pipeline. Leaving the marker is
treated as FORWARD because the item re-enters the ordered flow.
"""

from __future__ import annotations

import enum
from typing import Sequence

from ticket_tracker.core.exceptions import ValidationError
from ticket_tracker.models.work_item import (
    PIPELINES,
    ROLLBACK_MARKER,
    SUPPORT_LEVELS,
    TERMINAL_STATUSES,
)


class Transition(str, enum.Enum):
    FORWARD = "forward"
    LATERAL = "lateral"
    ROLLBACK = "rollback"


def pipeline_for(item_type: str) -> tuple:
    """Return the ordered status pipeline for an item type."""
    try:
        return PIPELINES[item_type]
    except KeyError:
        raise ValidationError(
            f"Unknown item type '{item_type}'. Must be one of: {', '.join(PIPELINES)}"
        ) from None


def rank(pipeline: Sequence[str], status: str) -> int:
    """Position of ``status`` in ``pipeline``.

    Raises:
        ValidationError: status is not a pipeline member (the rollback
            marker included).
    """
    try:
        return list(pipeline).index(status)
    except ValueError:
        raise ValidationError(
            f"Status '{status}' is not part of the pipeline",
            details={"status": status, "pipeline": list(pipeline)},
        ) from None


def is_valid_status(item_type: str, status: str) -> bool:
    return status == ROLLBACK_MARKER or status in PIPELINES.get(item_type, ())


def is_terminal(item_type: str, status: str) -> bool:
    return status in TERMINAL_STATUSES.get(item_type, frozenset())


def classify(pipeline: Sequence[str], from_status: str, to_status: str) -> Transition:
    """Classify ``from_status`` → ``to_status``.

    Both statuses must be pipeline members, except that either side may be
    the rollback marker.
    """
    if to_status == ROLLBACK_MARKER:
        if from_status != ROLLBACK_MARKER:
            rank(pipeline, from_status)
        return Transition.ROLLBACK
    if from_status == ROLLBACK_MARKER:
        rank(pipeline, to_status)
        return Transition.FORWARD

    delta = rank(pipeline, to_status) - rank(pipeline, from_status)
    if delta < 0:
        return Transition.ROLLBACK
    if delta == 0:
        return Transition.LATERAL
    return Transition.FORWARD


def level_rank(level: str | None) -> int:
    """Rank of a support level; -1 when unknown or unset."""
    if level in SUPPORT_LEVELS:
        return SUPPORT_LEVELS.index(level)
    return -1


def is_escalation(from_level: str | None, to_level: str | None) -> bool:
    """True when the support tier moves strictly upward (L1 → L2, L2 → L4, ...)."""
    return level_rank(from_level) >= 0 and level_rank(to_level) > level_rank(from_level)
