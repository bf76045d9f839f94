"""Tests for the escalation sync pass."""

from datetime import timedelta

from ticket_tracker.models.work_item import Escalation
from ticket_tracker.services import escalation_service as svc
from ticket_tracker.services import reconciliation_service as rs

from conftest import BASE_TIME


def _incident(item, key="2001", **overrides):
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


def test_no_movements_nothing_to_do():
    assert svc.sync_escalations() == {"scanned": 0, "created": 0}


def test_tier_raise_creates_escalation(item):
    rs.reconcile([_incident(item)])
    rs.reconcile([_incident(item, support_level="L3", actor="Agent",
                            updated_at=BASE_TIME + timedelta(hours=2))])

    assert svc.sync_escalations() == {"scanned": 1, "created": 1}

    esc = Escalation.query.one()
    assert (esc.from_level, esc.to_level) == ("L2", "L3")
    assert esc.escalated_by == "Agent"
    assert esc.sla_breached is False
    assert esc.movement_id is not None


def test_repeat_runs_are_idempotent(item):
    rs.reconcile([_incident(item)])
    rs.reconcile([_incident(item, support_level="L3", updated_at=BASE_TIME + timedelta(hours=1))])
    svc.sync_escalations()

    assert svc.sync_escalations() == {"scanned": 1, "created": 0}
    assert Escalation.query.count() == 1


def test_escalation_after_due_date_is_breached(item):
    rs.reconcile([_incident(item)])
    rs.reconcile([_incident(item, status="pending", support_level="L4",
                            updated_at=BASE_TIME + timedelta(hours=30))])

    svc.sync_escalations()

    esc = Escalation.query.one()
    assert (esc.from_level, esc.to_level) == ("L2", "L4")
    assert esc.sla_breached is True


def test_list_filters(item):
    rs.reconcile([_incident(item), _incident(item, key="2002")])
    rs.reconcile([
        _incident(item, support_level="L3", updated_at=BASE_TIME + timedelta(hours=1)),
        _incident(item, key="2002", support_level="L4", updated_at=BASE_TIME + timedelta(hours=2)),
    ])
    svc.sync_escalations()

    everything = svc.list_escalations()
    assert [e["external_key"] for e in everything] == ["2002", "2001"]
    assert [e["external_key"] for e in svc.list_escalations(to_level="L3")] == ["2001"]
    assert svc.list_escalations(limit=1)[0]["to_level"] == "L4"
