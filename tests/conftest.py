"""
Fixtures shared by the Ticket Tracker tests.

One ``testing`` app serves the whole run: in-memory SQLite, stub source
adapters, syncs executed inline and no scheduler thread. Each test runs
inside a pushed app context and gets a freshly recreated schema.
"""

from datetime import datetime, timezone

import pytest

from ticket_tracker import create_app
from ticket_tracker.integrations.base import NormalizedWorkItem
from ticket_tracker.integrations.gateway import SourceGateway
from ticket_tracker.models import db as _db

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def app():
    return create_app("testing")


@pytest.fixture(scope="session")
def _schema(app):
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _schema):
    """App context for the test body; schema rebuilt afterwards."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture(autouse=True)
def _closed_circuits():
    # Breaker state lives on the class
    SourceGateway.reset_circuits()
    yield
    SourceGateway.reset_circuits()


@pytest.fixture()
def client(app):
    return app.test_client()


def make_item(external_key="PAY-1", **overrides) -> NormalizedWorkItem:
    """Jira ticket payload with sensible defaults; override any field."""
    fields = {
        "external_key": external_key,
        "source": "jira",
        "item_type": "ticket",
        "title": f"Ticket {external_key}",
        "status": "todo",
        "priority": "Medium",
        "project_key": "PAY",
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    fields.update(overrides)
    return NormalizedWorkItem(**fields)


@pytest.fixture()
def item():
    """Factory fixture: ``item("PAY-7", status="review")``."""
    return make_item
