"""In-process stub adapter.

Selected when SOURCE_ADAPTER_MODE=stub (development, demos, tests). Serves
deterministic fixture data with the same contract as the live adapters.

Fixture shape::

    {
        "projects": [ExternalProject, ...],
        "items": {"PROJ": [NormalizedWorkItem, ...]},
        "history": {"PROJ-1": [HistoryEntry, ...]},
    }

``unreachable`` makes every call raise SourceUnreachableError, which is how
tests drive the job-failure path.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ticket_tracker.core.exceptions import SourceUnreachableError
from ticket_tracker.integrations.base import (
    BaseSourceAdapter,
    ExternalProject,
    HistoryEntry,
    NormalizedWorkItem,
)

logger = logging.getLogger(__name__)

_SEED_CREATED = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def default_fixture(source_type: str) -> dict:
    """Small, stable data set per source type."""
    match source_type:
        case "jira":
            project = ExternalProject(key="DEMO", name="Demo Delivery", lead="Ada Lovelace")
            items = [
                NormalizedWorkItem(
                    external_key="DEMO-001", source="jira", item_type="ticket",
                    title="Payment gateway retry policy", status="in_progress",
                    priority="High", project_key="DEMO", assignee="Ada Lovelace",
                    complexity=2, risk=1, created_at=_SEED_CREATED,
                ),
                NormalizedWorkItem(
                    external_key="DEMO-002", source="jira", item_type="ticket",
                    title="Settlement report export", status="todo",
                    priority="Medium", project_key="DEMO", created_at=_SEED_CREATED,
                ),
                NormalizedWorkItem(
                    external_key="DEMO-003", source="jira", item_type="ticket",
                    title="Audit trail for refunds", status="live",
                    priority="Low", project_key="DEMO", assignee="Grace Hopper",
                    complexity=3, risk=2, created_at=_SEED_CREATED,
                ),
            ]
        case "freshdesk":
            project = ExternalProject(key="FRESHDESK", name="stub.freshdesk.com")
            items = [
                NormalizedWorkItem(
                    external_key="1001", source="freshdesk", item_type="service_request",
                    title="Cannot reset password", status="open", priority="Medium",
                    project_key="FRESHDESK", support_level="L1", created_at=_SEED_CREATED,
                ),
            ]
        case "freshservice":
            project = ExternalProject(key="FRESHSERVICE", name="stub.freshservice.com")
            items = [
                NormalizedWorkItem(
                    external_key="2001", source="freshservice", item_type="incident",
                    title="Batch settlement job failed", status="open", priority="Critical",
                    project_key="FRESHSERVICE", support_level="L2", created_at=_SEED_CREATED,
                ),
            ]
        case _:
            return {"projects": [], "items": {}, "history": {}}
    return {"projects": [project], "items": {project.key: items}, "history": {}}


class StubAdapter(BaseSourceAdapter):
    """Deterministic adapter backed by an in-memory fixture."""

    def __init__(
        self,
        source_type: str,
        fixture: dict | None = None,
        *,
        unreachable: bool = False,
        credentials_valid: bool = True,
    ) -> None:
        super().__init__()
        self.source_type = source_type
        self.fixture = fixture if fixture is not None else default_fixture(source_type)
        self.unreachable = unreachable
        self.credentials_valid = credentials_valid

    def _check(self) -> None:
        if self.unreachable:
            raise SourceUnreachableError(self.source_type, "stub configured as unreachable")

    def authenticate(self) -> bool:
        self._check()
        return self.credentials_valid

    def list_projects(self) -> list[ExternalProject]:
        self._check()
        return list(self.fixture.get("projects", []))

    def list_work_items(self, project_key: str) -> list[NormalizedWorkItem]:
        self._check()
        return list(self.fixture.get("items", {}).get(project_key, []))

    def list_history(self, external_key: str) -> list[HistoryEntry]:
        self._check()
        return sorted(self.fixture.get("history", {}).get(external_key, []))
