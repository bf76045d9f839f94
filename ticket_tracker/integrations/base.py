"""Source adapter contract and the normalised shapes adapters produce.

Every external system (Jira, Freshdesk, Freshservice, and the in-process
stub) implements BaseSourceAdapter. The reconciliation service only ever
sees NormalizedWorkItem / HistoryEntry / ExternalProject, never raw
provider JSON.

Error contract:
  SourceUnreachableError  raised by any method when the system as a whole
                          cannot be used (network, credentials, circuit open).
  MalformedItemError      recorded per raw payload that cannot be
                          normalised; the adapter skips the payload and
                          keeps it in ``rejected`` for the run report.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ticket_tracker.core.exceptions import MalformedItemError


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExternalProject:
    key: str
    name: str
    lead: str | None = None


@dataclass(frozen=True)
class NormalizedWorkItem:
    """One work item as reported by a source, already mapped to canonical values.

    ``complexity`` / ``risk`` / ``support_level`` are None when the source
    does not carry them; the local value is then kept (or defaulted on
    creation).
    """

    external_key: str
    source: str
    item_type: str
    title: str
    status: str
    priority: str = "Medium"
    project_key: str | None = None
    assignee: str | None = None
    complexity: int | None = None
    risk: int | None = None
    support_level: str | None = None
    actor: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, order=True)
class HistoryEntry:
    timestamp: datetime
    from_status: str
    to_status: str
    actor: str | None = field(default=None, compare=False)


# ── Parsing helpers shared by adapters ────────────────────────────────────────

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_timestamp(value) -> datetime | None:
    """Parse provider timestamps ("…Z", "…+0000", "…+00:00") to aware UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _TZ_NO_COLON.sub(r"\1:\2", text)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ── Adapter base ──────────────────────────────────────────────────────────────


class BaseSourceAdapter(ABC):
    """Abstract adapter: one subclass per external system (plus the stub).

    Adapters are stateless between calls apart from ``rejected``, which
    collects MalformedItemError instances for the current run. The
    orchestrator drains it with ``pop_rejected()`` after each project.
    """

    source_type: str = ""

    def __init__(self) -> None:
        self.rejected: list[MalformedItemError] = []

    @abstractmethod
    def authenticate(self) -> bool:
        """Return True when credentials are accepted, False when rejected."""

    @abstractmethod
    def list_projects(self) -> list[ExternalProject]:
        """Return the projects (or project-like groupings) to sync."""

    @abstractmethod
    def list_work_items(self, project_key: str) -> list[NormalizedWorkItem]:
        """Return every work item of one project, normalised."""

    @abstractmethod
    def list_history(self, external_key: str) -> list[HistoryEntry]:
        """Return the status history of one item, oldest first."""

    def reject(self, external_key: str | None, message: str) -> None:
        self.rejected.append(MalformedItemError(external_key, message))

    def pop_rejected(self) -> list[MalformedItemError]:
        rejected, self.rejected = self.rejected, []
        return rejected

    def close(self) -> None:
        """Release network resources; default is a no-op."""
