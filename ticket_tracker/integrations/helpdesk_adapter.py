"""Freshdesk / Freshservice adapters (REST API v2).

Both products share the same ticket API shape, so one base class carries
the paging, status and priority mapping; the two subclasses differ in
which item types they emit and which support tier they start from:

  FreshdeskAdapter      customer service requests, tier L1
  FreshserviceAdapter   internal incidents + service requests, tier L2+

Neither helpdesk has a project concept. Each domain is exposed as a
single ExternalProject so analytics can still group by project.

Paging: per_page=100, at most ``max_pages`` pages, ``updated_since`` =
start of the current year. 429 responses are handled by the gateway
(Retry-After).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

import requests
from requests.auth import HTTPBasicAuth

from ticket_tracker.core.exceptions import SourceUnreachableError
from ticket_tracker.integrations.base import (
    BaseSourceAdapter,
    ExternalProject,
    HistoryEntry,
    NormalizedWorkItem,
    parse_timestamp,
)
from ticket_tracker.integrations.gateway import SourceGateway

logger = logging.getLogger(__name__)

_PER_PAGE = 100
_DEFAULT_MAX_PAGES = 100

# Freshdesk/Freshservice numeric status codes
_STATUS_MAP = {
    2: "open",
    3: "pending",
    4: "resolved",
    5: "closed",
    6: "pending",      # waiting on customer
    7: "pending",      # waiting on third party
}

_STATUS_NAME_MAP = {
    "open": "open",
    "pending": "pending",
    "resolved": "resolved",
    "closed": "closed",
    "waiting on customer": "pending",
    "waiting on third party": "pending",
}

_PRIORITY_MAP = {1: "Low", 2: "Medium", 3: "High", 4: "Critical"}

_STATUS_ACTIVITY = re.compile(r"status\s+(?:as|to)\s+\"?([A-Za-z ]+?)\"?\s*$", re.IGNORECASE)


def map_status_code(code) -> str | None:
    try:
        return _STATUS_MAP.get(int(code))
    except (TypeError, ValueError):
        return None


def map_priority_code(code) -> str:
    try:
        return _PRIORITY_MAP.get(int(code), "Medium")
    except (TypeError, ValueError):
        return "Medium"


class HelpdeskAdapter(BaseSourceAdapter):
    """Shared Freshdesk/Freshservice behaviour.

    Args:
        domain: e.g. "acme.freshdesk.com".
        api_key: API key, sent as the basic-auth username with password "X".
        max_pages: Upper bound on /tickets pages per run.
    """

    base_level = "L1"

    def __init__(
        self,
        domain: str,
        api_key: str,
        *,
        max_pages: int = _DEFAULT_MAX_PAGES,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__()
        self.domain = domain.strip().removeprefix("https://").rstrip("/")
        self.api_url = f"https://{self.domain}/api/v2"
        self.max_pages = max_pages
        self.gateway = SourceGateway(
            self.source_type,
            auth=HTTPBasicAuth(api_key, "X"),
            timeout=timeout,
            session=session,
        )

    @property
    def project_key(self) -> str:
        return self.source_type.upper()

    # ── Contract ──────────────────────────────────────────────────────────────

    def authenticate(self) -> bool:
        result = self.gateway.request("GET", f"{self.api_url}/tickets", params={"per_page": 1})
        if result.ok:
            return True
        if result.auth_failed:
            return False
        raise SourceUnreachableError(self.source_type, result.error or "probe failed",
                                     result.status_code)

    def list_projects(self) -> list[ExternalProject]:
        return [ExternalProject(key=self.project_key, name=self.domain)]

    def list_work_items(self, project_key: str) -> list[NormalizedWorkItem]:
        updated_since = datetime(datetime.now(timezone.utc).year, 1, 1, tzinfo=timezone.utc)
        items: list[NormalizedWorkItem] = []
        for page in range(1, self.max_pages + 1):
            data = self.gateway.get_json(
                f"{self.api_url}/tickets",
                params={
                    "per_page": _PER_PAGE,
                    "page": page,
                    "updated_since": updated_since.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "include": "requester",
                },
            )
            tickets = data.get("tickets", []) if isinstance(data, dict) else data
            for raw in tickets:
                item = self._normalize(raw, project_key)
                if item is not None:
                    items.append(item)
            if len(tickets) < _PER_PAGE:
                break
        logger.info("%s: fetched %d tickets", self.source_type, len(items),
                    extra={"source_type": self.source_type})
        return items

    def list_history(self, external_key: str) -> list[HistoryEntry]:
        return []

    # ── Normalisation ─────────────────────────────────────────────────────────

    def item_type_for(self, raw: dict) -> str:
        return "service_request"

    def support_level_for(self, raw: dict) -> str:
        return self.base_level

    def _normalize(self, raw: dict, project_key: str) -> NormalizedWorkItem | None:
        ticket_id = raw.get("id")
        if ticket_id is None:
            self.reject(None, "ticket payload has no id")
            return None
        key = str(ticket_id)
        status = map_status_code(raw.get("status"))
        if status is None:
            self.reject(key, f"unknown status code {raw.get('status')!r}")
            return None
        requester = raw.get("requester") or {}
        return NormalizedWorkItem(
            external_key=key,
            source=self.source_type,
            item_type=self.item_type_for(raw),
            title=(raw.get("subject") or "Untitled")[:500],
            status=status,
            priority=map_priority_code(raw.get("priority")),
            project_key=project_key,
            assignee=raw.get("responder_name") or (str(raw["responder_id"]) if raw.get("responder_id") else None),
            support_level=self.support_level_for(raw),
            actor=requester.get("name"),
            created_at=parse_timestamp(raw.get("created_at")),
            updated_at=parse_timestamp(raw.get("updated_at")),
        )

    def close(self) -> None:
        self.gateway.session.close()


class FreshdeskAdapter(HelpdeskAdapter):
    """Customer-facing helpdesk; every ticket is an L1 service request."""

    source_type = "freshdesk"
    base_level = "L1"


class FreshserviceAdapter(HelpdeskAdapter):
    """Internal service desk; incidents and service requests from tier L2 up.

    Tier heuristics: a tag ``l3``/``l4`` wins; a linked Jira ticket in the
    custom fields means engineering owns it (L3); otherwise L2.
    """

    source_type = "freshservice"
    base_level = "L2"

    def item_type_for(self, raw: dict) -> str:
        return "incident" if (raw.get("type") or "").lower() == "incident" else "service_request"

    def support_level_for(self, raw: dict) -> str:
        tags = {str(t).strip().lower() for t in raw.get("tags") or []}
        if "l4" in tags:
            return "L4"
        if "l3" in tags:
            return "L3"
        custom = raw.get("custom_fields") or {}
        if custom.get("jira_ticket") or custom.get("linked_jira_ticket"):
            return "L3"
        return self.base_level

    def list_history(self, external_key: str) -> list[HistoryEntry]:
        data = self.gateway.get_json(f"{self.api_url}/tickets/{external_key}/activities")
        activities = data.get("activities", []) if isinstance(data, dict) else data
        entries: list[HistoryEntry] = []
        previous = "open"
        for activity in sorted(activities, key=lambda a: a.get("created_at") or ""):
            texts = [activity.get("content") or ""] + list(activity.get("sub_contents") or [])
            for text in texts:
                match = _STATUS_ACTIVITY.search(str(text).strip())
                if not match:
                    continue
                to_status = _STATUS_NAME_MAP.get(match.group(1).strip().lower())
                ts = parse_timestamp(activity.get("created_at"))
                if to_status is None or ts is None:
                    continue
                entries.append(HistoryEntry(
                    timestamp=ts,
                    from_status=previous,
                    to_status=to_status,
                    actor=(activity.get("actor") or {}).get("name"),
                ))
                previous = to_status
        return entries
