"""Jira Cloud adapter (REST API v3).

Endpoints used:
  GET  /rest/api/3/myself                    credentials probe
  GET  /rest/api/3/project                   project discovery
  POST /rest/api/3/search/jql                issue search, nextPageToken paging
  GET  /rest/api/3/issue/{key}/changelog     status history, startAt paging

Jira status names are free text per workflow. map_status() folds them onto
the ticket pipeline with keyword heuristics; anything unrecognised lands on
``todo``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

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

_SEARCH_PAGE_SIZE = 50
_CHANGELOG_PAGE_SIZE = 100
_MAX_PAGES = 200                   # hard stop against runaway pagination
_LOOKBACK_DAYS = 365

_SEARCH_FIELDS = ["summary", "status", "assignee", "created", "updated", "priority", "issuetype"]

_PRIORITY_MAP = {
    "highest": "Critical",
    "critical": "Critical",
    "blocker": "Critical",
    "high": "High",
    "medium": "Medium",
    "low": "Low",
    "lowest": "Low",
    "trivial": "Low",
}


def map_status(name: str | None) -> str:
    """Fold a Jira workflow status name onto the ticket pipeline."""
    if not name:
        return "todo"
    s = name.strip().lower()

    if s in ("live", "done", "completed", "closed"):
        return "live"
    if "rollback" in s or "rolled back" in s:
        return "rollback"
    if "production ready" in s or "ready for deployment" in s:
        return "production_ready"
    if "cab" in s or "certification" in s:
        return "cab_ready"
    if s == "uat" or "user acceptance" in s:
        return "uat"
    if "security" in s:
        return "security_testing"
    if s == "qa" or s.startswith("qa ") or s.endswith(" qa") or "quality" in s:
        return "qa_test"
    if "ready to test" in s or "ready for test" in s:
        return "ready_to_test"
    if "devops" in s:
        return "devops"
    if "review" in s:
        return "review"
    if "blocked" in s or "impediment" in s:
        return "blocked"
    if "progress" in s or "doing" in s:
        return "in_progress"
    return "todo"


def map_priority(name: str | None) -> str:
    if not name:
        return "Medium"
    return _PRIORITY_MAP.get(name.strip().lower(), "Medium")


class JiraAdapter(BaseSourceAdapter):
    """Live Jira adapter.

    Args:
        base_url: Site URL, e.g. "https://acme.atlassian.net".
        email / api_token: Basic-auth credentials.
        project_keys: Optional whitelist; empty means every visible project.
    """

    source_type = "jira"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        project_keys: list[str] | None = None,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__()
        self.api_url = f"{base_url.rstrip('/')}/rest/api/3"
        self.project_keys = [k.strip() for k in (project_keys or []) if k.strip()]
        self.gateway = SourceGateway(
            "jira",
            auth=HTTPBasicAuth(email, api_token),
            timeout=timeout,
            session=session,
        )

    # ── Contract ──────────────────────────────────────────────────────────────

    def authenticate(self) -> bool:
        result = self.gateway.request("GET", f"{self.api_url}/myself")
        if result.ok:
            return True
        if result.auth_failed:
            return False
        raise SourceUnreachableError("jira", result.error or "probe failed", result.status_code)

    def list_projects(self) -> list[ExternalProject]:
        data = self.gateway.get_json(f"{self.api_url}/project")
        projects = []
        for raw in data if isinstance(data, list) else data.get("values", []):
            key = raw.get("key")
            if not key:
                continue
            if self.project_keys and key not in self.project_keys:
                continue
            lead = (raw.get("lead") or {}).get("displayName")
            projects.append(ExternalProject(key=key, name=raw.get("name") or key, lead=lead))
        logger.info("Jira: %d projects selected", len(projects), extra={"source_type": "jira"})
        return projects

    def list_work_items(self, project_key: str) -> list[NormalizedWorkItem]:
        jql = (
            f"project = '{project_key}' AND issuetype != 'Epic' "
            f"AND (updated >= -{_LOOKBACK_DAYS}d OR created >= -{_LOOKBACK_DAYS}d) "
            "ORDER BY updated DESC"
        )
        items: list[NormalizedWorkItem] = []
        next_token = None
        for _page in range(_MAX_PAGES):
            body = {"jql": jql, "maxResults": _SEARCH_PAGE_SIZE, "fields": _SEARCH_FIELDS}
            if next_token:
                body["nextPageToken"] = next_token
            data = self.gateway.post_json(f"{self.api_url}/search/jql", body)
            for raw in data.get("issues") or []:
                item = self._normalize(raw, project_key)
                if item is not None:
                    items.append(item)
            next_token = data.get("nextPageToken")
            if not next_token:
                break
        logger.info("Jira: fetched %d issues for %s", len(items), project_key,
                    extra={"source_type": "jira"})
        return items

    def list_history(self, external_key: str) -> list[HistoryEntry]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=_LOOKBACK_DAYS)
        entries: list[HistoryEntry] = []
        start_at = 0
        for _page in range(_MAX_PAGES):
            data = self.gateway.get_json(
                f"{self.api_url}/issue/{external_key}/changelog",
                params={"startAt": start_at, "maxResults": _CHANGELOG_PAGE_SIZE},
            )
            values = data.get("values") or []
            if not values:
                break
            for history in values:
                status_change = next(
                    (i for i in history.get("items") or [] if i.get("field") == "status"), None,
                )
                if status_change is None:
                    continue
                ts = parse_timestamp(history.get("created"))
                if ts is None or ts < cutoff:
                    continue
                entries.append(HistoryEntry(
                    timestamp=ts,
                    from_status=map_status(status_change.get("fromString")),
                    to_status=map_status(status_change.get("toString")),
                    actor=(history.get("author") or {}).get("displayName"),
                ))
            start_at += len(values)
            if start_at >= (data.get("total") or 0):
                break
        return sorted(entries)

    # ── Normalisation ─────────────────────────────────────────────────────────

    def _normalize(self, raw: dict, project_key: str) -> NormalizedWorkItem | None:
        key = raw.get("key")
        fields = raw.get("fields")
        if not key or not isinstance(fields, dict):
            self.reject(key, "issue payload missing key or fields")
            return None
        status_name = (fields.get("status") or {}).get("name")
        if not status_name:
            self.reject(key, "issue has no status")
            return None
        return NormalizedWorkItem(
            external_key=key,
            source="jira",
            item_type="ticket",
            title=(fields.get("summary") or "No Title")[:500],
            status=map_status(status_name),
            priority=map_priority((fields.get("priority") or {}).get("name")),
            project_key=project_key,
            assignee=(fields.get("assignee") or {}).get("displayName") or "Unassigned",
            created_at=parse_timestamp(fields.get("created")),
            updated_at=parse_timestamp(fields.get("updated")),
        )

    def close(self) -> None:
        self.gateway.session.close()
