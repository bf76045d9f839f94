"""Adapter construction.

Live vs stub is decided here, once, from configuration; callers never
type-check adapters at runtime.
"""

from __future__ import annotations

from typing import Mapping

from ticket_tracker.core.exceptions import ValidationError
from ticket_tracker.integrations.base import BaseSourceAdapter
from ticket_tracker.integrations.helpdesk_adapter import FreshdeskAdapter, FreshserviceAdapter
from ticket_tracker.integrations.jira_adapter import JiraAdapter
from ticket_tracker.integrations.stub_adapter import StubAdapter

SOURCE_TYPES = ("jira", "freshdesk", "freshservice")


def _require(config: Mapping, *names: str) -> None:
    missing = [n for n in names if not config.get(n)]
    if missing:
        raise ValidationError(
            f"Missing configuration for live adapter: {', '.join(missing)}",
            details={"missing": missing},
        )


def build_source_adapter(source_type: str, config: Mapping) -> BaseSourceAdapter:
    """Construct the adapter for ``source_type`` according to SOURCE_ADAPTER_MODE.

    Args:
        source_type: jira, freshdesk or freshservice.
        config: Flask app.config (or any mapping with the same keys).

    Raises:
        ValidationError: unknown source/mode, or live mode without credentials.
    """
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"Unknown source type '{source_type}'. Must be one of: {', '.join(SOURCE_TYPES)}"
        )

    mode = (config.get("SOURCE_ADAPTER_MODE") or "live").lower()
    timeout = int(config.get("SOURCE_REQUEST_TIMEOUT", 30))

    match (mode, source_type):
        case ("stub", _):
            return StubAdapter(source_type)
        case ("live", "jira"):
            _require(config, "JIRA_BASE_URL", "JIRA_EMAIL", "JIRA_API_TOKEN")
            keys = (config.get("JIRA_PROJECT_KEYS") or "").split(",")
            return JiraAdapter(
                config["JIRA_BASE_URL"],
                config["JIRA_EMAIL"],
                config["JIRA_API_TOKEN"],
                project_keys=keys,
                timeout=timeout,
            )
        case ("live", "freshdesk"):
            _require(config, "FRESHDESK_DOMAIN", "FRESHDESK_API_KEY")
            return FreshdeskAdapter(
                config["FRESHDESK_DOMAIN"], config["FRESHDESK_API_KEY"], timeout=timeout,
            )
        case ("live", "freshservice"):
            _require(config, "FRESHSERVICE_DOMAIN", "FRESHSERVICE_API_KEY")
            return FreshserviceAdapter(
                config["FRESHSERVICE_DOMAIN"], config["FRESHSERVICE_API_KEY"], timeout=timeout,
            )
        case _:
            raise ValidationError(
                f"Unknown SOURCE_ADAPTER_MODE '{mode}'. Must be one of: live, stub"
            )
