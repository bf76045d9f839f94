"""ticket_tracker.integrations: external source adapters.

All outbound HTTP calls to Jira / Freshdesk / Freshservice go through
``gateway.SourceGateway``, never via bare `requests` calls in services or
blueprints. Every call is:
  - Authenticated (basic auth injected by the adapter)
  - Retried with exponential backoff
  - Circuit-broken to prevent cascade failures
  - Bounded by a timeout

Modules:
  base.py              BaseSourceAdapter contract + normalised value objects
  gateway.py           SourceGateway (retry, 429, circuit breaker)
  jira_adapter.py      JiraAdapter
  helpdesk_adapter.py  FreshdeskAdapter, FreshserviceAdapter
  stub_adapter.py      StubAdapter (SOURCE_ADAPTER_MODE=stub)
  factory.py           build_source_adapter()
"""
