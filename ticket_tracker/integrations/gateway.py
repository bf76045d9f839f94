"""
Outbound HTTP for the source adapters.

Jira, Freshdesk and Freshservice are only ever called through
SourceGateway, which gives every call the same treatment:

  - timeout on each attempt (SOURCE_REQUEST_TIMEOUT)
  - up to two retries after 1 s and 4 s
  - 401/403 returned at once, since retrying bad credentials cannot help
  - 429 waits for Retry-After (capped at 60 s) and does not count as a failure
  - five failures of one source type within 60 s pause that source for 30 s

Breaker state is shared per source type across gateway instances and
worker threads. Tests hand in a mock ``session``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

import requests

from ticket_tracker.core.exceptions import SourceUnreachableError

logger = logging.getLogger(__name__)

BREAKER_THRESHOLD = 5
BREAKER_WINDOW_SECONDS = 60
BREAKER_COOLDOWN_SECONDS = 30

BACKOFF_SECONDS = (1, 4)
MAX_RETRY_AFTER_SECONDS = 60
DEFAULT_TIMEOUT = 30


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one logical call; ``status_code`` is None for network failures."""

    ok: bool
    status_code: int | None = None
    data: Any = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def auth_failed(self) -> bool:
        return self.status_code in (401, 403)


class _Breaker:
    """Failure timestamps for one source type (monotonic clock)."""

    def __init__(self):
        self.failures: list[float] = []
        self.open_until = 0.0

    def prune(self, now: float) -> None:
        self.failures = [t for t in self.failures if now - t < BREAKER_WINDOW_SECONDS]


class SourceGateway:
    """HTTP client for one source type.

        gw = SourceGateway("jira", auth=(email, token), timeout=30)
        projects = gw.get_json(f"{base}/rest/api/3/project")
    """

    _cb_state: dict[str, _Breaker] = {}
    _cb_lock = threading.Lock()

    def __init__(self, source_type: str, *, auth: Any = None, headers: dict | None = None,
                 timeout: int = DEFAULT_TIMEOUT, session: requests.Session | None = None):
        self.source_type = source_type
        self.timeout = timeout
        self._auth = auth
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _log(self, level, msg, *args):
        logger.log(level, msg, *args, extra={"source_type": self.source_type})

    # ── Breaker ──────────────────────────────────────────────────────────

    @classmethod
    def reset_circuits(cls) -> None:
        with cls._cb_lock:
            cls._cb_state.clear()

    def _is_open(self) -> bool:
        with self._cb_lock:
            breaker = self._cb_state.get(self.source_type)
            return breaker is not None and time.monotonic() < breaker.open_until

    def _note_failure(self) -> None:
        now = time.monotonic()
        with self._cb_lock:
            breaker = self._cb_state.setdefault(self.source_type, _Breaker())
            breaker.prune(now)
            breaker.failures.append(now)
            tripped = len(breaker.failures) >= BREAKER_THRESHOLD
            if tripped:
                breaker.open_until = now + BREAKER_COOLDOWN_SECONDS
        if tripped:
            self._log(logging.ERROR, "Circuit opened for %s after %d failures",
                      self.source_type, BREAKER_THRESHOLD)

    def _note_success(self) -> None:
        with self._cb_lock:
            self._cb_state.pop(self.source_type, None)

    # ── Requests ─────────────────────────────────────────────────────────

    @staticmethod
    def _retry_after(resp) -> int:
        try:
            seconds = int(resp.headers.get("Retry-After", "1"))
        except (TypeError, ValueError):
            seconds = 1
        return min(max(seconds, 0), MAX_RETRY_AFTER_SECONDS)

    @staticmethod
    def _body(resp):
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def request(self, method: str, url: str, *, params: dict | None = None,
                json_body: Any = None) -> GatewayResult:
        """Run one call with retries. Never raises; check ``.ok``."""
        kwargs: dict[str, Any] = {"headers": self._headers, "timeout": self.timeout}
        if self._auth is not None:
            kwargs["auth"] = self._auth
        if params:
            kwargs["params"] = params
        if json_body is not None:
            kwargs["json"] = json_body

        failure = GatewayResult(ok=False, error="Unknown error")
        attempts = len(BACKOFF_SECONDS) + 1
        for attempt in range(attempts):
            if self._is_open():
                return GatewayResult(
                    ok=False,
                    error=f"Circuit breaker is open; {self.source_type} calls temporarily suspended",
                )

            wait = BACKOFF_SECONDS[min(attempt, len(BACKOFF_SECONDS) - 1)]
            started = time.perf_counter()
            try:
                resp = self.session.request(method, url, **kwargs)
            except requests.Timeout:
                failure = GatewayResult(ok=False, error=f"Request timed out after {self.timeout}s")
                self._note_failure()
            except requests.RequestException as exc:
                failure = GatewayResult(ok=False, error=str(exc)[:500])
                self._note_failure()
            else:
                elapsed = int((time.perf_counter() - started) * 1000)
                if resp.ok:
                    self._note_success()
                    return GatewayResult(ok=True, status_code=resp.status_code,
                                         data=self._body(resp), duration_ms=elapsed)

                failure = GatewayResult(ok=False, status_code=resp.status_code,
                                        error=f"HTTP {resp.status_code}: {resp.text[:500]}",
                                        duration_ms=elapsed)
                if failure.auth_failed:
                    self._log(logging.WARNING, "%s rejected credentials (%d) for %s",
                              self.source_type, resp.status_code, url)
                    return failure
                if resp.status_code == 429:
                    wait = self._retry_after(resp)
                else:
                    self._note_failure()

            self._log(logging.WARNING, "%s %s attempt %d/%d failed: %s",
                      method, url, attempt + 1, attempts, failure.error)
            if attempt + 1 < attempts:
                time.sleep(wait)

        return failure

    def call_or_raise(self, method: str, url: str, **kwargs):
        """``request`` that raises SourceUnreachableError instead of returning a failure."""
        result = self.request(method, url, **kwargs)
        if not result.ok:
            raise SourceUnreachableError(self.source_type, result.error or "request failed",
                                         status_code=result.status_code)
        return result.data

    def get_json(self, url: str, params: dict | None = None):
        return self.call_or_raise("GET", url, params=params)

    def post_json(self, url: str, body: dict):
        return self.call_or_raise("POST", url, json_body=body)
