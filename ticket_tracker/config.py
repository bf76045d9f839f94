"""
Ticket Tracker
Environment configuration.

``create_app`` picks one of the classes below by APP_ENV (development,
testing, production). Every setting reads its environment variable of the
same name; the classes only change defaults.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'ticket_tracker_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _database_url(fallback=None):
    # Hosted Postgres often hands out postgres://, which SQLAlchemy 2 rejects
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url or fallback


class Config:
    """Defaults shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Flask-Limiter storage; point at redis:// to share counters between workers
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Capability checks on mutating endpoints
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")

    # ── Source adapters ──────────────────────────────────────────────────
    # "live" talks to the real systems, "stub" serves deterministic fixtures
    SOURCE_ADAPTER_MODE = os.getenv("SOURCE_ADAPTER_MODE", "live")
    SOURCE_REQUEST_TIMEOUT = int(os.getenv("SOURCE_REQUEST_TIMEOUT", "30"))

    JIRA_ENABLED = _flag("JIRA_ENABLED", "true")
    JIRA_BASE_URL = os.getenv("JIRA_BASE_URL", "")
    JIRA_EMAIL = os.getenv("JIRA_EMAIL", "")
    JIRA_API_TOKEN = os.getenv("JIRA_API_TOKEN", "")
    JIRA_PROJECT_KEYS = os.getenv("JIRA_PROJECT_KEYS", "")

    FRESHDESK_ENABLED = _flag("FRESHDESK_ENABLED")
    FRESHDESK_DOMAIN = os.getenv("FRESHDESK_DOMAIN", "")
    FRESHDESK_API_KEY = os.getenv("FRESHDESK_API_KEY", "")

    FRESHSERVICE_ENABLED = _flag("FRESHSERVICE_ENABLED")
    FRESHSERVICE_DOMAIN = os.getenv("FRESHSERVICE_DOMAIN", "")
    FRESHSERVICE_API_KEY = os.getenv("FRESHSERVICE_API_KEY", "")

    # ── Sync orchestration ───────────────────────────────────────────────
    SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "50"))
    SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "3600"))
    SYNC_BACKFILL_HISTORY = _flag("SYNC_BACKFILL_HISTORY", "true")
    # API-triggered syncs run on a worker thread; testing runs them inline
    SYNC_RUN_IN_BACKGROUND = _flag("SYNC_RUN_IN_BACKGROUND", "true")
    SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED")

    # ── Analytics ────────────────────────────────────────────────────────
    SLA_AT_RISK_LOOKAHEAD_MINUTES = int(os.getenv("SLA_AT_RISK_LOOKAHEAD_MINUTES", "60"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    SOURCE_ADAPTER_MODE = os.getenv("SOURCE_ADAPTER_MODE", "stub")


class TestingConfig(Config):
    """In-memory SQLite, stub adapters, every source on, no threads."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False

    SOURCE_ADAPTER_MODE = "stub"
    JIRA_ENABLED = True
    FRESHDESK_ENABLED = True
    FRESHSERVICE_ENABLED = True
    SYNC_BATCH_SIZE = 2
    SYNC_BACKFILL_HISTORY = False
    SYNC_RUN_IN_BACKGROUND = False
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Requires DATABASE_URL and SECRET_KEY; instantiated so the check runs at boot."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    # Explicit origins only
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", "true")

    SQLALCHEMY_ENGINE_OPTIONS = dict(
        Config.SQLALCHEMY_ENGINE_OPTIONS,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=10,
        pool_timeout=20,
        # Sync batches commit well under this; a stuck query is a bug
        connect_args={"options": "-c statement_timeout=30000"},
    )

    def __init__(self):
        missing = [name for name, value in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
        ) if not value]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
