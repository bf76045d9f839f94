"""
Per-blueprint request limits (Flask-Limiter, keyed by remote address).

The Limiter in ``create_app`` carries no default limit; ``init_rate_limits``
attaches one per blueprint after registration. Each limit can be
overridden through config, e.g. ``RATELIMIT_SYNC_TRIGGER = "5/minute"``.
"""

import logging

logger = logging.getLogger(__name__)

# (config key, default, blueprints, methods or None for all)
LIMIT_RULES = (
    ("RATELIMIT_SYNC_TRIGGER", "10/minute", ("sync",), ["POST"]),
    ("RATELIMIT_WRITE", "60/minute", ("work_items", "escalations", "scheduler"),
     ["POST", "PUT", "PATCH", "DELETE"]),
    ("RATELIMIT_ANALYTICS", "200/minute", ("analytics",), None),
)


def init_rate_limits(app, limiter):
    """Attach limits to registered blueprints; skipped entirely under TESTING."""
    if app.config.get("TESTING"):
        return

    applied = {}
    for key, default, blueprint_names, methods in LIMIT_RULES:
        rate = app.config.get(key, default)
        for name in blueprint_names:
            blueprint = app.blueprints.get(name)
            if blueprint is None:
                continue
            limiter.limit(rate, methods=methods)(blueprint)
            applied[name] = rate

    health = app.blueprints.get("health_bp")
    if health is not None:
        limiter.exempt(health)

    logger.info("Rate limits applied: %s", ", ".join(f"{k}={v}" for k, v in applied.items()))
