"""
Rate limiting configuration.

The Limiter instance is created in kpiboard/__init__.py with no default
limits; this module applies per-blueprint limits keyed by the
authenticated user when a token is present, otherwise by remote IP.

Usage:
    from kpiboard.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

BLUEPRINT_LIMITS = {
    "kpi": "120/minute",            # patch + upload traffic from the dashboard
    "discrepancy": "60/minute",
    "kpi_header": "60/minute",
    "role": "200/minute",
}


def rate_limit_key():
    """Dynamic rate limit key: JWT user id if available, else remote IP."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits are per caller (see ``rate_limit_key``); the health blueprint is
    exempt. Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured - %s",
        ", ".join(f"{name}: {limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )
