"""
Authentication decorator for KPI endpoints.

``require_auth`` turns the identity parsed by the JWT middleware into a
loaded ``User`` on ``g.current_user``; without one the request gets 401.

Usage:
    @kpi_bp.route("/kpis", methods=["GET"])
    @require_auth
    def list_kpis():
        caller = g.current_user
"""

import functools
import logging

from flask import g

from kpiboard.models import db
from kpiboard.models.auth import User
from kpiboard.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def require_auth(f):
    """Decorator: require a bearer token that resolves to an existing user."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user_id = getattr(g, "jwt_user_id", None)
        if user_id is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")

        user = db.session.get(User, user_id)
        if user is None:
            logger.warning("Token subject %s has no user row", user_id)
            return api_error(E.UNAUTHORIZED, "Unknown user")

        g.current_user = user
        return f(*args, **kwargs)

    return decorated
