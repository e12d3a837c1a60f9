"""
JWT Auth Middleware - parses the bearer token, sets g.jwt_*.

    Authorization: Bearer <token>  →  g.jwt_user_id, g.jwt_role

The hook never rejects a request by itself; endpoints that need an
authenticated caller use ``kpiboard.middleware.auth.require_auth``.
"""

import logging

import jwt as pyjwt
from flask import g, request

from kpiboard.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT parsing entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_role = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected access token on %s: %s", path, exc)
            return

        try:
            g.jwt_user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            logger.info("Access token without a numeric subject on %s", path)
            return
        g.jwt_role = payload.get("role")
