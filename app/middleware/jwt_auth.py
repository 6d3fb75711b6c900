"""
JWT Auth Middleware — resolves the caller identity for every API request.

Priority order:
  1. JWT (Authorization: Bearer <token>)  →  g.jwt_user_id
  2. X-User-Id header, only when API_AUTH_ENABLED is "false" (dev / tests)

The resolved id lands in ``g.current_user_id``; blueprints read it through
``current_user_id()`` and answer 401 when it is missing.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from app.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)


# Paths that skip identity resolution entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/refresh",
    "/api/v1/health",
    "/static/",
)


def _header_identity_allowed() -> bool:
    return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() == "false"


def current_user_id():
    """Caller id for the current request, or None when unauthenticated."""
    return getattr(g, "current_user_id", None)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.current_user_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            try:
                payload = decode_access_token(token)
                g.jwt_user_id = int(payload["sub"])
                g.current_user_id = g.jwt_user_id
                return
            except pyjwt.ExpiredSignatureError:
                logger.debug("Expired access token on %s", path)
            except (pyjwt.InvalidTokenError, KeyError, ValueError):
                logger.debug("Invalid access token on %s", path)

        if _header_identity_allowed():
            raw = request.headers.get("X-User-Id")
            if raw:
                try:
                    g.current_user_id = int(raw)
                except ValueError:
                    logger.debug("Ignoring non-integer X-User-Id header: %r", raw)
