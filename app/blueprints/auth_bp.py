"""
Auth Blueprint — JWT authentication endpoints.

  POST /api/v1/auth/login       — Email + password → JWT pair
  POST /api/v1/auth/refresh     — Refresh token → new access token
  GET  /api/v1/auth/me          — Current user profile
"""

import jwt as pyjwt
from flask import Blueprint, jsonify, request

from app.middleware.jwt_auth import current_user_id
from app.services.jwt_service import (
    decode_refresh_token,
    generate_access_token,
    generate_token_pair,
)
from app.services.user_service import UserServiceError, authenticate_user, get_user_by_id
from app.utils.errors import E, api_error

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Authenticate with email + password, return JWT pair.

    Body: { "email": "...", "password": "..." }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return api_error(E.VALIDATION_REQUIRED, "Email and password are required")

    try:
        user = authenticate_user(email, password)
    except UserServiceError as e:
        code = E.UNAUTHORIZED if e.status_code == 401 else E.FORBIDDEN
        return api_error(code, e.message, status=e.status_code)

    role = user.role
    tokens = generate_token_pair(user.id, role.value if role else None)
    return jsonify({**tokens, "user": user.to_dict()}), 200


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/refresh
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    """
    Exchange a refresh token for a new access token.

    Body: { "refresh_token": "..." }
    """
    data = request.get_json(silent=True) or {}
    token = data.get("refresh_token") or ""
    if not token:
        return api_error(E.VALIDATION_REQUIRED, "refresh_token is required")

    try:
        payload = decode_refresh_token(token)
    except pyjwt.ExpiredSignatureError:
        return api_error(E.UNAUTHORIZED, "Refresh token has expired")
    except pyjwt.InvalidTokenError:
        return api_error(E.UNAUTHORIZED, "Invalid refresh token")

    user = get_user_by_id(int(payload["sub"]))
    if not user or user.status != "active":
        return api_error(E.UNAUTHORIZED, "User not found or inactive")

    role = user.role
    return jsonify({
        "access_token": generate_access_token(user.id, role.value if role else None),
        "token_type": "Bearer",
    }), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/me
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/me", methods=["GET"])
def me():
    """Get current user profile."""
    uid = current_user_id()
    if uid is None:
        return api_error(E.UNAUTHORIZED, "Authentication required")
    user = get_user_by_id(uid)
    if not user:
        return api_error(E.NOT_FOUND, "User not found")
    return jsonify(user.to_dict()), 200
