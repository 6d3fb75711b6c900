"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "LogEntry not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return api_error(E.INVALID_TRANSITION, str(exc), details=exc.to_details())
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • ERR_WORKFLOW_ prefix for entry review / signature workflow errors
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Permissions – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    INVALID_CREDENTIALS = "ERR_INVALID_CREDENTIALS"

    # Workflow – HTTP 409
    INVALID_TRANSITION = "ERR_WORKFLOW_INVALID_TRANSITION"
    MISSING_TASK = "ERR_WORKFLOW_MISSING_TASK"
    CONCURRENT_MODIFICATION = "ERR_WORKFLOW_CONCURRENT_MODIFICATION"

    # Upstream – HTTP 502
    DOCUMENT_STORE = "ERR_DOCUMENT_STORE"

    # Rate limiting – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.INVALID_CREDENTIALS: 403,
    E.INVALID_TRANSITION: 409,
    E.MISSING_TASK: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.DOCUMENT_STORE: 502,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (action, current status, reason, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
