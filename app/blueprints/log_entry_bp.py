"""
Logbook Blueprint — entry CRUD, lifecycle transitions and read views.

Endpoints:
  POST   /api/v1/log-entries                           — create (DRAFT)
  GET    /api/v1/log-entries                           — list (?status=&limit=&offset=)
  GET    /api/v1/log-entries/<id>                      — detail + signatures + permissions
  PATCH  /api/v1/log-entries/<id>                      — content / observations / assignees
  PUT    /api/v1/log-entries/<id>/signatories          — replace required signers
  POST   /api/v1/log-entries/<id>/sign                 — sign (password + consent)
  POST   /api/v1/log-entries/<id>/<action>             — other lifecycle transitions
  GET    /api/v1/log-entries/<id>/signatures           — reconciled participants
  GET    /api/v1/log-entries/<id>/permissions          — caller's permission flags
  GET    /api/v1/log-entries/<id>/history              — audit trail

Mutating endpoints accept ``expected_version`` in the body or an ``If-Match``
header; entry responses carry the current version as ``ETag``.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import page_args
from app.core.exceptions import (
    ConcurrentModificationConflict,
    InvalidCredentials,
    InvalidTransition,
    MissingTask,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from app.integrations.document_store import DocumentStoreError
from app.middleware.jwt_auth import current_user_id
from app.services import entry_lifecycle
from app.services import log_entry_service as svc
from app.services.credential_service import ConsentPayload
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date_input, parse_expected_version

logger = logging.getLogger(__name__)

log_entry_bp = Blueprint("log_entries", __name__, url_prefix="/api/v1")

# URL slug → lifecycle action ("sign" has its own rate-limited route)
ACTION_SLUGS = {
    action.replace("_", "-"): action
    for action in entry_lifecycle.TRANSITION_ACTIONS
    if action != "sign"
}


# ── Error handlers ────────────────────────────────────────────────────────────


@log_entry_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@log_entry_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@log_entry_bp.errorhandler(InvalidCredentials)
def _handle_invalid_credentials(error: InvalidCredentials):
    return api_error(E.INVALID_CREDENTIALS, str(error), details=error.to_details())


@log_entry_bp.errorhandler(PermissionDenied)
def _handle_permission_denied(error: PermissionDenied):
    return api_error(E.FORBIDDEN, str(error), details=error.to_details())


@log_entry_bp.errorhandler(InvalidTransition)
def _handle_invalid_transition(error: InvalidTransition):
    return api_error(E.INVALID_TRANSITION, str(error), details=error.to_details())


@log_entry_bp.errorhandler(MissingTask)
def _handle_missing_task(error: MissingTask):
    return api_error(E.MISSING_TASK, str(error), details=error.to_details())


@log_entry_bp.errorhandler(ConcurrentModificationConflict)
def _handle_conflict(error: ConcurrentModificationConflict):
    return api_error(E.CONCURRENT_MODIFICATION, str(error), details=error.to_details())


@log_entry_bp.errorhandler(DocumentStoreError)
def _handle_document_store(error: DocumentStoreError):
    logger.error("Document store failure on %s: %s", request.path, error)
    return api_error(E.DOCUMENT_STORE, "Signature could not be applied to the document")


# ── Request helpers ───────────────────────────────────────────────────────────


def _caller_required() -> tuple[int | None, tuple | None]:
    uid = current_user_id()
    if uid is None:
        return None, api_error(E.UNAUTHORIZED, "Authentication required")
    return uid, None


def _expected_version(data: dict) -> tuple[int | None, tuple | None]:
    try:
        return parse_expected_version(data), None
    except ValueError as e:
        return None, api_error(E.VALIDATION_INVALID, str(e))


def _with_version(payload: dict, version, status: int = 200):
    resp = jsonify(payload)
    resp.status_code = status
    if version is not None:
        resp.headers["ETag"] = f'"{version}"'
    return resp


def _content_fields(data: dict) -> tuple[dict | None, tuple | None]:
    """Copy the writable fields, parsing ``entry_date``."""
    out = {
        k: data[k]
        for k in (
            "title", "description", "contractor_observations",
            "interventoria_observations", "assignee_ids",
        )
        if k in data
    }
    if "entry_date" in data:
        try:
            out["entry_date"] = parse_date_input(data["entry_date"])
        except ValueError as e:
            return None, api_error(E.VALIDATION_INVALID, str(e))
    return out, None


# ═════════════════════════════════════════════════════════════════════════
# Entries
# ═════════════════════════════════════════════════════════════════════════


@log_entry_bp.route("/log-entries", methods=["POST"])
def create_entry():
    """Create a DRAFT entry authored by the caller.

    Body: {
        title, description?, entry_date?, signatory_ids?, assignee_ids?,
        skip_author_as_signer?
    }
    """
    uid, err = _caller_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not (data.get("title") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")

    fields, err = _content_fields(data)
    if err:
        return err
    for key in ("signatory_ids", "skip_author_as_signer"):
        if key in data:
            fields[key] = data[key]

    entry = svc.create_entry(uid, fields)
    return _with_version(entry.to_dict(), entry.version, 201)


@log_entry_bp.route("/log-entries", methods=["GET"])
def list_entries():
    """List entries newest first.  Query: status?, limit (≤200), offset."""
    _, err = _caller_required()
    if err:
        return err
    limit, offset = page_args()
    items, total = svc.list_entries(status=request.args.get("status"), limit=limit, offset=offset)
    return jsonify({
        "items": [e.to_dict(include_tasks=False) for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@log_entry_bp.route("/log-entries/<int:entry_id>", methods=["GET"])
def get_entry(entry_id):
    uid, err = _caller_required()
    if err:
        return err
    view = svc.get_entry_view(entry_id, uid)
    return _with_version(view, view.get("version"))


@log_entry_bp.route("/log-entries/<int:entry_id>", methods=["PATCH"])
def update_entry(entry_id):
    """Update content, observations or assignees.

    Body: any of title, description, entry_date, contractor_observations,
    interventoria_observations, assignee_ids; expected_version?
    """
    uid, err = _caller_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected, err = _expected_version(data)
    if err:
        return err
    fields, err = _content_fields(data)
    if err:
        return err
    if not fields:
        return api_error(E.VALIDATION_REQUIRED, "No updatable fields supplied")

    entry = svc.update_entry(entry_id, uid, fields, expected_version=expected)
    return _with_version(entry.to_dict(), entry.version)


@log_entry_bp.route("/log-entries/<int:entry_id>/signatories", methods=["PUT"])
def update_signatories(entry_id):
    """Replace the ordered required-signatory list.

    Body: { signatory_ids: [int], skip_author_as_signer?, expected_version? }
    """
    uid, err = _caller_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if "signatory_ids" not in data:
        return api_error(E.VALIDATION_REQUIRED, "signatory_ids is required")
    expected, err = _expected_version(data)
    if err:
        return err

    entry = svc.update_signatories(
        entry_id, uid, data["signatory_ids"],
        skip_author_as_signer=data.get("skip_author_as_signer"),
        expected_version=expected,
    )
    return _with_version(entry.to_dict(), entry.version)


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle transitions
# ═════════════════════════════════════════════════════════════════════════


@log_entry_bp.route("/log-entries/<int:entry_id>/sign", methods=["POST"])
def sign_entry(entry_id):
    """Apply the caller's signature.

    Body: { password, consent: true, consent_statement, expected_version? }
    """
    uid, err = _caller_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected, err = _expected_version(data)
    if err:
        return err

    result = entry_lifecycle.sign_entry(
        entry_id, uid, ConsentPayload.from_json(data), expected_version=expected,
    )
    return _with_version(result.to_dict(), result.entry.version)


@log_entry_bp.route("/log-entries/<int:entry_id>/<action_slug>", methods=["POST"])
def transition(entry_id, action_slug):
    """Run one lifecycle transition.

    Body: { reason?, expected_version? }
    Returns 200 with ``already_in_target_state: true`` on idempotent repeats.
    """
    action = ACTION_SLUGS.get(action_slug)
    if action is None:
        return api_error(E.NOT_FOUND, f"Unknown action: {action_slug}")
    uid, err = _caller_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected, err = _expected_version(data)
    if err:
        return err

    params = {}
    if data.get("reason"):
        params["reason"] = str(data["reason"])
    result = entry_lifecycle.transition_entry(
        entry_id, action, uid, expected_version=expected, **params,
    )
    return _with_version(result.to_dict(), result.entry.version)


# ═════════════════════════════════════════════════════════════════════════
# Read views
# ═════════════════════════════════════════════════════════════════════════


@log_entry_bp.route("/log-entries/<int:entry_id>/signatures", methods=["GET"])
def get_signatures(entry_id):
    uid, err = _caller_required()
    if err:
        return err
    return jsonify(svc.get_signatures(entry_id, uid))


@log_entry_bp.route("/log-entries/<int:entry_id>/permissions", methods=["GET"])
def get_permissions(entry_id):
    uid, err = _caller_required()
    if err:
        return err
    return jsonify(svc.get_permissions(entry_id, uid))


@log_entry_bp.route("/log-entries/<int:entry_id>/history", methods=["GET"])
def get_history(entry_id):
    _, err = _caller_required()
    if err:
        return err
    history = svc.get_history(entry_id)
    return jsonify({"items": history, "total": len(history)})
