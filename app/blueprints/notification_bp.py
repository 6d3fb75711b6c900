"""
Notification Blueprint — the caller's in-app notifications.

Provides:
    GET  /api/v1/notifications                 — list (?unread_only=&limit=&offset=)
    GET  /api/v1/notifications/unread-count    — badge counter
    POST /api/v1/notifications/<id>/read       — mark one as read
    POST /api/v1/notifications/read-all        — mark every unread as read

Notifications are created by the workflow dispatcher after each committed
transition; there is no public create endpoint.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import page_args
from app.middleware.jwt_auth import current_user_id
from app.models.notification import Notification
from app.services.notification import NotificationService
from app.utils.errors import E, api_error
from app.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


def _caller_required():
    uid = current_user_id()
    if uid is None:
        return None, api_error(E.UNAUTHORIZED, "Authentication required")
    return uid, None


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List the caller's notifications, newest first."""
    uid, err = _caller_required()
    if err:
        return err
    unread_only = request.args.get("unread_only", "false").lower() in ("1", "true", "yes")
    limit, offset = page_args()

    items, total = NotificationService.list_for_recipient(
        uid, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(uid),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    uid, err = _caller_required()
    if err:
        return err
    return jsonify({"unread_count": NotificationService.unread_count(uid)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    """Mark one of the caller's notifications as read."""
    uid, err = _caller_required()
    if err:
        return err
    notif, err = get_or_404(Notification, nid, "Notification")
    if err:
        return err
    if notif.recipient_id != uid:
        return api_error(E.FORBIDDEN, "Notification belongs to another user")
    NotificationService.mark_read(notif)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    uid, err = _caller_required()
    if err:
        return err
    count = NotificationService.mark_all_read(uid)
    return jsonify({"marked_read": count})
