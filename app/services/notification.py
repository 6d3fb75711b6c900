"""
Bitácora Digital — Logbook Workflow Service
Notification Service.

Central service for creating and querying in-app notifications, plus the
workflow dispatcher that informs the next responsible party after each
entry transition.  Dispatch runs after the transition has committed and is
fire-and-forget: a failure here is logged and never undoes the transition.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from app.models import db
from app.models.logbook import EntryStatus
from app.models.notification import Notification

logger = logging.getLogger(__name__)


# ── Recipient selectors ──────────────────────────────────────────────────────

def _participants(entry):
    seen, users = set(), []
    for user in [entry.author, *entry.assignees, *entry.effective_signers]:
        if user is not None and user.id not in seen:
            seen.add(user.id)
            users.append(user)
    return users


def _pending_reviewers(entry):
    return [t.reviewer for t in entry.review_tasks if t.status == "PENDING"]


def _pending_signers(entry):
    return [t.signer for t in entry.signature_tasks if t.status == "PENDING"]


def _author(entry):
    return [entry.author]


def _contractor_side(entry):
    users = [u for u in _participants(entry) if u.is_contractor]
    if entry.contractor_reviewer is not None:
        users.append(entry.contractor_reviewer)
    return users


def _after_sign(entry):
    if entry.current_status == EntryStatus.SIGNED:
        return _participants(entry)
    return _author(entry)


# action → (title template, category, severity, recipient selector)
TRANSITION_NOTIFICATIONS = {
    "send_to_contractor": ("Entry #{folio} sent for contractor review", "review", "info", _contractor_side),
    "send_for_review": ("Your review is requested on entry #{folio}", "review", "info", _pending_reviewers),
    "approve_review": ("Review completed on entry #{folio}", "review", "success", _author),
    "complete_review": ("Review completed on entry #{folio}", "review", "success", _author),
    "complete_contractor_review": ("Contractor review completed on entry #{folio}", "review", "success", _author),
    "send_to_final_review": ("Entry #{folio} is in final review", "review", "info", _pending_reviewers),
    "return_to_contractor": ("Entry #{folio} returned to the contractor", "workflow", "warning", _contractor_side),
    "approve_for_signature": ("Entry #{folio} is ready for your signature", "signature", "info", _pending_signers),
    "reject": ("Entry #{folio} was rejected", "workflow", "warning", _participants),
    "sign": ("Entry #{folio} received a signature", "signature", "success", _after_sign),
    "decline_signature": ("A signature was declined on entry #{folio}", "signature", "warning", _author),
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_id, title, message="", category="workflow", severity="info",
               entry_id=None, action=""):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entry_id=entry_id,
            action=action,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, recipient_ids, title, message="", category="workflow", severity="info",
                  entry_id=None, action=""):
        """
        Send one notification per recipient id.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for rid in dict.fromkeys(recipient_ids):
            notif = Notification(
                recipient_id=rid,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entry_id=entry_id,
                action=action,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification):
        """Mark a single notification as read."""
        notification.mark_read()
        db.session.commit()
        return notification

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count

    # ── Workflow dispatcher ───────────────────────────────────────────────

    @staticmethod
    def notify_transition(entry, action, actor=None, message=""):
        """Inform the next responsible party about a committed transition.

        Never raises: failures are logged at WARNING and rolled back.
        """
        if not current_app.config.get("LOGBOOK_NOTIFICATIONS_ENABLED", True):
            return []
        spec = TRANSITION_NOTIFICATIONS.get(action)
        if spec is None:
            return []
        title_tpl, category, severity, selector = spec
        try:
            actor_id = getattr(actor, "id", None)
            recipient_ids = [u.id for u in selector(entry) if u is not None and u.id != actor_id]
            if not recipient_ids:
                return []
            folio = entry.folio_number or entry.id
            return NotificationService.broadcast(
                recipient_ids=recipient_ids,
                title=title_tpl.format(folio=folio),
                message=message or entry.title,
                category=category,
                severity=severity,
                entry_id=entry.id,
                action=action,
            )
        except Exception:
            db.session.rollback()
            logger.warning(
                "Notification dispatch failed for entry %s action=%s",
                entry.id, action, exc_info=True,
            )
            return []
