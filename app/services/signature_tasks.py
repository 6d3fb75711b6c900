"""
Signature Task Tracker.

One signature obligation per (entry, signer).  Tasks only move forward:

    PENDING → SIGNED | DECLINED | CANCELLED

Terminal tasks are never overwritten or deleted; removing a signer cancels
its pending task.  Like the review tracker, nothing here commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import InvalidTransition, ValidationError
from app.models import db
from app.models.logbook import SignatureTask, validate_signature_task_transition

logger = logging.getLogger(__name__)


def _transition(task: SignatureTask, new_status: str, action: str) -> None:
    if not validate_signature_task_transition(task.status, new_status):
        raise InvalidTransition(action, task.status, f"signature task is already {task.status}")
    task.status = new_status


def ensure_signature_tasks(entry, signers=None) -> list[SignatureTask]:
    """Create a PENDING task for every effective signer lacking one."""
    signers = entry.effective_signers if signers is None else signers
    existing = {t.signer_id for t in entry.signature_tasks}
    created = []
    for user in signers:
        if user.id in existing:
            continue
        task = SignatureTask(entry=entry, signer_id=user.id, signer=user, status="PENDING")
        db.session.add(task)
        existing.add(user.id)
        created.append(task)
    if created:
        db.session.flush()
        logger.debug("Created %d signature task(s) on entry %s", len(created), entry.id)
    return created


def mark_signed(task: SignatureTask, artifact_ref: str | None = None) -> SignatureTask:
    _transition(task, "SIGNED", "sign")
    task.signed_at = datetime.now(timezone.utc)
    task.artifact_ref = artifact_ref
    return task


def mark_declined(task: SignatureTask, reason: str | None = None) -> SignatureTask:
    _transition(task, "DECLINED", "decline_signature")
    task.closed_at = datetime.now(timezone.utc)
    task.decline_reason = reason
    return task


def cancel_task(task: SignatureTask) -> SignatureTask:
    _transition(task, "CANCELLED", "cancel_signature")
    task.closed_at = datetime.now(timezone.utc)
    return task


def cancel_pending(entry) -> list[SignatureTask]:
    """Cancel every PENDING task on the entry (e.g. on rejection)."""
    cancelled = [cancel_task(t) for t in entry.signature_tasks if t.status == "PENDING"]
    return cancelled


def sync_signers(entry, old_signer_ids: set[int], *, create_missing: bool) -> dict:
    """Align tasks with the entry's current effective signers.

    Removed signers' PENDING tasks become CANCELLED.  When ``create_missing``
    is set (entry already signable), added signers get a PENDING task.

    Raises:
        ValidationError: a re-added signer already holds a terminal task.
    """
    new_signers = entry.effective_signers
    new_ids = {u.id for u in new_signers}

    cancelled = []
    for task in entry.signature_tasks:
        if task.signer_id not in new_ids and task.status == "PENDING":
            cancelled.append(cancel_task(task))

    added_ids = new_ids - old_signer_ids
    for user_id in added_ids:
        task = entry.signature_task_for(user_id)
        if task is not None and task.status in ("CANCELLED", "DECLINED"):
            raise ValidationError(
                f"User {user_id} already has a {task.status.lower()} signature task on this entry",
                details={"signatories": "a removed or declined signer cannot be re-added"},
            )

    created = ensure_signature_tasks(entry, new_signers) if create_missing else []
    return {"cancelled": cancelled, "created": created}


def signing_complete(entry) -> bool:
    """Every current signer's task is SIGNED (none PENDING or DECLINED).

    Tasks of signers since removed from the entry are ignored, so a decliner
    taken off the signatory list no longer blocks completion.
    """
    signer_ids = {u.id for u in entry.effective_signers}
    statuses = [t.status for t in entry.signature_tasks if t.signer_id in signer_ids]
    if "PENDING" in statuses or "DECLINED" in statuses:
        return False
    return "SIGNED" in statuses
