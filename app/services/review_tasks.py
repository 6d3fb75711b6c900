"""
Review Task Tracker.

One review obligation per (entry, reviewer), in either of two modes:

    ALL_SIGNERS  — per-signatory gate opened by ``send_for_review``; every
                   effective signer reviews, signatures stay blocked until all
                   tasks are COMPLETED.
    ASSIGNEE     — legacy single-stage review while the entry sits in
                   NEEDS_REVIEW; created for the entry's assignees.

Functions here mutate the session but never commit: the state machine owns
the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import MissingTask
from app.models import db
from app.models.logbook import (
    PENDING_REVIEW_ALL_SIGNERS,
    REVIEW_MODE_ALL_SIGNERS,
    ReviewTask,
)

logger = logging.getLogger(__name__)


def ensure_review_tasks(entry, reviewers, mode: str = REVIEW_MODE_ALL_SIGNERS) -> list[ReviewTask]:
    """Create a PENDING task for each reviewer that has none yet.

    Existing tasks (PENDING or COMPLETED) are left untouched, so calling this
    twice never yields a second task for the same reviewer.
    """
    existing = {t.reviewer_id for t in entry.review_tasks}
    created = []
    for user in reviewers:
        if user.id in existing:
            continue
        task = ReviewTask(entry=entry, reviewer_id=user.id, reviewer=user, mode=mode, status="PENDING")
        db.session.add(task)
        existing.add(user.id)
        created.append(task)
    if created:
        db.session.flush()
        logger.debug(
            "Created %d %s review task(s) on entry %s", len(created), mode, entry.id,
        )
    return created


def complete_review_task(entry, user_id: int) -> tuple[ReviewTask, bool]:
    """Mark the caller's task COMPLETED.

    Returns:
        (task, changed) — ``changed`` is False when the task was already
        COMPLETED (idempotent repeat).

    Raises:
        MissingTask: the caller holds no review task on the entry.
    """
    task = entry.review_task_for(user_id)
    if task is None:
        raise MissingTask(user_id, "approve_review", "review")
    if task.status == "COMPLETED":
        return task, False
    task.status = "COMPLETED"
    task.completed_at = datetime.now(timezone.utc)
    return task, True


def pending_reviewers(entry) -> list:
    return [t.reviewer for t in entry.review_tasks if t.status == "PENDING" and t.reviewer is not None]


def refresh_review_gate(entry) -> bool:
    """Close the per-signatory gate once every review task is COMPLETED.

    Returns True when the gate was closed by this call.
    """
    if entry.pending_review_by != PENDING_REVIEW_ALL_SIGNERS:
        return False
    if not entry.all_reviews_complete:
        return False
    entry.pending_review_by = None
    return True
