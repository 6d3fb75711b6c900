"""
Logbook — Entry Lifecycle State Machine

Executes entry transitions with:
  - Per-entry lock (SELECT ... FOR UPDATE) and optimistic version check
  - Permission / source-status / guard evaluation (app.services.permission)
  - Review and signature task side effects
  - Audit trail (one AuditLog row per effective transition)
  - Post-commit notification to the next responsible party

Transitions:
  send_to_contractor, send_for_review, approve_review, complete_review,
  complete_contractor_review, send_to_final_review, return_to_contractor,
  approve_for_signature, reject, sign, decline_signature

Usage:
    from app.services.entry_lifecycle import transition_entry

    result = transition_entry(entry_id=7, action="approve_for_signature", user_id=3)
    result.already_in_target_state   # True on an idempotent repeat

Idempotent repeats (already approved, review already completed, ...) are
successful results with ``already_in_target_state=True``: nothing is
written, nothing is notified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConcurrentModificationConflict,
    InvalidTransition,
    NotFoundError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.logbook import (
    PENDING_REVIEW_ALL_SIGNERS,
    REVIEW_MODE_ALL_SIGNERS,
    REVIEW_MODE_ASSIGNEE,
    SIGNABLE_STATUSES,
    EntryStatus,
    LogEntry,
)
from app.services import review_tasks, signature_tasks
from app.services.credential_service import ConsentPayload, verify_signer
from app.services.notification import NotificationService
from app.services.permission import (
    ActorContext,
    EntrySnapshot,
    check,
    evaluate,
    target_status,
)

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """Outcome of one transition request."""
    entry: LogEntry
    action: str
    previous_status: EntryStatus
    new_status: EntryStatus
    already_in_target_state: bool = False
    review_gate_cleared: bool = False
    created_tasks: list = field(default_factory=list)
    artifact_ref: str | None = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "already_in_target_state": self.already_in_target_state,
            "review_gate_cleared": self.review_gate_cleared,
            "created_tasks": [t.to_dict() for t in self.created_tasks],
            "artifact_ref": self.artifact_ref,
            "entry": self.entry.to_dict(),
        }


# ── Loading / locking ────────────────────────────────────────────────────────


def get_user(user_id) -> User:
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def lock_entry(entry_id) -> LogEntry:
    """Load the entry under a row lock, refreshing any stale identity-map copy.

    ``of=LogEntry`` keeps the lock off the eagerly outer-joined author row,
    which PostgreSQL refuses to lock.
    """
    stmt = (
        select(LogEntry)
        .where(LogEntry.id == entry_id)
        .with_for_update(of=LogEntry)
        .execution_options(populate_existing=True)
    )
    entry = db.session.execute(stmt).unique().scalar_one_or_none()
    if entry is None:
        raise NotFoundError(resource="LogEntry", resource_id=entry_id)
    return entry


def check_version(entry: LogEntry, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != entry.version:
        raise ConcurrentModificationConflict(entry.id, expected_version, entry.version)


def commit_entry(entry_id) -> None:
    """Commit the unit of work; version or unique-key races become conflicts."""
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        current = db.session.get(LogEntry, entry_id)
        raise ConcurrentModificationConflict(
            entry_id, current_version=current.version if current else None,
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error committing entry %s: %s", entry_id, exc.orig)
        raise ConcurrentModificationConflict(entry_id) from exc


# ── Action side effects ──────────────────────────────────────────────────────
# Each receives (entry, actor, result, **params) and mutates inside the lock.


def _send_to_contractor(entry, actor, result, **_):
    entry.return_reason = None


def _send_for_review(entry, actor, result, **_):
    entry.pending_review_by = PENDING_REVIEW_ALL_SIGNERS
    result.created_tasks = review_tasks.ensure_review_tasks(
        entry, entry.effective_signers, REVIEW_MODE_ALL_SIGNERS,
    )
    result.review_gate_cleared = review_tasks.refresh_review_gate(entry)


def _complete_review(entry, actor, result, **_):
    review_tasks.complete_review_task(entry, actor.id)
    result.review_gate_cleared = review_tasks.refresh_review_gate(entry)


def _complete_contractor_review(entry, actor, result, **_):
    entry.contractor_review_completed = True
    entry.contractor_review_completed_at = datetime.now(timezone.utc)
    entry.contractor_reviewer_id = actor.id


def _send_to_final_review(entry, actor, result, **_):
    result.created_tasks = review_tasks.ensure_review_tasks(
        entry, [u for u in entry.assignees if u.id != actor.id], REVIEW_MODE_ASSIGNEE,
    )


def _return_to_contractor(entry, actor, result, reason=None, **_):
    entry.contractor_review_completed = False
    entry.contractor_review_completed_at = None
    entry.return_reason = (reason or "").strip() or None


def _approve_for_signature(entry, actor, result, **_):
    result.created_tasks = signature_tasks.ensure_signature_tasks(entry)


def _reject(entry, actor, result, reason=None, **_):
    entry.rejection_reason = (reason or "").strip() or None
    entry.pending_review_by = None
    signature_tasks.cancel_pending(entry)


def _sign(entry, actor, result, consent: ConsentPayload = None, **_):
    consent = consent or ConsentPayload("", False, "")
    verify_signer(actor, consent)
    store = current_app.extensions["document_store"]
    artifact_ref = store.apply_signature(entry, actor, consent.consent_statement)
    signature_tasks.mark_signed(entry.signature_task_for(actor.id), artifact_ref)
    result.artifact_ref = artifact_ref
    if signature_tasks.signing_complete(entry):
        entry.status = EntryStatus.SIGNED.value


def _decline_signature(entry, actor, result, reason=None, **_):
    signature_tasks.mark_declined(entry.signature_task_for(actor.id), (reason or "").strip() or None)


_ACTIONS = {
    "send_to_contractor": _send_to_contractor,
    "send_for_review": _send_for_review,
    "approve_review": _complete_review,
    "complete_review": _complete_review,
    "complete_contractor_review": _complete_contractor_review,
    "send_to_final_review": _send_to_final_review,
    "return_to_contractor": _return_to_contractor,
    "approve_for_signature": _approve_for_signature,
    "reject": _reject,
    "sign": _sign,
    "decline_signature": _decline_signature,
}

TRANSITION_ACTIONS = frozenset(_ACTIONS)


def _backfill_legacy_signature_tasks(entry) -> None:
    """Entries approved before task tracking have no tasks; derive them once.

    Signers already holding a signed legacy record get none, so the
    reconciled view keeps showing their historical signature.
    """
    if entry.signature_tasks or entry.current_status not in SIGNABLE_STATUSES:
        return
    legacy_signed = {s.signer_id for s in entry.signatures if s.signed_at is not None}
    pending = [u for u in entry.effective_signers if u.id not in legacy_signed]
    if pending:
        signature_tasks.ensure_signature_tasks(entry, pending)
        logger.info("Backfilled %d signature task(s) on legacy entry %s", len(pending), entry.id)


def _audit_diff(entry, previous_status, params) -> dict:
    diff = {}
    if entry.current_status != previous_status:
        diff["status"] = {"old": previous_status.value, "new": entry.current_status.value}
    for key in ("reason",):
        if params.get(key):
            diff[key] = {"old": None, "new": params[key]}
    return diff


# ── Public API ───────────────────────────────────────────────────────────────


def transition_entry(
    entry_id,
    action: str,
    user_id,
    *,
    expected_version: int | None = None,
    **params,
) -> TransitionResult:
    """
    Execute one entry lifecycle transition.

    Args:
        entry_id: LogEntry PK.
        action: One of TRANSITION_ACTIONS.
        user_id: Caller.
        expected_version: Optimistic-lock version the caller read; a mismatch
            raises before anything is mutated.
        **params: ``reason`` (return / reject / decline), ``consent``
            (ConsentPayload, sign).

    Returns:
        TransitionResult — ``already_in_target_state`` set on idempotent repeats.

    Raises:
        NotFoundError, InvalidTransition, PermissionDenied, InvalidCredentials,
        MissingTask, ConcurrentModificationConflict, DocumentStoreError
    """
    apply = _ACTIONS.get(action)
    if apply is None:
        raise InvalidTransition(action, "unknown", f"Unknown action: {action}")

    actor = get_user(user_id)
    try:
        entry = lock_entry(entry_id)
        previous_status = entry.current_status

        if action == "sign":
            _backfill_legacy_signature_tasks(entry)

        actor_ctx = ActorContext.from_user(actor)
        decision = evaluate(action, actor_ctx, EntrySnapshot.from_entry(entry))
        if decision.allowed and decision.already_in_target_state:
            db.session.rollback()
            logger.debug(
                "Entry %s already in target state for %s", entry_id, action,
                extra={"entry_id": entry_id, "action": action, "actor_id": actor.id},
            )
            return TransitionResult(
                entry=entry, action=action,
                previous_status=previous_status, new_status=previous_status,
                already_in_target_state=True,
            )

        check_version(entry, expected_version)
        check(action, actor_ctx, EntrySnapshot.from_entry(entry))

        result = TransitionResult(
            entry=entry, action=action,
            previous_status=previous_status, new_status=previous_status,
        )
        apply(entry, actor, result, **params)
        target = target_status(action)
        if target is not None:
            entry.status = target.value
        result.new_status = entry.current_status
        # Dirty the row so every effective transition bumps the version
        entry.updated_at = datetime.now(timezone.utc)

        write_audit(
            entity_type="log_entry",
            entity_id=entry.id,
            action=f"log_entry.{action}",
            actor=actor,
            diff=_audit_diff(entry, previous_status, params),
        )
        commit_entry(entry_id)
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Entry %s: %s (%s → %s) by user %s",
        entry_id, action, previous_status.value, result.new_status.value, actor.id,
        extra={
            "entry_id": entry_id,
            "action": action,
            "actor_id": actor.id,
            "previous_status": previous_status.value,
            "new_status": result.new_status.value,
        },
    )
    NotificationService.notify_transition(entry, action, actor, message=params.get("reason") or "")
    return result


# Named operations (thin wrappers for callers that prefer explicit verbs)


def send_to_contractor(entry_id, user_id, **kw):
    return transition_entry(entry_id, "send_to_contractor", user_id, **kw)


def send_for_review(entry_id, user_id, **kw):
    return transition_entry(entry_id, "send_for_review", user_id, **kw)


def approve_review(entry_id, user_id, **kw):
    return transition_entry(entry_id, "approve_review", user_id, **kw)


def complete_review(entry_id, user_id, **kw):
    return transition_entry(entry_id, "complete_review", user_id, **kw)


def complete_contractor_review(entry_id, user_id, **kw):
    return transition_entry(entry_id, "complete_contractor_review", user_id, **kw)


def send_to_final_review(entry_id, user_id, **kw):
    return transition_entry(entry_id, "send_to_final_review", user_id, **kw)


def return_to_contractor(entry_id, user_id, reason=None, **kw):
    return transition_entry(entry_id, "return_to_contractor", user_id, reason=reason, **kw)


def approve_for_signature(entry_id, user_id, **kw):
    return transition_entry(entry_id, "approve_for_signature", user_id, **kw)


def reject_entry(entry_id, user_id, reason=None, **kw):
    return transition_entry(entry_id, "reject", user_id, reason=reason, **kw)


def sign_entry(entry_id, user_id, consent: ConsentPayload, **kw):
    return transition_entry(entry_id, "sign", user_id, consent=consent, **kw)


def decline_signature(entry_id, user_id, reason=None, **kw):
    return transition_entry(entry_id, "decline_signature", user_id, reason=reason, **kw)
