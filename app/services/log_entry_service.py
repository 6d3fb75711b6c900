"""
Logbook — Entry Service.

Entry creation, content updates, signatory management and the read views
(entry detail, reconciled signatures, permission flags, history).
Lifecycle transitions live in ``app.services.entry_lifecycle``.

Business rules enforced here (not in blueprints):
    - Content edits require ``can_edit``; observation fields require the
      matching party predicate.
    - The signatory set is frozen after the first signature, while the
      per-signer review gate is open, and outside editable statuses.
    - Removing a signer cancels their pending SignatureTask; adding one to a
      signable entry creates a PENDING task.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from app.models import db
from app.models.audit import history_for, write_audit
from app.models.auth import User
from app.models.logbook import (
    EDITABLE_STATUSES,
    REVIEW_MODE_ASSIGNEE,
    SIGNABLE_STATUSES,
    EntrySignatory,
    EntryStatus,
    LogEntry,
    next_folio_number,
    normalize_status,
)
from app.services import signature_tasks
from app.services.entry_lifecycle import check_version, commit_entry, get_user, lock_entry
from app.services.permission import (
    ActorContext,
    EntrySnapshot,
    can_edit,
    can_edit_contractor_responses,
    can_edit_interventoria_responses,
    permissions_for,
)
from app.services.signature_reconciler import reconcile, snapshot_from_entry

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("title", "description", "entry_date")


def _users_by_ids(user_ids, field_name: str) -> list[User]:
    """Resolve ids to users preserving order and dropping duplicates."""
    if user_ids is None:
        return []
    if not isinstance(user_ids, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list of user ids", details={field_name: "must be a list"})
    ordered = []
    for raw in dict.fromkeys(user_ids):
        try:
            uid = int(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid user id {raw!r} in {field_name}", details={field_name: "must contain integer ids"},
            ) from exc
        user = db.session.get(User, uid)
        if user is None:
            raise NotFoundError(resource="User", resource_id=uid)
        ordered.append(user)
    return ordered


def _set_signatories(entry: LogEntry, users: list[User]) -> None:
    """Replace the ordered signatory list, reusing rows for retained users."""
    existing = {s.user_id: s for s in entry.signatories}
    rows = []
    for position, user in enumerate(users):
        row = existing.pop(user.id, None)
        if row is None:
            row = EntrySignatory(user_id=user.id, user=user, position=position)
        row.position = position
        rows.append(row)
    entry.signatories = rows


def _get_entry(entry_id) -> LogEntry:
    entry = db.session.get(LogEntry, entry_id)
    if entry is None:
        raise NotFoundError(resource="LogEntry", resource_id=entry_id)
    return entry


# ── Create / read ────────────────────────────────────────────────────────────


def create_entry(author_id, data: dict) -> LogEntry:
    """
    Create a DRAFT entry authored by the caller.

    ``skip_author_as_signer`` defaults to True when an explicit signatory
    list is given without the author in it.

    Raises:
        ValidationError, NotFoundError, PermissionDenied
    """
    author = get_user(author_id)
    if author.is_read_only:
        raise PermissionDenied(author.id, "create_entry", "caller is read-only")

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})

    signers = _users_by_ids(data.get("signatory_ids"), "signatory_ids")
    assignees = _users_by_ids(data.get("assignee_ids"), "assignee_ids")

    skip = data.get("skip_author_as_signer")
    if skip is None:
        skip = bool(signers) and author.id not in {u.id for u in signers}

    entry = LogEntry(
        folio_number=next_folio_number(),
        title=title,
        description=data.get("description") or "",
        entry_date=data.get("entry_date"),
        status=EntryStatus.DRAFT.value,
        author_id=author.id,
        author=author,
        skip_author_as_signer=bool(skip),
    )
    db.session.add(entry)
    _set_signatories(entry, signers)
    entry.assignees = assignees
    db.session.flush()

    write_audit(
        entity_type="log_entry",
        entity_id=entry.id,
        action="log_entry.create",
        actor=author,
        diff={"status": {"old": None, "new": EntryStatus.DRAFT.value}, "title": {"old": None, "new": title}},
    )
    commit_entry(entry.id)
    logger.info(
        "LogEntry created",
        extra={"entry_id": entry.id, "actor_id": author.id, "folio_number": entry.folio_number},
    )
    return entry


def list_entries(*, status=None, limit: int = 50, offset: int = 0) -> tuple[list[LogEntry], int]:
    """Entries newest first, optionally filtered by (alias-tolerant) status."""
    q = LogEntry.query
    if status:
        q = q.filter(LogEntry.status == normalize_status(status).value)
    total = q.count()
    items = q.order_by(LogEntry.created_at.desc(), LogEntry.id.desc()).offset(offset).limit(limit).all()
    return items, total


def get_entry_view(entry_id, user_id) -> dict:
    """Entry detail with tasks, reconciled signatures and the caller's permission flags."""
    entry = _get_entry(entry_id)
    actor = get_user(user_id)
    data = entry.to_dict()
    data["signatures"] = get_signatures(entry_id, user_id, entry=entry, actor=actor)
    data["permissions"] = permissions_for(ActorContext.from_user(actor), EntrySnapshot.from_entry(entry))
    return data


def get_signatures(entry_id, user_id, *, entry=None, actor=None) -> dict:
    """Reconciled participant view.

    ``can_sign`` is only offered inside the signing window (signable status,
    review gate closed, all reviews complete).
    """
    entry = entry or _get_entry(entry_id)
    actor = actor or get_user(user_id)
    signing_window = (
        entry.current_status in SIGNABLE_STATUSES
        and not entry.pending_review_by
        and entry.all_reviews_complete
    )
    tasks, legacy, required = snapshot_from_entry(entry)
    result = reconcile(
        tasks, legacy, required,
        caller_id=actor.id,
        read_only=actor.is_read_only or not signing_window,
    )
    return result.to_dict()


def get_permissions(entry_id, user_id) -> dict:
    entry = _get_entry(entry_id)
    actor = get_user(user_id)
    return permissions_for(ActorContext.from_user(actor), EntrySnapshot.from_entry(entry))


def get_history(entry_id) -> list[dict]:
    _get_entry(entry_id)
    return [row.to_dict() for row in history_for("log_entry", entry_id)]


# ── Update ───────────────────────────────────────────────────────────────────


def update_entry(entry_id, user_id, data: dict, *, expected_version: int | None = None) -> LogEntry:
    """
    Update content, observations and assignees.

    Each field group is gated by its own predicate; the whole request is
    rejected if any supplied group is not permitted.

    Raises:
        PermissionDenied, ValidationError, ConcurrentModificationConflict
        InvalidTransition: the change drops an assignee whose review is pending.
    """
    actor = get_user(user_id)
    try:
        entry = lock_entry(entry_id)
        check_version(entry, expected_version)
        actor_ctx = ActorContext.from_user(actor)
        snapshot = EntrySnapshot.from_entry(entry)

        diff = {}
        content = {k: data[k] for k in CONTENT_FIELDS if k in data}
        if content or "assignee_ids" in data:
            if not can_edit(actor_ctx, snapshot):
                raise PermissionDenied(actor.id, "update_entry", "entry content is not editable by this user")
        if "title" in content and not (content["title"] or "").strip():
            raise ValidationError("title must not be empty", details={"title": "required"})
        for key, value in content.items():
            old = getattr(entry, key)
            if old != value:
                setattr(entry, key, value.strip() if key == "title" else value)
                diff[key] = {"old": old, "new": value}

        if "contractor_observations" in data:
            if not can_edit_contractor_responses(actor_ctx, snapshot):
                raise PermissionDenied(actor.id, "update_entry", "contractor observations are not editable")
            diff["contractor_observations"] = {"old": entry.contractor_observations, "new": data["contractor_observations"]}
            entry.contractor_observations = data["contractor_observations"] or ""

        if "interventoria_observations" in data:
            if not can_edit_interventoria_responses(actor_ctx, snapshot):
                raise PermissionDenied(actor.id, "update_entry", "supervisor observations are not editable")
            diff["interventoria_observations"] = {
                "old": entry.interventoria_observations, "new": data["interventoria_observations"],
            }
            entry.interventoria_observations = data["interventoria_observations"] or ""

        if "assignee_ids" in data:
            assignees = _users_by_ids(data["assignee_ids"], "assignee_ids")
            old_ids = [u.id for u in entry.assignees]
            new_ids = [u.id for u in assignees]
            dropped_reviewers = sorted(
                t.reviewer_id for t in entry.review_tasks
                if t.mode == REVIEW_MODE_ASSIGNEE and t.status == "PENDING" and t.reviewer_id not in new_ids
            )
            if dropped_reviewers:
                raise InvalidTransition(
                    "update_entry", entry.current_status.value,
                    f"assignees {dropped_reviewers} still have a pending review on this entry",
                )
            if old_ids != new_ids:
                entry.assignees = assignees
                diff["assignee_ids"] = {"old": old_ids, "new": new_ids}

        if not diff:
            db.session.rollback()
            return entry

        entry.updated_at = datetime.now(timezone.utc)
        write_audit(entity_type="log_entry", entity_id=entry.id, action="log_entry.update", actor=actor, diff=diff)
        commit_entry(entry_id)
    except Exception:
        db.session.rollback()
        raise

    logger.info("LogEntry updated", extra={"entry_id": entry_id, "actor_id": actor.id, "fields": sorted(diff)})
    return entry


def update_signatories(
    entry_id,
    user_id,
    signatory_ids,
    *,
    skip_author_as_signer: bool | None = None,
    expected_version: int | None = None,
) -> LogEntry:
    """
    Replace the ordered required-signatory list.

    Raises:
        InvalidTransition: status not editable, review gate open, or a
            signature already SIGNED.
        PermissionDenied: caller may not edit the entry.
        ValidationError: a re-added signer already holds a terminal task.
    """
    actor = get_user(user_id)
    try:
        entry = lock_entry(entry_id)
        check_version(entry, expected_version)
        status = entry.current_status

        if status not in EDITABLE_STATUSES:
            raise InvalidTransition("update_signatories", status.value, "entry is not editable")
        if entry.has_signed_signature:
            raise InvalidTransition("update_signatories", status.value, "signatories are frozen after the first signature")
        if entry.pending_review_by:
            raise InvalidTransition("update_signatories", status.value, "per-signer review is in progress")
        if not can_edit(ActorContext.from_user(actor), EntrySnapshot.from_entry(entry)):
            raise PermissionDenied(actor.id, "update_signatories", "entry is not editable by this user")

        old_signer_ids = [u.id for u in entry.effective_signers]
        users = _users_by_ids(signatory_ids, "signatory_ids")
        _set_signatories(entry, users)
        if skip_author_as_signer is not None:
            entry.skip_author_as_signer = bool(skip_author_as_signer)

        changes = signature_tasks.sync_signers(
            entry, set(old_signer_ids), create_missing=status in SIGNABLE_STATUSES,
        )
        new_signer_ids = [u.id for u in entry.effective_signers]
        entry.updated_at = datetime.now(timezone.utc)
        write_audit(
            entity_type="log_entry",
            entity_id=entry.id,
            action="log_entry.update_signatories",
            actor=actor,
            diff={
                "signers": {"old": old_signer_ids, "new": new_signer_ids},
                "cancelled_tasks": {"old": None, "new": [t.signer_id for t in changes["cancelled"]]},
                "created_tasks": {"old": None, "new": [t.signer_id for t in changes["created"]]},
            },
        )
        commit_entry(entry_id)
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "LogEntry signatories updated",
        extra={"entry_id": entry_id, "actor_id": actor.id, "signers": new_signer_ids},
    )
    return entry
