"""
Logbook Workflow — Permission Evaluator

Pure, table-driven predicates deciding what a caller may do with an entry.
Every decision is a function of two immutable snapshots:

    ActorContext   — who is asking (role, party, read-only flag)
    EntrySnapshot  — entry status, author, review gates, task states

No database access, no side effects: the state machine builds snapshots
from ORM rows, the UI endpoint builds the same snapshots to decide which
actions to offer next.

Usage:
    from app.services.permission import ActorContext, EntrySnapshot, evaluate, check

    decision = evaluate("approve_for_signature", actor, snapshot)
    if decision.already_in_target_state: ...

    check("sign", actor, snapshot)   # raises InvalidTransition / PermissionDenied / MissingTask

Adding a role or an operation is a change to TRANSITION_RULES / GUARDS,
not a new code path.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.core.exceptions import InvalidTransition, MissingTask, PermissionDenied
from app.models.auth import Role
from app.models.logbook import (
    EDITABLE_STATUSES,
    PENDING_REVIEW_ALL_SIGNERS,
    RESPONSE_EDITABLE_STATUSES,
    SIGNABLE_STATUSES,
    EntryStatus,
)


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActorContext:
    """The caller, reduced to what permission decisions depend on."""
    user_id: int
    role: Role | None = None
    is_contractor: bool = False
    is_interventoria: bool = False
    read_only: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_user(cls, user, *, read_only: bool = False) -> "ActorContext":
        return cls(
            user_id=user.id,
            role=user.role,
            is_contractor=user.is_contractor,
            is_interventoria=user.is_interventoria,
            read_only=read_only or user.is_read_only,
        )


@dataclass(frozen=True)
class EntrySnapshot:
    """Entry state relevant to permissions. Task tuples are (user_id, status)."""
    status: EntryStatus
    author_id: int
    author_is_contractor: bool = False
    author_is_interventoria: bool = False
    pending_review_by: str | None = None
    contractor_review_completed: bool = False
    assignee_ids: frozenset = field(default_factory=frozenset)
    signer_ids: frozenset = field(default_factory=frozenset)
    review_tasks: tuple = ()
    signature_tasks: tuple = ()
    legacy_signed_ids: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_entry(cls, entry) -> "EntrySnapshot":
        author = entry.author
        return cls(
            status=entry.current_status,
            author_id=entry.author_id,
            author_is_contractor=bool(author and author.is_contractor),
            author_is_interventoria=bool(author and author.is_interventoria),
            pending_review_by=entry.pending_review_by,
            contractor_review_completed=bool(entry.contractor_review_completed),
            assignee_ids=frozenset(u.id for u in entry.assignees),
            signer_ids=frozenset(u.id for u in entry.effective_signers),
            review_tasks=tuple((t.reviewer_id, t.status) for t in entry.review_tasks),
            signature_tasks=tuple((t.signer_id, t.status) for t in entry.signature_tasks),
            legacy_signed_ids=frozenset(s.signer_id for s in entry.signatures if s.signed_at is not None),
        )

    # ── Derived ──────────────────────────────────────────────────────────

    @property
    def all_reviews_complete(self) -> bool:
        return all(status == "COMPLETED" for _, status in self.review_tasks)

    @property
    def any_signed(self) -> bool:
        return bool(self.legacy_signed_ids) or any(s == "SIGNED" for _, s in self.signature_tasks)

    @property
    def any_declined(self) -> bool:
        return any(s == "DECLINED" for _, s in self.signature_tasks)

    def review_status_for(self, user_id) -> str | None:
        return next((s for uid, s in self.review_tasks if uid == user_id), None)

    def signature_status_for(self, user_id) -> str | None:
        return next((s for uid, s in self.signature_tasks if uid == user_id), None)

    def has_signed(self, user_id) -> bool:
        status = self.signature_status_for(user_id)
        if status is not None:
            return status == "SIGNED"
        return user_id in self.legacy_signed_ids


# ═════════════════════════════════════════════════════════════════════════════
# Actor relations
# ═════════════════════════════════════════════════════════════════════════════

AUTHOR = "author"
ADMIN = "admin"
CONTRACTOR = "contractor"
INTERVENTORIA = "interventoria"
REVIEWER = "reviewer"      # holds a PENDING ReviewTask
SIGNER = "signer"          # holds a PENDING SignatureTask

# Relations satisfied by holding a task: absence is MissingTask, not PermissionDenied
_TASK_RELATIONS = {REVIEWER: "review", SIGNER: "signature"}


def actor_relations(actor: ActorContext, entry: EntrySnapshot) -> set[str]:
    """Every relation the actor holds towards the entry."""
    rel = set()
    if actor.user_id == entry.author_id:
        rel.add(AUTHOR)
    if actor.is_admin:
        rel.add(ADMIN)
    if actor.is_contractor:
        rel.add(CONTRACTOR)
    if actor.is_interventoria:
        rel.add(INTERVENTORIA)
    if entry.review_status_for(actor.user_id) == "PENDING":
        rel.add(REVIEWER)
    if entry.signature_status_for(actor.user_id) == "PENDING":
        rel.add(SIGNER)
    return rel


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════

def _review_mode_open(entry: EntrySnapshot) -> bool:
    """Per-signatory gate open, or legacy single-reviewer stage."""
    if entry.pending_review_by == PENDING_REVIEW_ALL_SIGNERS:
        return entry.status not in (EntryStatus.SIGNED, EntryStatus.REJECTED)
    return entry.status == EntryStatus.NEEDS_REVIEW


def _review_already_done(actor: ActorContext, entry: EntrySnapshot) -> bool:
    return entry.review_status_for(actor.user_id) == "COMPLETED"


# Guard name → (predicate(entry), failure reason)
GUARDS = {
    "contractor_review_completed": (
        lambda e: e.contractor_review_completed,
        "contractor review has not been completed",
    ),
    "no_pending_review_gate": (
        lambda e: not e.pending_review_by,
        "reviews are still pending before signatures unlock",
    ),
    "all_reviews_complete": (
        lambda e: e.all_reviews_complete,
        "not every review task has been completed",
    ),
    "review_stage_open": (
        _review_mode_open,
        "entry is not in a review stage",
    ),
    "has_signers": (
        lambda e: bool(e.signer_ids),
        "entry has no required signatories",
    ),
    "approved_only_after_decline": (
        lambda e: e.status != EntryStatus.APPROVED or e.any_declined,
        "an approved entry can only be rejected after a signer declined",
    ),
}

# operation → rule
#   from:     statuses the operation may start from (None = any; guards decide)
#   actors:   relations, any one of which authorises the caller
#   to:       resulting status (None = unchanged)
#   already:  callable(actor, entry) → True when the effect is already in place
#   guards:   GUARDS names that must all hold
TRANSITION_RULES = {
    "send_to_contractor": {
        "from": {EntryStatus.DRAFT},
        "actors": {AUTHOR, ADMIN},
        "to": EntryStatus.SUBMITTED,
        "already": lambda a, e: e.status == EntryStatus.SUBMITTED,
        "guards": (),
    },
    "send_for_review": {
        "from": {EntryStatus.DRAFT, EntryStatus.SUBMITTED},
        "actors": {AUTHOR, ADMIN},
        "to": None,
        "already": lambda a, e: (
            e.pending_review_by == PENDING_REVIEW_ALL_SIGNERS
            and e.status in (EntryStatus.DRAFT, EntryStatus.SUBMITTED)
        ),
        "guards": ("has_signers",),
    },
    "approve_review": {
        "from": None,
        "actors": {REVIEWER},
        "to": None,
        "already": _review_already_done,
        "guards": ("review_stage_open",),
    },
    "complete_review": {
        "from": None,
        "actors": {REVIEWER},
        "to": None,
        "already": _review_already_done,
        "guards": ("review_stage_open",),
    },
    "complete_contractor_review": {
        "from": {EntryStatus.SUBMITTED},
        "actors": {CONTRACTOR, ADMIN},
        "to": None,
        "already": lambda a, e: e.status == EntryStatus.SUBMITTED and e.contractor_review_completed,
        "guards": (),
    },
    "send_to_final_review": {
        "from": {EntryStatus.SUBMITTED},
        "actors": {AUTHOR, ADMIN, CONTRACTOR},
        "to": EntryStatus.NEEDS_REVIEW,
        "already": lambda a, e: e.status == EntryStatus.NEEDS_REVIEW,
        "guards": ("contractor_review_completed",),
    },
    "return_to_contractor": {
        "from": {EntryStatus.NEEDS_REVIEW},
        "actors": {AUTHOR, ADMIN},
        "to": EntryStatus.SUBMITTED,
        "already": None,
        "guards": (),
    },
    "approve_for_signature": {
        "from": {EntryStatus.NEEDS_REVIEW},
        "actors": {AUTHOR, ADMIN},
        "to": EntryStatus.APPROVED,
        "already": lambda a, e: e.status in (EntryStatus.APPROVED, EntryStatus.SIGNED),
        "guards": ("contractor_review_completed", "all_reviews_complete", "has_signers"),
    },
    "reject": {
        "from": {EntryStatus.SUBMITTED, EntryStatus.NEEDS_REVIEW, EntryStatus.APPROVED},
        "actors": {AUTHOR, ADMIN},
        "to": EntryStatus.REJECTED,
        "already": lambda a, e: e.status == EntryStatus.REJECTED,
        "guards": ("approved_only_after_decline",),
    },
    "sign": {
        "from": set(SIGNABLE_STATUSES),
        "actors": {SIGNER},
        "to": None,
        "already": None,
        "guards": ("no_pending_review_gate", "all_reviews_complete"),
    },
    "decline_signature": {
        "from": {EntryStatus.APPROVED},
        "actors": {SIGNER},
        "to": None,
        "already": None,
        "guards": (),
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one operation for one caller."""
    action: str
    allowed: bool
    already_in_target_state: bool = False
    error: str | None = None        # invalid_transition | permission_denied | missing_task
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "allowed": self.allowed,
            "already_in_target_state": self.already_in_target_state,
            "error": self.error,
            "reason": self.reason,
        }


def evaluate(action: str, actor: ActorContext, entry: EntrySnapshot) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on ``entry``.

    Check order: read-only → caller relation → already-in-target →
    source status → guards.  An "already" outcome is allowed=True with
    ``already_in_target_state`` set so idempotent retries succeed.
    """
    rule = TRANSITION_RULES.get(action)
    if rule is None:
        return Decision(action, False, error="invalid_transition", reason=f"Unknown action: {action}")

    if actor.read_only:
        return Decision(action, False, error="permission_denied", reason="caller is read-only")

    relations = actor_relations(actor, entry)
    already = rule["already"]
    if not relations & rule["actors"]:
        # Task holders whose task is already terminal get the idempotent path
        if already is not None and already(actor, entry) and rule["actors"] <= set(_TASK_RELATIONS):
            return Decision(action, True, already_in_target_state=True)
        task_relations = rule["actors"] & set(_TASK_RELATIONS)
        if task_relations:
            kind = _TASK_RELATIONS[next(iter(task_relations))]
            return Decision(action, False, error="missing_task", reason=f"no pending {kind} task")
        return Decision(
            action, False, error="permission_denied",
            reason=f"requires one of: {', '.join(sorted(rule['actors']))}",
        )

    if already is not None and already(actor, entry):
        return Decision(action, True, already_in_target_state=True)

    if rule["from"] is not None and entry.status not in rule["from"]:
        return Decision(
            action, False, error="invalid_transition",
            reason=f"not allowed from status '{entry.status.value}'",
        )

    for guard_name in rule["guards"]:
        predicate, reason = GUARDS[guard_name]
        if not predicate(entry):
            return Decision(action, False, error="invalid_transition", reason=reason)

    return Decision(action, True)


def check(action: str, actor: ActorContext, entry: EntrySnapshot) -> Decision:
    """Like :func:`evaluate` but raises the matching workflow error on refusal."""
    decision = evaluate(action, actor, entry)
    if decision.allowed:
        return decision
    if decision.error == "missing_task":
        kind = "signature" if action in ("sign", "decline_signature") else "review"
        raise MissingTask(actor.user_id, action, kind)
    if decision.error == "permission_denied":
        raise PermissionDenied(actor.user_id, action, decision.reason)
    raise InvalidTransition(action, entry.status.value, decision.reason)


def target_status(action: str) -> EntryStatus | None:
    return TRANSITION_RULES[action]["to"]


# ═════════════════════════════════════════════════════════════════════════════
# UI predicates
# ═════════════════════════════════════════════════════════════════════════════

def can_edit(actor: ActorContext, entry: EntrySnapshot) -> bool:
    """Content editing: author, or an assignee / required signer before the author signs."""
    if actor.read_only or entry.status not in EDITABLE_STATUSES:
        return False
    if actor.is_contractor and not actor.is_admin:
        return False
    if actor.user_id == entry.author_id:
        return True
    participant = actor.user_id in entry.assignee_ids or actor.user_id in entry.signer_ids
    return participant and not entry.has_signed(entry.author_id)


def can_approve(actor: ActorContext, entry: EntrySnapshot) -> bool:
    decision = evaluate("approve_for_signature", actor, entry)
    return decision.allowed and not decision.already_in_target_state


def is_already_approved(actor: ActorContext, entry: EntrySnapshot) -> bool:
    return evaluate("approve_for_signature", actor, entry).already_in_target_state


def can_sign(actor: ActorContext, entry: EntrySnapshot) -> bool:
    return evaluate("sign", actor, entry).allowed


def can_complete_review(actor: ActorContext, entry: EntrySnapshot) -> bool:
    decision = evaluate("complete_review", actor, entry)
    return decision.allowed and not decision.already_in_target_state


def can_approve_review(actor: ActorContext, entry: EntrySnapshot) -> bool:
    decision = evaluate("approve_review", actor, entry)
    return decision.allowed and not decision.already_in_target_state


def _can_edit_responses(actor: ActorContext, entry: EntrySnapshot, *, own_party: bool, author_other_party: bool) -> bool:
    if actor.read_only or entry.status not in RESPONSE_EDITABLE_STATUSES:
        return False
    if entry.any_signed or not own_party:
        return False
    return author_other_party or entry.review_status_for(actor.user_id) == "PENDING"


def can_edit_contractor_responses(actor: ActorContext, entry: EntrySnapshot) -> bool:
    """Contractor adds responses to an entry authored by the supervising entity."""
    return _can_edit_responses(
        actor, entry,
        own_party=actor.is_contractor,
        author_other_party=entry.author_is_interventoria,
    )


def can_edit_interventoria_responses(actor: ActorContext, entry: EntrySnapshot) -> bool:
    """Supervising entity adds responses to an entry authored by the contractor."""
    return _can_edit_responses(
        actor, entry,
        own_party=actor.is_interventoria,
        author_other_party=entry.author_is_contractor,
    )


def can_change_signatories(actor: ActorContext, entry: EntrySnapshot) -> bool:
    """Signatory set: editable with the entry, frozen after the first signature."""
    if not can_edit(actor, entry) or entry.any_signed:
        return False
    return not entry.pending_review_by


def permissions_for(actor: ActorContext, entry: EntrySnapshot) -> dict:
    """Every flag the UI needs to decide which actions to offer."""
    flags = {
        "can_edit": can_edit(actor, entry),
        "can_approve": can_approve(actor, entry),
        "already_approved": is_already_approved(actor, entry),
        "can_sign": can_sign(actor, entry),
        "can_complete_review": can_complete_review(actor, entry),
        "can_approve_review": can_approve_review(actor, entry),
        "can_edit_contractor_responses": can_edit_contractor_responses(actor, entry),
        "can_edit_interventoria_responses": can_edit_interventoria_responses(actor, entry),
        "can_change_signatories": can_change_signatories(actor, entry),
    }
    for action in TRANSITION_RULES:
        decision = evaluate(action, actor, entry)
        flags.setdefault(f"can_{action}", decision.allowed and not decision.already_in_target_state)
    return flags
