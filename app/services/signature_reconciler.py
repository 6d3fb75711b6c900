"""
Signature Reconciler

Merges the three sources of signer information attached to an entry into a
single ordered, de-duplicated participant list:

    signature tasks      — authoritative, one per (entry, signer)
    legacy signatures    — historical flat list, read-only
    required signatories — declared intent, carries no status

Every input is first lifted into a ``SignerRecord`` tagged with its
provenance, so the priority rules live in one place (``_merge``).

Usage:
    from app.services.signature_reconciler import reconcile, snapshot_from_entry

    result = reconcile(*snapshot_from_entry(entry), caller_id=user.id)
    result.participants   # ordered list[SignerRecord]
    result.can_sign       # bool
    result.summary        # {"total", "signed", "pending", "completed"}

``reconcile`` is a pure function of its inputs.
"""

from __future__ import annotations

import sys
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class Provenance(str, Enum):
    TASK = "fromTask"
    LEGACY = "fromLegacy"
    REQUIRED = "fromRequiredList"


# Display severity; a merge never moves a participant to a lower value.
STATUS_SEVERITY = {
    "CANCELLED": 0,
    "PENDING": 1,
    "DECLINED": 2,
    "SIGNED": 3,
}

_UNORDERED = sys.maxsize


# ═════════════════════════════════════════════════════════════════════════════
# Input / output records
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SignerInfo:
    """Display identity of a signer."""
    id: int
    full_name: str = ""
    project_role: str | None = None
    cargo: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_user(cls, user) -> "SignerInfo":
        role = user.role
        return cls(
            id=user.id,
            full_name=user.full_name or "",
            project_role=role.value if role else user.project_role,
            cargo=user.cargo,
            avatar_url=user.avatar_url,
        )


@dataclass(frozen=True)
class TaskInput:
    signer: SignerInfo
    status: str
    signed_at: datetime | None = None


@dataclass(frozen=True)
class LegacyInput:
    signer: SignerInfo
    signed_at: datetime | None = None
    signature_task_status: str | None = None


@dataclass(frozen=True)
class SignerRecord:
    """One reconciled participant."""
    signer: SignerInfo
    status: str
    provenance: Provenance
    signed_at: datetime | None = None

    @property
    def signer_id(self) -> int:
        return self.signer.id

    def to_dict(self) -> dict:
        return {
            "signer_id": self.signer.id,
            "full_name": self.signer.full_name,
            "project_role": self.signer.project_role,
            "cargo": self.signer.cargo,
            "avatar_url": self.signer.avatar_url,
            "status": self.status,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "source": self.provenance.value,
        }


@dataclass
class ReconciliationResult:
    participants: list[SignerRecord] = field(default_factory=list)
    can_sign: bool = False

    @property
    def summary(self) -> dict:
        return signature_summary(self.participants)

    def to_dict(self) -> dict:
        return {
            "participants": [p.to_dict() for p in self.participants],
            "can_sign": self.can_sign,
            "summary": self.summary,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Algorithm
# ═════════════════════════════════════════════════════════════════════════════

def _name_key(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def _severity(status: str) -> int:
    return STATUS_SEVERITY.get(status, STATUS_SEVERITY["PENDING"])


def _merge(existing: SignerRecord | None, incoming: SignerRecord) -> SignerRecord:
    """Fold ``incoming`` into ``existing`` under the provenance / severity rules."""
    if existing is None:
        return incoming
    if existing.provenance == Provenance.TASK and incoming.provenance != Provenance.TASK:
        return existing

    if _severity(incoming.status) > _severity(existing.status):
        status = incoming.status
    else:
        status = existing.status

    signed_at = incoming.signed_at
    if signed_at is None and existing.status == "SIGNED":
        signed_at = existing.signed_at

    return replace(
        existing,
        signer=_merge_identity(existing.signer, incoming.signer),
        status=status,
        signed_at=signed_at if status == "SIGNED" else None,
        provenance=incoming.provenance if incoming.provenance == Provenance.TASK else existing.provenance,
    )


def _merge_identity(old: SignerInfo, new: SignerInfo) -> SignerInfo:
    return SignerInfo(
        id=old.id,
        full_name=new.full_name or old.full_name,
        project_role=new.project_role or old.project_role,
        cargo=new.cargo or old.cargo,
        avatar_url=new.avatar_url or old.avatar_url,
    )


def _legacy_status(sig: LegacyInput) -> str:
    if sig.signature_task_status in STATUS_SEVERITY:
        return sig.signature_task_status
    return "SIGNED" if sig.signed_at is not None else "PENDING"


def reconcile(
    tasks: list[TaskInput],
    legacy: list[LegacyInput],
    required: list[SignerInfo],
    *,
    caller_id: int | None = None,
    read_only: bool = False,
) -> ReconciliationResult:
    """Produce the ordered participant view and the caller's sign eligibility.

    Order: a signer's position at first appearance among tasks (or, without
    tasks, among required signatories). Signers only known from legacy or
    required data are slotted at ``len(order) + len(merged)`` as they are met.
    Duplicate task rows leave gaps in the positions, so a late signer can share
    a slot with an earlier one; such ties break on accent-folded name.
    """
    order: dict[int, int] = {}
    for index, task in enumerate(tasks):
        order.setdefault(task.signer.id, index)
    if not order:
        for index, signer in enumerate(required):
            order.setdefault(signer.id, index)

    legacy_by_signer = {sig.signer.id: sig for sig in legacy}
    task_signers = {task.signer.id for task in tasks}
    merged: dict[int, SignerRecord] = {}

    for task in tasks:
        signed_at = None
        if task.status == "SIGNED":
            fallback = legacy_by_signer.get(task.signer.id)
            signed_at = task.signed_at or (fallback.signed_at if fallback else None)
        merged[task.signer.id] = _merge(
            merged.get(task.signer.id),
            SignerRecord(task.signer, task.status, Provenance.TASK, signed_at),
        )

    for sig in legacy:
        if sig.signer.id in task_signers:
            continue
        status = _legacy_status(sig)
        merged[sig.signer.id] = _merge(
            merged.get(sig.signer.id),
            SignerRecord(sig.signer, status, Provenance.LEGACY, sig.signed_at if status == "SIGNED" else None),
        )
        order.setdefault(sig.signer.id, len(order) + len(merged))

    for signer in required:
        if signer.id in merged:
            continue
        merged[signer.id] = SignerRecord(signer, "PENDING", Provenance.REQUIRED)
        order.setdefault(signer.id, len(order) + len(merged))

    participants = sorted(
        merged.values(),
        key=lambda rec: (order.get(rec.signer_id, _UNORDERED), _name_key(rec.signer.full_name)),
    )
    return ReconciliationResult(
        participants=participants,
        can_sign=caller_can_sign(tasks, legacy, required, caller_id=caller_id, read_only=read_only),
    )


def caller_can_sign(
    tasks: list[TaskInput],
    legacy: list[LegacyInput],
    required: list[SignerInfo],
    *,
    caller_id: int | None,
    read_only: bool = False,
) -> bool:
    """A pending task, or (with no tasks at all) a required slot not yet signed."""
    if read_only or caller_id is None:
        return False
    if any(t.signer.id == caller_id and t.status == "PENDING" for t in tasks):
        return True
    if tasks:
        return False
    is_required = any(s.id == caller_id for s in required)
    has_legacy = any(sig.signer.id == caller_id for sig in legacy)
    return is_required and not has_legacy


def signature_summary(participants: list[SignerRecord]) -> dict:
    """Counts over non-cancelled participants."""
    active = [p for p in participants if p.status != "CANCELLED"]
    signed = sum(1 for p in active if p.status == "SIGNED")
    pending = sum(1 for p in active if p.status == "PENDING")
    total = len(active)
    return {
        "total": total,
        "signed": signed,
        "pending": pending,
        "completed": total > 0 and signed == total,
    }


# ═════════════════════════════════════════════════════════════════════════════
# ORM adapter
# ═════════════════════════════════════════════════════════════════════════════

def snapshot_from_entry(entry) -> tuple[list[TaskInput], list[LegacyInput], list[SignerInfo]]:
    """Lift an entry's relationships into reconciler inputs."""
    tasks = [
        TaskInput(SignerInfo.from_user(t.signer), t.status, t.signed_at)
        for t in entry.signature_tasks
        if t.signer is not None
    ]
    legacy = [
        LegacyInput(SignerInfo.from_user(s.signer), s.signed_at, s.signature_task_status)
        for s in entry.signatures
        if s.signer is not None
    ]
    required = [SignerInfo.from_user(u) for u in entry.effective_signers]
    return tasks, legacy, required
