"""
Bitácora Digital — Logbook Workflow Service
Logbook domain models.

Models:
    - LogEntry:        daily logbook record under review / signature
    - EntrySignatory:  ordered required-signatory association (entry ↔ user)
    - ReviewTask:      one review obligation per (entry, reviewer)
    - SignatureTask:   one signature obligation per (entry, signer)
    - Signature:       legacy flat signature list — read-only, reconciled on display

Architecture:
    User ──1:N──▶ LogEntry (author)
    LogEntry ──1:N──▶ EntrySignatory ──N:1──▶ User
    LogEntry ──N:M──▶ User (assignees)
    LogEntry ──1:N──▶ ReviewTask | SignatureTask | Signature

Lifecycle states:
    LogEntry:       DRAFT → SUBMITTED → NEEDS_REVIEW → APPROVED → SIGNED
                    SUBMITTED | NEEDS_REVIEW → REJECTED
                    APPROVED → REJECTED (only after a signer declined)
                    NEEDS_REVIEW → SUBMITTED (return to contractor)
    ReviewTask:     PENDING → COMPLETED
    SignatureTask:  PENDING → SIGNED | DECLINED | CANCELLED
"""

import logging
import unicodedata
from datetime import datetime, timezone
from enum import Enum

from app.core.exceptions import ValidationError
from app.models import db

logger = logging.getLogger(__name__)


# ── Entry status ─────────────────────────────────────────────────────────────

class EntryStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    APPROVED = "APPROVED"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"


# Legacy display labels (and the canonical names themselves), accent- and
# case-folded. Keys are compared after _fold().
STATUS_ALIASES = {
    "draft": EntryStatus.DRAFT,
    "borrador": EntryStatus.DRAFT,
    "submitted": EntryStatus.SUBMITTED,
    "revision contratista": EntryStatus.SUBMITTED,
    "radicado": EntryStatus.SUBMITTED,
    "needs_review": EntryStatus.NEEDS_REVIEW,
    "revision final": EntryStatus.NEEDS_REVIEW,
    "approved": EntryStatus.APPROVED,
    "listo para firmas": EntryStatus.APPROVED,
    "aprobado": EntryStatus.APPROVED,
    "signed": EntryStatus.SIGNED,
    "firmado": EntryStatus.SIGNED,
    "firmada": EntryStatus.SIGNED,
    "rejected": EntryStatus.REJECTED,
    "rechazado": EntryStatus.REJECTED,
}

STATUS_LABELS = {
    EntryStatus.DRAFT: "Borrador",
    EntryStatus.SUBMITTED: "Revisión contratista",
    EntryStatus.NEEDS_REVIEW: "Revisión final",
    EntryStatus.APPROVED: "Listo para firmas",
    EntryStatus.SIGNED: "Firmado",
    EntryStatus.REJECTED: "Rechazado",
}

EDITABLE_STATUSES = frozenset({
    EntryStatus.DRAFT, EntryStatus.SUBMITTED, EntryStatus.APPROVED, EntryStatus.NEEDS_REVIEW,
})
SIGNABLE_STATUSES = frozenset({EntryStatus.APPROVED, EntryStatus.SIGNED})
RESPONSE_EDITABLE_STATUSES = frozenset({EntryStatus.SUBMITTED, EntryStatus.APPROVED})


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.strip())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def normalize_status(value) -> EntryStatus:
    """Collapse a stored / legacy status string onto ``EntryStatus``.

    Raises:
        ValidationError: the value matches no canonical state or alias.
    """
    if isinstance(value, EntryStatus):
        return value
    if value:
        status = STATUS_ALIASES.get(_fold(str(value)))
        if status is not None:
            return status
    raise ValidationError(
        f"Unknown entry status {value!r}",
        details={"status": f"must be one of {', '.join(s.value for s in EntryStatus)}"},
    )


# ── Review workflow markers ──────────────────────────────────────────────────

PENDING_REVIEW_ALL_SIGNERS = "ALL_SIGNERS"

REVIEW_MODE_ALL_SIGNERS = "ALL_SIGNERS"
REVIEW_MODE_ASSIGNEE = "ASSIGNEE"

REVIEW_TASK_STATUSES = {"PENDING", "COMPLETED"}

SIGNATURE_TASK_STATUSES = {"PENDING", "SIGNED", "DECLINED", "CANCELLED"}

SIGNATURE_TASK_TRANSITIONS = {
    "PENDING":   ["SIGNED", "DECLINED", "CANCELLED"],
    "SIGNED":    [],
    "DECLINED":  [],
    "CANCELLED": [],
}


def validate_signature_task_transition(old_status, new_status):
    """Return True if SignatureTask transition is valid."""
    return new_status in SIGNATURE_TASK_TRANSITIONS.get(old_status, [])


log_entry_assignees = db.Table(
    "log_entry_assignees",
    db.Column("entry_id", db.Integer, db.ForeignKey("log_entries.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class LogEntry(db.Model):
    """
    Daily logbook entry — the unit under review and signature.

    ``status`` is stored as a canonical string; legacy rows may still hold a
    Spanish display label, which ``current_status`` normalises on read.
    ``version`` is the optimistic-lock counter bumped on every UPDATE.
    """

    __tablename__ = "log_entries"

    id = db.Column(db.Integer, primary_key=True)
    folio_number = db.Column(db.Integer, nullable=True, unique=True, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    entry_date = db.Column(db.Date, nullable=True)

    contractor_observations = db.Column(db.Text, default="")
    interventoria_observations = db.Column(db.Text, default="")

    status = db.Column(db.String(30), nullable=False, default=EntryStatus.DRAFT.value, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    skip_author_as_signer = db.Column(db.Boolean, nullable=False, default=False)

    # Review gates
    pending_review_by = db.Column(
        db.String(30), nullable=True,
        comment="ALL_SIGNERS while the per-signer review gate is open",
    )
    contractor_review_completed = db.Column(db.Boolean, nullable=False, default=False)
    contractor_review_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    contractor_reviewer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    return_reason = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    author = db.relationship("User", foreign_keys=[author_id], lazy="joined")
    contractor_reviewer = db.relationship("User", foreign_keys=[contractor_reviewer_id])
    signatories = db.relationship(
        "EntrySignatory", back_populates="entry",
        order_by="EntrySignatory.position",
        cascade="all, delete-orphan",
    )
    assignees = db.relationship("User", secondary=log_entry_assignees, order_by="User.id")
    review_tasks = db.relationship(
        "ReviewTask", back_populates="entry",
        order_by="ReviewTask.id", cascade="all, delete-orphan",
    )
    signature_tasks = db.relationship(
        "SignatureTask", back_populates="entry",
        order_by="SignatureTask.id", cascade="all, delete-orphan",
    )
    signatures = db.relationship(
        "Signature", back_populates="entry",
        order_by="Signature.id", cascade="all, delete-orphan",
    )

    # ── Derived state ────────────────────────────────────────────────────

    @property
    def current_status(self) -> EntryStatus:
        """Canonical status of the stored value.

        A stored label outside the alias table reads as DRAFT, the earliest
        state, so the entry stays listable and can be re-sent through review.
        """
        try:
            return normalize_status(self.status)
        except ValidationError:
            logger.warning("Entry %s has unknown stored status %r; reading it as DRAFT", self.id, self.status)
            return EntryStatus.DRAFT

    @property
    def required_signatories(self) -> list:
        return [s.user for s in self.signatories if s.user is not None]

    @property
    def effective_signers(self) -> list:
        """Users who must sign: the author (unless exempted) plus the required list."""
        signers = []
        seen = set()
        if not self.skip_author_as_signer and self.author is not None:
            signers.append(self.author)
            seen.add(self.author_id)
        for user in self.required_signatories:
            if self.skip_author_as_signer and user.id == self.author_id:
                continue
            if user.id not in seen:
                signers.append(user)
                seen.add(user.id)
        return signers

    @property
    def all_reviews_complete(self) -> bool:
        """True iff every ReviewTask is COMPLETED (vacuously true with none)."""
        return all(t.status == "COMPLETED" for t in self.review_tasks)

    @property
    def has_signed_signature(self) -> bool:
        if any(t.status == "SIGNED" for t in self.signature_tasks):
            return True
        return any(s.signed_at is not None for s in self.signatures)

    def review_task_for(self, user_id):
        return next((t for t in self.review_tasks if t.reviewer_id == user_id), None)

    def signature_task_for(self, user_id):
        return next((t for t in self.signature_tasks if t.signer_id == user_id), None)

    def to_dict(self, include_tasks=True):
        status = self.current_status
        d = {
            "id": self.id,
            "folio_number": self.folio_number,
            "title": self.title,
            "description": self.description,
            "entry_date": self.entry_date.isoformat() if self.entry_date else None,
            "contractor_observations": self.contractor_observations or "",
            "interventoria_observations": self.interventoria_observations or "",
            "status": status.value,
            "status_label": STATUS_LABELS[status],
            "author": self.author.to_dict() if self.author else None,
            "skip_author_as_signer": self.skip_author_as_signer,
            "required_signatories": [u.to_dict() for u in self.required_signatories],
            "assignees": [u.to_dict() for u in self.assignees],
            "pending_review_by": self.pending_review_by,
            "contractor_review_completed": self.contractor_review_completed,
            "contractor_review_completed_at": (
                self.contractor_review_completed_at.isoformat() if self.contractor_review_completed_at else None
            ),
            "all_reviews_complete": self.all_reviews_complete,
            "return_reason": self.return_reason,
            "rejection_reason": self.rejection_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_tasks:
            d["review_tasks"] = [t.to_dict() for t in self.review_tasks]
            d["signature_tasks"] = [t.to_dict() for t in self.signature_tasks]
        return d

    def __repr__(self):
        return f"<LogEntry {self.id}: {self.status}>"


class EntrySignatory(db.Model):
    """Ordered membership of a user in an entry's required-signatory list."""

    __tablename__ = "log_entry_signatories"

    entry_id = db.Column(db.Integer, db.ForeignKey("log_entries.id", ondelete="CASCADE"), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    entry = db.relationship("LogEntry", back_populates="signatories")
    user = db.relationship("User", lazy="joined")


class ReviewTask(db.Model):
    """
    One review obligation per (entry, reviewer).

    Business rules:
    - Never deleted, only transitioned PENDING → COMPLETED.
    - Completion is terminal; repeated completion is a no-op.
    """

    __tablename__ = "review_tasks"

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("log_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    mode = db.Column(db.String(20), nullable=False, default=REVIEW_MODE_ALL_SIGNERS, comment="ALL_SIGNERS | ASSIGNEE")
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("entry_id", "reviewer_id", name="uq_review_task_entry_reviewer"),
    )

    entry = db.relationship("LogEntry", back_populates="review_tasks")
    reviewer = db.relationship("User", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "reviewer": self.reviewer.to_dict() if self.reviewer else None,
            "mode": self.mode,
            "status": self.status,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<ReviewTask {self.id}: entry={self.entry_id} reviewer={self.reviewer_id} {self.status}>"


class SignatureTask(db.Model):
    """
    One signature obligation per (entry, signer).

    Business rules:
    - SIGNED, DECLINED and CANCELLED are terminal and never overwritten.
    - Removing a signer cancels the task instead of deleting it.
    """

    __tablename__ = "signature_tasks"

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("log_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    signer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True, comment="When DECLINED / CANCELLED")
    decline_reason = db.Column(db.Text, nullable=True)
    artifact_ref = db.Column(db.String(200), nullable=True, comment="Reference returned by the document store")

    __table_args__ = (
        db.UniqueConstraint("entry_id", "signer_id", name="uq_signature_task_entry_signer"),
    )

    entry = db.relationship("LogEntry", back_populates="signature_tasks")
    signer = db.relationship("User", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "signer": self.signer.to_dict() if self.signer else None,
            "status": self.status,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "decline_reason": self.decline_reason,
            "artifact_ref": self.artifact_ref,
        }

    def __repr__(self):
        return f"<SignatureTask {self.id}: entry={self.entry_id} signer={self.signer_id} {self.status}>"


class Signature(db.Model):
    """
    Legacy signature record — pre-dates SignatureTask.

    Never written by current code paths; still read and reconciled so that
    historical entries display a consistent signer view.
    """

    __tablename__ = "signatures"

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("log_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    signer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signature_task_status = db.Column(db.String(20), nullable=True)
    signature_task_id = db.Column(db.Integer, nullable=True)

    entry = db.relationship("LogEntry", back_populates="signatures")
    signer = db.relationship("User", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "signer": self.signer.to_dict() if self.signer else None,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "signature_task_status": self.signature_task_status,
            "signature_task_id": self.signature_task_id,
        }


# ── Folio numbering ──────────────────────────────────────────────────────────

def next_folio_number() -> int:
    """
    Next sequential folio for a new entry.

    Race-safe on PostgreSQL via SELECT ... FOR UPDATE on the current maximum;
    the unique constraint on ``folio_number`` catches anything that slips past.
    """
    last = (
        LogEntry.query
        .filter(LogEntry.folio_number.isnot(None))
        .order_by(LogEntry.folio_number.desc())
        .with_for_update(of=LogEntry)
        .first()
    )
    return (last.folio_number + 1) if last else 1
