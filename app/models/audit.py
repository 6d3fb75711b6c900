"""
Bitácora Digital — Logbook Workflow Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"log_entry", "review_task", "signature_task"}

AUDIT_ACTIONS = {
    "log_entry.create",
    "log_entry.update",
    "log_entry.update_signatories",
    "log_entry.send_to_contractor",
    "log_entry.send_for_review",
    "log_entry.approve_review",
    "log_entry.complete_review",
    "log_entry.complete_contractor_review",
    "log_entry.send_to_final_review",
    "log_entry.return_to_contractor",
    "log_entry.approve_for_signature",
    "log_entry.reject",
    "log_entry.sign",
    "log_entry.decline_signature",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries the old→new snapshot
    for field-level changes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(db.String(30), nullable=False, comment="log_entry | review_task | signature_task")
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="log_entry.sign | log_entry.reject | …")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Nullable for system entries",
    )
    actor_name_snapshot = db.Column(db.String(255), nullable=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor_name_snapshot,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor=None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` is a User (or None for system actions); its name is
    snapshotted so the trail survives user deletion.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=getattr(actor, "id", None),
        actor_name_snapshot=getattr(actor, "full_name", None),
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log


def history_for(entity_type: str, entity_id) -> list[AuditLog]:
    """Chronological (oldest first) audit rows for one entity."""
    return (
        AuditLog.query
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
