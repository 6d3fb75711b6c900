"""logbook_workflow_schema

Creates the logbook workflow tables:
  - users                     — project participants (role, entity, password hash)
  - log_entries               — daily logbook entries (optimistic-lock version)
  - log_entry_signatories     — ordered required-signatory list
  - log_entry_assignees       — designated reviewers (legacy review mode)
  - review_tasks              — one per (entry, reviewer)
  - signature_tasks           — one per (entry, signer)
  - signatures                — legacy flat signature records (read-only)
  - audit_logs                — append-only transition trail
  - notifications             — in-app notifications

Tables created conditionally (IF NOT EXISTS semantics) so the revision can be
applied to databases that already received them via db.create_all().

Revision ID: b1d0c7a4e201
Revises:
Create Date: 2026-10-19 09:12:41.318204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'b1d0c7a4e201'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Users ─────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("password_hash", sa.String(length=256), nullable=True),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column("avatar_url", sa.String(length=500), nullable=True),
            sa.Column("project_role", sa.String(length=60), nullable=False,
                      comment="Raw role label; normalised via normalize_role()"),
            sa.Column("app_role", sa.String(length=20), nullable=False,
                      server_default="editor", comment="admin | editor | viewer"),
            sa.Column("entity", sa.String(length=30), nullable=True,
                      comment="IDU | INTERVENTORIA | CONTRATISTA"),
            sa.Column("cargo", sa.String(length=200), nullable=True, comment="Job title, display only"),
            sa.Column("status", sa.String(length=20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_email", "users", ["email"])

    # ── Log entries ───────────────────────────────────────────────────────
    if "log_entries" not in existing:
        op.create_table(
            "log_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("folio_number", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("entry_date", sa.Date(), nullable=True),
            sa.Column("contractor_observations", sa.Text(), nullable=True),
            sa.Column("interventoria_observations", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="DRAFT"),
            sa.Column("author_id", sa.Integer(), nullable=False),
            sa.Column("skip_author_as_signer", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("pending_review_by", sa.String(length=30), nullable=True,
                      comment="ALL_SIGNERS while the per-signer review gate is open"),
            sa.Column("contractor_review_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("contractor_review_completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("contractor_reviewer_id", sa.Integer(), nullable=True),
            sa.Column("return_reason", sa.Text(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["author_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["contractor_reviewer_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_log_entries_folio_number", "log_entries", ["folio_number"], unique=True)
        op.create_index("ix_log_entries_status", "log_entries", ["status"])
        op.create_index("ix_log_entries_author_id", "log_entries", ["author_id"])

    if "log_entry_signatories" not in existing:
        op.create_table(
            "log_entry_signatories",
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("entry_id", "user_id"),
        )

    if "log_entry_assignees" not in existing:
        op.create_table(
            "log_entry_assignees",
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("entry_id", "user_id"),
        )

    # ── Tasks ─────────────────────────────────────────────────────────────
    if "review_tasks" not in existing:
        op.create_table(
            "review_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("reviewer_id", sa.Integer(), nullable=False),
            sa.Column("mode", sa.String(length=20), nullable=False,
                      server_default="ALL_SIGNERS", comment="ALL_SIGNERS | ASSIGNEE"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["reviewer_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entry_id", "reviewer_id", name="uq_review_task_entry_reviewer"),
        )
        op.create_index("ix_review_tasks_entry_id", "review_tasks", ["entry_id"])
        op.create_index("ix_review_tasks_reviewer_id", "review_tasks", ["reviewer_id"])

    if "signature_tasks" not in existing:
        op.create_table(
            "signature_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("signer_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True,
                      comment="When DECLINED / CANCELLED"),
            sa.Column("decline_reason", sa.Text(), nullable=True),
            sa.Column("artifact_ref", sa.String(length=200), nullable=True,
                      comment="Reference returned by the document store"),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["signer_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entry_id", "signer_id", name="uq_signature_task_entry_signer"),
        )
        op.create_index("ix_signature_tasks_entry_id", "signature_tasks", ["entry_id"])
        op.create_index("ix_signature_tasks_signer_id", "signature_tasks", ["signer_id"])

    if "signatures" not in existing:
        op.create_table(
            "signatures",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("signer_id", sa.Integer(), nullable=False),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("signature_task_status", sa.String(length=20), nullable=True),
            sa.Column("signature_task_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["signer_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_signatures_entry_id", "signatures", ["entry_id"])

    # ── Audit / notifications ─────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_name_snapshot", sa.String(length=255), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor_user_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entry_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["entry_id"], ["log_entries.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
        op.create_index("ix_notifications_entry_id", "notifications", ["entry_id"])


def downgrade():
    for table in (
        "notifications",
        "audit_logs",
        "signatures",
        "signature_tasks",
        "review_tasks",
        "log_entry_assignees",
        "log_entry_signatories",
        "log_entries",
        "users",
    ):
        op.drop_table(table)
