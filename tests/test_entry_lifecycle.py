"""
Entry lifecycle state machine — service-level tests.

Covers:
  - per-signatory review (send_for_review → approve_review by every signer)
  - the contractor path DRAFT → SUBMITTED → NEEDS_REVIEW → APPROVED → SIGNED
  - idempotent repeats (already_in_target_state, no duplicate tasks / audit)
  - error kinds: InvalidTransition, PermissionDenied, MissingTask,
    InvalidCredentials, ConcurrentModificationConflict
  - reject / decline / return-to-contractor side effects
  - legacy entries without signature tasks
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import (
    ConcurrentModificationConflict,
    InvalidCredentials,
    InvalidTransition,
    MissingTask,
    NotFoundError,
    PermissionDenied,
)
from app.integrations.document_store import DocumentStoreError
from app.models import db
from app.models.audit import AuditLog
from app.models.logbook import (
    PENDING_REVIEW_ALL_SIGNERS,
    EntryStatus,
    LogEntry,
    ReviewTask,
    Signature,
    SignatureTask,
)
from app.services import entry_lifecycle as lifecycle
from app.services import log_entry_service as svc
from app.services.credential_service import ConsentPayload

from tests.conftest import CONSENT_STATEMENT, PASSWORD

CONSENT = ConsentPayload(PASSWORD, True, CONSENT_STATEMENT)


def _reload(entry_id) -> LogEntry:
    db.session.expire_all()
    return db.session.get(LogEntry, entry_id)


def _audit_actions(entry_id):
    return [
        row.action
        for row in AuditLog.query.filter_by(entity_type="log_entry", entity_id=str(entry_id)).order_by(AuditLog.id)
    ]


# ═══════════════════════════════════════════════════════════════
# Per-signatory review
# ═══════════════════════════════════════════════════════════════


class TestPerSignerReview:
    def test_every_signer_must_review(self, make_entry, supervisor, resident):
        entry = make_entry(supervisor, signers=[supervisor, resident])

        result = lifecycle.send_for_review(entry.id, supervisor.id)
        assert result.new_status == EntryStatus.DRAFT
        assert sorted(t.reviewer_id for t in result.created_tasks) == sorted([supervisor.id, resident.id])
        entry = _reload(entry.id)
        assert entry.pending_review_by == PENDING_REVIEW_ALL_SIGNERS
        assert not entry.all_reviews_complete

        result = lifecycle.approve_review(entry.id, resident.id)
        assert result.review_gate_cleared is False
        entry = _reload(entry.id)
        assert entry.review_task_for(resident.id).status == "COMPLETED"
        assert entry.pending_review_by == PENDING_REVIEW_ALL_SIGNERS

        result = lifecycle.approve_review(entry.id, supervisor.id)
        assert result.review_gate_cleared is True
        entry = _reload(entry.id)
        assert entry.pending_review_by is None
        assert entry.all_reviews_complete

    def test_repeat_review_is_noop(self, make_entry, supervisor, resident):
        entry = make_entry(supervisor, signers=[supervisor, resident])
        lifecycle.send_for_review(entry.id, supervisor.id)
        lifecycle.complete_review(entry.id, resident.id)

        again = lifecycle.complete_review(entry.id, resident.id)

        assert again.already_in_target_state is True
        assert _audit_actions(entry.id).count("log_entry.complete_review") == 1

    def test_send_for_review_twice(self, make_entry, supervisor, resident):
        entry = make_entry(supervisor, signers=[supervisor, resident])
        lifecycle.send_for_review(entry.id, supervisor.id)
        again = lifecycle.send_for_review(entry.id, supervisor.id)
        assert again.already_in_target_state is True
        assert ReviewTask.query.filter_by(entry_id=entry.id).count() == 2

    def test_non_reviewer_gets_missing_task(self, make_entry, supervisor, resident, contractor):
        entry = make_entry(supervisor, signers=[supervisor, resident])
        lifecycle.send_for_review(entry.id, supervisor.id)
        with pytest.raises(MissingTask) as exc_info:
            lifecycle.approve_review(entry.id, contractor.id)
        assert exc_info.value.task_kind == "review"

    def test_send_for_review_requires_signers(self, make_entry, supervisor):
        entry = make_entry(supervisor, skip_author_as_signer=True)
        with pytest.raises(InvalidTransition):
            lifecycle.send_for_review(entry.id, supervisor.id)

    def test_signing_blocked_while_gate_open(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.APPROVED,
            signature_tasks=True, pending_review_by=PENDING_REVIEW_ALL_SIGNERS,
        )
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        assert "reviews are still pending" in exc_info.value.reason
        assert _reload(entry.id).signature_task_for(supervisor.id).status == "PENDING"


# ═══════════════════════════════════════════════════════════════
# Contractor path and approval
# ═══════════════════════════════════════════════════════════════


class TestContractorPath:
    def test_full_path_to_signed(self, make_entry, supervisor, resident, contractor):
        entry = make_entry(supervisor, signers=[supervisor, resident], assignees=[resident])

        assert lifecycle.send_to_contractor(entry.id, supervisor.id).new_status == EntryStatus.SUBMITTED

        lifecycle.complete_contractor_review(entry.id, contractor.id)
        entry = _reload(entry.id)
        assert entry.contractor_review_completed is True
        assert entry.contractor_reviewer_id == contractor.id

        result = lifecycle.send_to_final_review(entry.id, contractor.id)
        assert result.new_status == EntryStatus.NEEDS_REVIEW
        assert [t.reviewer_id for t in result.created_tasks] == [resident.id]

        # the assignee's review is still pending
        with pytest.raises(InvalidTransition):
            lifecycle.approve_for_signature(entry.id, supervisor.id)

        lifecycle.approve_review(entry.id, resident.id)
        result = lifecycle.approve_for_signature(entry.id, supervisor.id)
        assert result.new_status == EntryStatus.APPROVED
        assert len(result.created_tasks) == 2

        first = lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        assert first.new_status == EntryStatus.APPROVED
        second = lifecycle.sign_entry(entry.id, resident.id, CONSENT)
        assert second.new_status == EntryStatus.SIGNED

        assert _audit_actions(entry.id) == [
            "log_entry.send_to_contractor",
            "log_entry.complete_contractor_review",
            "log_entry.send_to_final_review",
            "log_entry.approve_review",
            "log_entry.approve_for_signature",
            "log_entry.sign",
            "log_entry.sign",
        ]

    def test_final_review_requires_contractor_review(self, make_entry, supervisor):
        entry = make_entry(supervisor, status=EntryStatus.SUBMITTED)
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.send_to_final_review(entry.id, supervisor.id)
        assert exc_info.value.current_status == "SUBMITTED"

    def test_contractor_review_only_from_submitted(self, make_entry, supervisor, contractor):
        entry = make_entry(supervisor)
        with pytest.raises(InvalidTransition):
            lifecycle.complete_contractor_review(entry.id, contractor.id)

    def test_contractor_review_twice(self, make_entry, supervisor, contractor):
        entry = make_entry(supervisor, status=EntryStatus.SUBMITTED)
        lifecycle.complete_contractor_review(entry.id, contractor.id)
        assert lifecycle.complete_contractor_review(entry.id, contractor.id).already_in_target_state

    def test_return_to_contractor(self, make_entry, supervisor):
        entry = make_entry(supervisor, status=EntryStatus.NEEDS_REVIEW, contractor_review_completed=True)

        result = lifecycle.return_to_contractor(entry.id, supervisor.id, reason="Falta registro fotográfico")

        assert result.new_status == EntryStatus.SUBMITTED
        entry = _reload(entry.id)
        assert entry.contractor_review_completed is False
        assert entry.return_reason == "Falta registro fotográfico"
        with pytest.raises(InvalidTransition):
            lifecycle.return_to_contractor(entry.id, supervisor.id)


class TestApproveForSignature:
    def _ready(self, make_entry, author, signers):
        return make_entry(author, signers=signers, status=EntryStatus.NEEDS_REVIEW, contractor_review_completed=True)

    def test_double_approve_creates_one_task_set(self, make_entry, supervisor, resident):
        entry = self._ready(make_entry, supervisor, [supervisor, resident])

        first = lifecycle.approve_for_signature(entry.id, supervisor.id)
        second = lifecycle.approve_for_signature(entry.id, supervisor.id)

        assert first.already_in_target_state is False
        assert second.already_in_target_state is True
        assert second.new_status == EntryStatus.APPROVED
        assert SignatureTask.query.filter_by(entry_id=entry.id).count() == 2
        assert _audit_actions(entry.id) == ["log_entry.approve_for_signature"]

    def test_noop_does_not_bump_version(self, make_entry, supervisor):
        entry = self._ready(make_entry, supervisor, [supervisor])
        lifecycle.approve_for_signature(entry.id, supervisor.id)
        version = _reload(entry.id).version
        lifecycle.approve_for_signature(entry.id, supervisor.id)
        assert _reload(entry.id).version == version

    def test_admin_may_approve(self, make_entry, supervisor, admin):
        entry = self._ready(make_entry, supervisor, [supervisor])
        assert lifecycle.approve_for_signature(entry.id, admin.id).new_status == EntryStatus.APPROVED

    def test_contractor_is_denied(self, make_entry, supervisor, contractor):
        entry = self._ready(make_entry, supervisor, [supervisor])
        with pytest.raises(PermissionDenied) as exc_info:
            lifecycle.approve_for_signature(entry.id, contractor.id)
        assert exc_info.value.action == "approve_for_signature"
        assert _reload(entry.id).current_status == EntryStatus.NEEDS_REVIEW

    def test_viewer_is_denied(self, make_entry, supervisor, viewer):
        entry = self._ready(make_entry, supervisor, [supervisor])
        with pytest.raises(PermissionDenied):
            lifecycle.approve_for_signature(entry.id, viewer.id)

    def test_from_draft_is_invalid(self, make_entry, supervisor):
        entry = make_entry(supervisor, signers=[supervisor])
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.approve_for_signature(entry.id, supervisor.id)
        assert exc_info.value.current_status == "DRAFT"

    def test_requires_contractor_review(self, make_entry, supervisor):
        entry = make_entry(supervisor, signers=[supervisor], status=EntryStatus.NEEDS_REVIEW)
        with pytest.raises(InvalidTransition):
            lifecycle.approve_for_signature(entry.id, supervisor.id)


# ═══════════════════════════════════════════════════════════════
# Signing
# ═══════════════════════════════════════════════════════════════


class TestSigning:
    def _approved(self, make_entry, author, signers):
        return make_entry(author, signers=signers, status=EntryStatus.APPROVED, signature_tasks=True)

    def test_a_then_b(self, make_entry, supervisor, resident):
        entry = self._approved(make_entry, supervisor, [supervisor, resident])

        first = lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        assert first.artifact_ref.startswith("sha256:")
        entry = _reload(entry.id)
        assert entry.current_status == EntryStatus.APPROVED
        task = entry.signature_task_for(supervisor.id)
        assert task.status == "SIGNED"
        assert task.artifact_ref == first.artifact_ref
        assert task.signed_at is not None

        lifecycle.sign_entry(entry.id, resident.id, CONSENT)
        assert _reload(entry.id).current_status == EntryStatus.SIGNED

    def test_wrong_password_keeps_task_pending(self, make_entry, supervisor):
        entry = self._approved(make_entry, supervisor, [supervisor])
        with pytest.raises(InvalidCredentials):
            lifecycle.sign_entry(entry.id, supervisor.id, ConsentPayload("wrong", True, CONSENT_STATEMENT))
        assert _reload(entry.id).signature_task_for(supervisor.id).status == "PENDING"
        assert "log_entry.sign" not in _audit_actions(entry.id)

    @pytest.mark.parametrize("consent", [
        ConsentPayload(PASSWORD, False, CONSENT_STATEMENT),
        ConsentPayload(PASSWORD, True, ""),
    ])
    def test_consent_required(self, make_entry, supervisor, consent):
        entry = self._approved(make_entry, supervisor, [supervisor])
        with pytest.raises(InvalidCredentials):
            lifecycle.sign_entry(entry.id, supervisor.id, consent)

    def test_non_signer_gets_missing_task(self, make_entry, supervisor, contractor):
        entry = self._approved(make_entry, supervisor, [supervisor])
        with pytest.raises(MissingTask) as exc_info:
            lifecycle.sign_entry(entry.id, contractor.id, CONSENT)
        assert exc_info.value.task_kind == "signature"

    def test_cannot_sign_twice(self, make_entry, supervisor, resident):
        entry = self._approved(make_entry, supervisor, [supervisor, resident])
        lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        with pytest.raises(MissingTask):
            lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)

    def test_document_store_failure_rolls_back(self, app, make_entry, supervisor, monkeypatch):
        entry = self._approved(make_entry, supervisor, [supervisor])
        store = MagicMock()
        store.apply_signature.side_effect = DocumentStoreError("HTTP 503")
        monkeypatch.setitem(app.extensions, "document_store", store)

        with pytest.raises(DocumentStoreError):
            lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)

        store.apply_signature.assert_called_once()
        entry = _reload(entry.id)
        assert entry.signature_task_for(supervisor.id).status == "PENDING"
        assert entry.current_status == EntryStatus.APPROVED

    def test_decline(self, make_entry, supervisor, resident):
        entry = self._approved(make_entry, supervisor, [supervisor, resident])

        result = lifecycle.decline_signature(entry.id, resident.id, reason="Las cantidades no coinciden")

        assert result.new_status == EntryStatus.APPROVED
        task = _reload(entry.id).signature_task_for(resident.id)
        assert task.status == "DECLINED"
        assert task.decline_reason == "Las cantidades no coinciden"

        # a declined signer blocks completion
        lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        assert _reload(entry.id).current_status == EntryStatus.APPROVED

        with pytest.raises(MissingTask):
            lifecycle.decline_signature(entry.id, resident.id)

    def test_removed_decliner_no_longer_blocks_completion(self, make_entry, make_user, supervisor, resident):
        inspector = make_user("Fernando Díaz", role="Residente de obra")
        entry = self._approved(make_entry, supervisor, [supervisor, resident, inspector])

        lifecycle.decline_signature(entry.id, resident.id, reason="Falta el ensayo de asentamiento")
        svc.update_signatories(entry.id, supervisor.id, [supervisor.id, inspector.id])
        lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        result = lifecycle.sign_entry(entry.id, inspector.id, CONSENT)

        assert result.new_status == EntryStatus.SIGNED
        entry = _reload(entry.id)
        assert entry.current_status == EntryStatus.SIGNED
        # the declined task is kept for the record
        assert entry.signature_task_for(resident.id).status == "DECLINED"

    def test_legacy_entry_backfills_tasks(self, make_entry, supervisor, resident):
        entry = make_entry(supervisor, signers=[supervisor, resident], status="Listo para firmas")
        db.session.add(Signature(
            entry_id=entry.id, signer_id=resident.id,
            signed_at=datetime(2023, 11, 20, 16, 0, tzinfo=timezone.utc),
        ))
        db.session.commit()

        result = lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)

        assert result.new_status == EntryStatus.SIGNED
        entry = _reload(entry.id)
        assert [t.signer_id for t in entry.signature_tasks] == [supervisor.id]
        assert entry.status == "SIGNED"


# ═══════════════════════════════════════════════════════════════
# Rejection
# ═══════════════════════════════════════════════════════════════


class TestReject:
    def test_reject_cancels_pending_signature_tasks(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.NEEDS_REVIEW, signature_tasks=True,
        )

        result = lifecycle.reject_entry(entry.id, supervisor.id, reason="Anotación duplicada")

        assert result.new_status == EntryStatus.REJECTED
        entry = _reload(entry.id)
        assert entry.rejection_reason == "Anotación duplicada"
        assert {t.status for t in entry.signature_tasks} == {"CANCELLED"}

    def test_reject_twice(self, make_entry, supervisor):
        entry = make_entry(supervisor, status=EntryStatus.SUBMITTED)
        lifecycle.reject_entry(entry.id, supervisor.id)
        assert lifecycle.reject_entry(entry.id, supervisor.id).already_in_target_state is True

    def test_reject_approved_entry_after_decline(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.APPROVED, signature_tasks=True,
        )
        lifecycle.sign_entry(entry.id, supervisor.id, CONSENT)
        lifecycle.decline_signature(entry.id, resident.id, reason="No corresponde a la obra")

        result = lifecycle.reject_entry(entry.id, supervisor.id, reason="Firmante rechazó la anotación")

        assert result.new_status == EntryStatus.REJECTED
        entry = _reload(entry.id)
        assert entry.signature_task_for(supervisor.id).status == "SIGNED"
        assert entry.signature_task_for(resident.id).status == "DECLINED"

    def test_approved_entry_without_decline_cannot_be_rejected(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.APPROVED, signature_tasks=True,
        )
        with pytest.raises(InvalidTransition):
            lifecycle.reject_entry(entry.id, supervisor.id)
        assert _reload(entry.id).current_status == EntryStatus.APPROVED

    def test_rejected_is_terminal(self, make_entry, supervisor):
        entry = make_entry(supervisor, status=EntryStatus.REJECTED)
        with pytest.raises(InvalidTransition):
            lifecycle.send_to_contractor(entry.id, supervisor.id)


# ═══════════════════════════════════════════════════════════════
# Concurrency, lookup errors and audit
# ═══════════════════════════════════════════════════════════════


class TestVersioningAndAudit:
    def test_version_bumps_on_transition(self, make_entry, supervisor):
        entry = make_entry(supervisor)
        before = entry.version
        lifecycle.send_to_contractor(entry.id, supervisor.id, expected_version=before)
        assert _reload(entry.id).version == before + 1

    def test_stale_version_is_rejected(self, make_entry, supervisor):
        entry = make_entry(supervisor)
        stale = entry.version
        lifecycle.send_to_contractor(entry.id, supervisor.id)

        with pytest.raises(ConcurrentModificationConflict) as exc_info:
            lifecycle.reject_entry(entry.id, supervisor.id, expected_version=stale)

        details = exc_info.value.to_details()
        assert details["retryable"] is True
        assert details["current_version"] == stale + 1
        assert _reload(entry.id).current_status == EntryStatus.SUBMITTED

    def test_unknown_entry(self, supervisor):
        with pytest.raises(NotFoundError):
            lifecycle.send_to_contractor(99999, supervisor.id)

    def test_unknown_user(self, make_entry, supervisor):
        entry = make_entry(supervisor)
        with pytest.raises(NotFoundError):
            lifecycle.send_to_contractor(entry.id, 99999)

    def test_unknown_action(self, make_entry, supervisor):
        entry = make_entry(supervisor)
        with pytest.raises(InvalidTransition):
            lifecycle.transition_entry(entry.id, "publish", supervisor.id)

    def test_audit_row_carries_diff_and_actor(self, make_entry, supervisor):
        entry = make_entry(supervisor)
        lifecycle.send_to_contractor(entry.id, supervisor.id)

        row = AuditLog.query.filter_by(action="log_entry.send_to_contractor").one()
        assert row.entity_id == str(entry.id)
        assert row.actor_user_id == supervisor.id
        assert row.actor_name_snapshot == "Ana Ruiz"
        assert row.diff == {"status": {"old": "DRAFT", "new": "SUBMITTED"}}

    def test_transition_logged_at_info(self, make_entry, supervisor, monkeypatch):
        entry = make_entry(supervisor)
        logger = MagicMock()
        monkeypatch.setattr(lifecycle, "logger", logger)

        lifecycle.send_to_contractor(entry.id, supervisor.id)

        logger.info.assert_called_once()
        extra = logger.info.call_args.kwargs["extra"]
        assert extra["action"] == "send_to_contractor"
        assert extra["previous_status"] == "DRAFT"
        assert extra["new_status"] == "SUBMITTED"
