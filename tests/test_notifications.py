"""
Notification dispatcher and notification API.

The dispatcher runs after the transition commits; its failures must never
undo or fail the transition.
"""

from unittest.mock import patch

from app.models import db
from app.models.logbook import EntryStatus, LogEntry
from app.models.notification import Notification
from app.services import entry_lifecycle as lifecycle
from app.services.credential_service import ConsentPayload
from app.services.notification import NotificationService

from tests.conftest import CONSENT_STATEMENT, PASSWORD


def _inbox(user):
    items, _ = NotificationService.list_for_recipient(user.id)
    return items


# ═══════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════


class TestTransitionNotifications:
    def test_contractor_told_on_send_to_contractor(self, make_entry, supervisor, contractor):
        entry = make_entry(supervisor, signers=[supervisor, contractor])

        lifecycle.send_to_contractor(entry.id, supervisor.id)

        (notif,) = _inbox(contractor)
        assert notif.action == "send_to_contractor"
        assert notif.entry_id == entry.id
        assert notif.title == f"Entry #{entry.folio_number} sent for contractor review"
        assert _inbox(supervisor) == []

    def test_pending_signers_told_on_approval(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.NEEDS_REVIEW,
            contractor_review_completed=True,
        )
        lifecycle.approve_for_signature(entry.id, supervisor.id)

        (notif,) = _inbox(resident)
        assert notif.category == "signature"
        assert "ready for your signature" in notif.title

    def test_everyone_told_when_fully_signed(self, make_entry, supervisor, resident, admin):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], assignees=[admin],
            status=EntryStatus.APPROVED, signature_tasks=True,
        )
        consent = ConsentPayload(PASSWORD, True, CONSENT_STATEMENT)
        lifecycle.sign_entry(entry.id, resident.id, consent)
        lifecycle.sign_entry(entry.id, supervisor.id, consent)

        # admin only hears about the final signature
        assert [n.action for n in _inbox(admin)] == ["sign"]
        assert len(_inbox(supervisor)) == 1

    def test_reason_becomes_message(self, make_entry, supervisor, contractor):
        entry = make_entry(
            supervisor, signers=[supervisor, contractor], status=EntryStatus.NEEDS_REVIEW,
            contractor_review_completed=True,
        )
        lifecycle.return_to_contractor(entry.id, supervisor.id, reason="Adjuntar ensayo de cilindros")
        (notif,) = _inbox(contractor)
        assert notif.message == "Adjuntar ensayo de cilindros"
        assert notif.severity == "warning"

    def test_noop_sends_nothing(self, make_entry, supervisor, resident):
        entry = make_entry(
            supervisor, signers=[supervisor, resident], status=EntryStatus.NEEDS_REVIEW,
            contractor_review_completed=True,
        )
        lifecycle.approve_for_signature(entry.id, supervisor.id)
        lifecycle.approve_for_signature(entry.id, supervisor.id)
        assert len(_inbox(resident)) == 1

    def test_disabled_by_config(self, app, make_entry, supervisor, contractor, monkeypatch):
        monkeypatch.setitem(app.config, "LOGBOOK_NOTIFICATIONS_ENABLED", False)
        entry = make_entry(supervisor, signers=[supervisor, contractor])

        lifecycle.send_to_contractor(entry.id, supervisor.id)

        assert Notification.query.count() == 0

    def test_dispatch_failure_never_undoes_transition(self, make_entry, supervisor, contractor):
        entry = make_entry(supervisor, signers=[supervisor, contractor])

        with patch.object(NotificationService, "broadcast", side_effect=RuntimeError("db gone")), \
                patch("app.services.notification.logger") as mock_logger:
            result = lifecycle.send_to_contractor(entry.id, supervisor.id)

        assert result.new_status == EntryStatus.SUBMITTED
        mock_logger.warning.assert_called_once()
        assert db.session.get(LogEntry, entry.id).current_status == EntryStatus.SUBMITTED
        assert Notification.query.count() == 0


# ═══════════════════════════════════════════════════════════════
# Service queries
# ═══════════════════════════════════════════════════════════════


class TestNotificationService:
    def test_broadcast_dedupes_recipients(self, supervisor, resident):
        created = NotificationService.broadcast(
            recipient_ids=[supervisor.id, resident.id, supervisor.id], title="Aviso",
        )
        assert len(created) == 2

    def test_unread_and_mark_all(self, supervisor):
        for i in range(3):
            NotificationService.create(recipient_id=supervisor.id, title=f"Aviso {i}")
        assert NotificationService.unread_count(supervisor.id) == 3
        assert NotificationService.mark_all_read(supervisor.id) == 3
        assert NotificationService.unread_count(supervisor.id) == 0


# ═══════════════════════════════════════════════════════════════
# API
# ═══════════════════════════════════════════════════════════════


class TestNotificationAPI:
    def test_list(self, client, supervisor, as_user):
        NotificationService.create(recipient_id=supervisor.id, title="Primero")
        NotificationService.create(recipient_id=supervisor.id, title="Segundo")

        res = client.get("/api/v1/notifications", headers=as_user(supervisor))

        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 2
        assert data["unread"] == 2
        assert [n["title"] for n in data["items"]] == ["Segundo", "Primero"]

    def test_list_requires_caller(self, client):
        assert client.get("/api/v1/notifications").status_code == 401

    def test_unread_only(self, client, supervisor, as_user):
        read = NotificationService.create(recipient_id=supervisor.id, title="Leída")
        NotificationService.mark_read(read)
        NotificationService.create(recipient_id=supervisor.id, title="Nueva")

        res = client.get("/api/v1/notifications?unread_only=true", headers=as_user(supervisor))

        assert [n["title"] for n in res.get_json()["items"]] == ["Nueva"]

    def test_unread_count(self, client, supervisor, as_user):
        NotificationService.create(recipient_id=supervisor.id, title="x")
        res = client.get("/api/v1/notifications/unread-count", headers=as_user(supervisor))
        assert res.get_json() == {"unread_count": 1}

    def test_mark_read(self, client, supervisor, as_user):
        notif = NotificationService.create(recipient_id=supervisor.id, title="x")
        res = client.post(f"/api/v1/notifications/{notif.id}/read", json={}, headers=as_user(supervisor))
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True

    def test_mark_read_of_other_user(self, client, supervisor, resident, as_user):
        notif = NotificationService.create(recipient_id=supervisor.id, title="x")
        res = client.post(f"/api/v1/notifications/{notif.id}/read", json={}, headers=as_user(resident))
        assert res.status_code == 403

    def test_mark_read_missing(self, client, supervisor, as_user):
        res = client.post("/api/v1/notifications/777/read", json={}, headers=as_user(supervisor))
        assert res.status_code == 404

    def test_read_all(self, client, supervisor, resident, as_user):
        NotificationService.create(recipient_id=supervisor.id, title="a")
        NotificationService.create(recipient_id=supervisor.id, title="b")
        NotificationService.create(recipient_id=resident.id, title="c")

        res = client.post("/api/v1/notifications/read-all", json={}, headers=as_user(supervisor))

        assert res.get_json() == {"marked_read": 2}
        assert NotificationService.unread_count(resident.id) == 1
