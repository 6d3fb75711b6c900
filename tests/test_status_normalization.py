"""
Status / role / entity alias normalisation.

Legacy rows carry Spanish display labels; these must collapse onto the
canonical enums before any workflow logic sees them.
"""

import pytest

from app.core.exceptions import ValidationError
from app.models.auth import Entity, Role, User, normalize_entity, normalize_role
from app.models.logbook import EntryStatus, STATUS_LABELS, normalize_status


@pytest.mark.parametrize("raw, expected", [
    ("DRAFT", EntryStatus.DRAFT),
    ("Borrador", EntryStatus.DRAFT),
    ("Radicado", EntryStatus.SUBMITTED),
    ("Revisión contratista", EntryStatus.SUBMITTED),
    ("revision final", EntryStatus.NEEDS_REVIEW),
    ("Aprobado", EntryStatus.APPROVED),
    ("Listo para firmas", EntryStatus.APPROVED),
    ("  FIRMADO ", EntryStatus.SIGNED),
    ("Firmada", EntryStatus.SIGNED),
    ("rechazado", EntryStatus.REJECTED),
    (EntryStatus.APPROVED, EntryStatus.APPROVED),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) is expected


@pytest.mark.parametrize("raw", ["Archivado", "", None, "PUBLISHED"])
def test_unknown_status_rejected(raw):
    with pytest.raises(ValidationError) as exc_info:
        normalize_status(raw)
    assert "status" in exc_info.value.details


def test_every_status_has_a_label_that_normalises_back():
    for status, label in STATUS_LABELS.items():
        assert normalize_status(label) is status


@pytest.mark.parametrize("raw, expected", [
    ("Residente de obra", Role.RESIDENT),
    ("Interventoría", Role.SUPERVISOR),
    ("SUPERVISOR", Role.SUPERVISOR),
    ("Representante Contratista", Role.CONTRACTOR_REP),
    ("contratista", Role.CONTRACTOR_REP),
    ("Administrador IDU", Role.ADMIN),
    ("ADMIN", Role.ADMIN),
])
def test_normalize_role(raw, expected):
    assert normalize_role(raw) is expected


def test_unknown_role_is_none():
    assert normalize_role("Arquitecto") is None
    assert normalize_role("") is None


def test_normalize_entity():
    assert normalize_entity("Interventoría") is Entity.INTERVENTORIA
    assert normalize_entity("contratista") is Entity.CONTRATISTA
    assert normalize_entity(None) is None


class TestUserParty:
    def test_entity_decides_party(self):
        user = User(full_name="X", email="x@example.com", project_role="RESIDENT", entity="CONTRATISTA")
        assert user.is_contractor
        assert not user.is_interventoria

    def test_role_decides_party_without_entity(self):
        user = User(full_name="X", email="x@example.com", project_role="Interventoría")
        assert user.is_interventoria
        assert not user.is_contractor

    def test_viewer_and_inactive_are_read_only(self):
        assert User(full_name="X", email="x@example.com", project_role="RESIDENT", app_role="viewer").is_read_only
        assert User(
            full_name="X", email="x@example.com", project_role="RESIDENT", app_role="editor", status="inactive",
        ).is_read_only
        assert not User(
            full_name="X", email="x@example.com", project_role="RESIDENT", app_role="editor", status="active",
        ).is_read_only

    def test_to_dict_exposes_canonical_role(self):
        user = User(full_name="X", email="x@example.com", project_role="Representante Contratista")
        assert user.to_dict()["project_role"] == "CONTRACTOR_REP"
