"""
Shared pytest fixtures for the logbook workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_entry: ORM factories for arbitrary starting states
    - supervisor / contractor / resident / admin / viewer: typical participants
    - as_user: request headers identifying the caller (X-User-Id)
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import User
from app.models.logbook import EntrySignatory, EntryStatus, LogEntry, SignatureTask, next_folio_number
from app.utils.crypto import hash_password

PASSWORD = "obra-segura-2024"
CONSENT_STATEMENT = "Firmo la presente anotación de bitácora y acepto su contenido."


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


# bcrypt cost is irrelevant to behaviour; keep the suite fast
_PASSWORD_HASH = None


def _password_hash():
    global _PASSWORD_HASH
    if _PASSWORD_HASH is None:
        _PASSWORD_HASH = hash_password(PASSWORD, rounds=4)
    return _PASSWORD_HASH


@pytest.fixture()
def make_user():
    """Factory: make_user("Ana Ruiz", role="SUPERVISOR", entity="INTERVENTORIA")."""
    counter = {"n": 0}

    def _make(full_name, role="RESIDENT", entity=None, app_role="editor", status="active", cargo=None):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            full_name=full_name,
            project_role=role,
            entity=entity,
            app_role=app_role,
            status=status,
            cargo=cargo,
            password_hash=_password_hash(),
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_entry():
    """Factory: make_entry(author, signers=[...], status="APPROVED", signature_tasks=True).

    Writes rows directly so tests can start from any lifecycle state.
    """

    def _make(author, signers=(), assignees=(), status=EntryStatus.DRAFT, *, skip_author_as_signer=None,
              signature_tasks=False, **fields):
        if skip_author_as_signer is None:
            skip_author_as_signer = bool(signers) and author.id not in {u.id for u in signers}
        entry = LogEntry(
            folio_number=next_folio_number(),
            title=fields.pop("title", "Vaciado de concreto losa nivel 3"),
            description=fields.pop("description", "Se vacían 18 m3 de concreto 3000 psi."),
            status=status.value if isinstance(status, EntryStatus) else status,
            author_id=author.id,
            author=author,
            skip_author_as_signer=skip_author_as_signer,
            **fields,
        )
        entry.signatories = [
            EntrySignatory(user_id=u.id, user=u, position=i) for i, u in enumerate(signers)
        ]
        entry.assignees = list(assignees)
        _db.session.add(entry)
        _db.session.flush()
        if signature_tasks:
            for user in entry.effective_signers:
                _db.session.add(SignatureTask(entry=entry, signer_id=user.id, signer=user, status="PENDING"))
        _db.session.commit()
        return entry

    return _make


# ── Participants ─────────────────────────────────────────────────────────


@pytest.fixture()
def supervisor(make_user):
    """Supervising-entity engineer; authors most entries in the suite."""
    return make_user("Ana Ruiz", role="Interventoría", entity="INTERVENTORIA", cargo="Residente de interventoría")


@pytest.fixture()
def contractor(make_user):
    return make_user("Carlos Pérez", role="Representante Contratista", entity="CONTRATISTA")


@pytest.fixture()
def resident(make_user):
    return make_user("Beatriz Gómez", role="Residente de obra", entity="INTERVENTORIA")


@pytest.fixture()
def admin(make_user):
    return make_user("Diego Torres", role="Administrador IDU", entity="IDU")


@pytest.fixture()
def viewer(make_user):
    return make_user("Elena Vargas", role="RESIDENT", app_role="viewer")


@pytest.fixture()
def as_user():
    """Request headers identifying the caller (header identity is enabled in testing)."""

    def _headers(user, **extra):
        return {"X-User-Id": str(user.id), **extra}

    return _headers
