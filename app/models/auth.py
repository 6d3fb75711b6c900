"""
Bitácora Digital — Logbook Workflow Service
Identity domain model.

Models:
    - User: project participant (author, reviewer, signer)

Project roles are stored as the raw string the record was created with.
Historical data carries several aliases for the same role ("Contratista",
"Representante Contratista", "CONTRACTOR_REP", ...); ``normalize_role``
collapses them onto the ``Role`` enum before any permission logic runs.
"""

import unicodedata
from datetime import datetime, timezone
from enum import Enum

from app.models import db


class Role(str, Enum):
    """Canonical project roles."""
    RESIDENT = "RESIDENT"
    SUPERVISOR = "SUPERVISOR"
    CONTRACTOR_REP = "CONTRACTOR_REP"
    ADMIN = "ADMIN"


class Entity(str, Enum):
    """Organisation a user belongs to."""
    IDU = "IDU"
    INTERVENTORIA = "INTERVENTORIA"
    CONTRATISTA = "CONTRATISTA"


APP_ROLES = {"admin", "editor", "viewer"}


def _fold(value: str) -> str:
    """Lower-case and strip accents so "Interventoría" == "interventoria"."""
    decomposed = unicodedata.normalize("NFKD", value.strip())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


_ROLE_ALIASES = {
    "resident": Role.RESIDENT,
    "residente de obra": Role.RESIDENT,
    "residente": Role.RESIDENT,
    "supervisor": Role.SUPERVISOR,
    "interventoria": Role.SUPERVISOR,
    "contractor_rep": Role.CONTRACTOR_REP,
    "contratista": Role.CONTRACTOR_REP,
    "representante contratista": Role.CONTRACTOR_REP,
    "invitado": Role.CONTRACTOR_REP,
    "admin": Role.ADMIN,
    "idu": Role.ADMIN,
    "administrador idu": Role.ADMIN,
}

_ENTITY_ALIASES = {
    "idu": Entity.IDU,
    "interventoria": Entity.INTERVENTORIA,
    "contratista": Entity.CONTRATISTA,
}


def normalize_role(value) -> Role | None:
    """Map a stored / legacy project-role string onto ``Role``.

    Returns None when the value is empty or unrecognised.
    """
    if isinstance(value, Role):
        return value
    if not value:
        return None
    return _ROLE_ALIASES.get(_fold(str(value)))


def normalize_entity(value) -> Entity | None:
    if isinstance(value, Entity):
        return value
    if not value:
        return None
    return _ENTITY_ALIASES.get(_fold(str(value)))


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    password_hash = db.Column(db.String(256))
    full_name = db.Column(db.String(200), nullable=False)
    avatar_url = db.Column(db.String(500))
    project_role = db.Column(
        db.String(60), nullable=False, default=Role.RESIDENT.value,
        comment="Raw role label; normalised via normalize_role()",
    )
    app_role = db.Column(db.String(20), nullable=False, default="editor", comment="admin | editor | viewer")
    entity = db.Column(db.String(30), nullable=True, comment="IDU | INTERVENTORIA | CONTRATISTA")
    cargo = db.Column(db.String(200), nullable=True, comment="Job title, display only")
    status = db.Column(db.String(20), default="active")  # active, inactive
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_users_email", "email"),
    )

    # ── Role helpers ─────────────────────────────────────────────────────

    @property
    def role(self) -> Role | None:
        return normalize_role(self.project_role)

    @property
    def organisation(self) -> Entity | None:
        return normalize_entity(self.entity)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_contractor(self) -> bool:
        """Contractor party: by entity when known, else by project role."""
        org = self.organisation
        if org is not None:
            return org == Entity.CONTRATISTA
        return self.role == Role.CONTRACTOR_REP

    @property
    def is_interventoria(self) -> bool:
        """Supervising-entity party: by entity when known, else by project role."""
        org = self.organisation
        if org is not None:
            return org == Entity.INTERVENTORIA
        return self.role == Role.SUPERVISOR

    @property
    def is_read_only(self) -> bool:
        return self.app_role == "viewer" or self.status == "inactive"

    def to_dict(self):
        role = self.role
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "project_role": role.value if role else self.project_role,
            "app_role": self.app_role,
            "entity": self.entity,
            "cargo": self.cargo,
            "status": self.status,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
