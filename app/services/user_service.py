"""
User Service — account creation and password authentication.
"""

from email_validator import EmailNotValidError, validate_email

from app.models import db
from app.models.auth import APP_ROLES, User, normalize_entity, normalize_role
from app.utils.crypto import hash_password, verify_password


class UserServiceError(Exception):
    """Custom exception for user service errors."""
    def __init__(self, message, status_code=400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# User CRUD
# ═══════════════════════════════════════════════════════════════
def create_user(
    email: str,
    full_name: str,
    password: str = None,
    project_role: str = "RESIDENT",
    app_role: str = "editor",
    entity: str = None,
    cargo: str = None,
) -> User:
    """Create a project participant.

    ``project_role`` and ``entity`` accept the legacy aliases understood by
    ``normalize_role`` / ``normalize_entity``; the raw label is stored.
    """
    try:
        valid = validate_email(email, check_deliverability=False)
        email = valid.normalized.lower()
    except EmailNotValidError as e:
        raise UserServiceError(f"Invalid email: {e}")

    full_name = (full_name or "").strip()
    if not full_name:
        raise UserServiceError("full_name is required")
    if normalize_role(project_role) is None:
        raise UserServiceError(f"Unknown project role: {project_role!r}")
    if entity and normalize_entity(entity) is None:
        raise UserServiceError(f"Unknown entity: {entity!r}")
    if app_role not in APP_ROLES:
        raise UserServiceError(f"app_role must be one of {sorted(APP_ROLES)}")

    if User.query.filter_by(email=email).first():
        raise UserServiceError(f"User with email {email} already exists", 409)

    user = User(
        email=email,
        full_name=full_name,
        password_hash=hash_password(password) if password else None,
        project_role=project_role,
        app_role=app_role,
        entity=entity,
        cargo=cargo,
        status="active",
    )
    db.session.add(user)
    db.session.commit()
    return user


def get_user_by_id(user_id: int) -> User | None:
    return db.session.get(User, user_id)


def authenticate_user(email: str, password: str) -> User:
    """Verify email + password.  Raises UserServiceError on any failure."""
    email = (email or "").strip().lower()
    user = User.query.filter_by(email=email).first()
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        raise UserServiceError("Invalid email or password", 401)
    if user.status != "active":
        raise UserServiceError(f"Account is {user.status}", 403)
    return user
