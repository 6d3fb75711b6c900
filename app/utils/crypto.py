"""
Crypto utilities — bcrypt password hashing.

Supports both bcrypt ($2b$) and legacy werkzeug (scrypt/pbkdf2) hashes
for backward compatibility with user records imported from the previous
logbook system.  Signers re-enter their password to sign, so
``verify_password`` is on the hot path of every signature.
"""

import bcrypt
from werkzeug.security import check_password_hash


def hash_password(plain_password: str, rounds: int = 12) -> str:
    """Hash a plain-text password with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plain-text password against its hash.

    Handles both bcrypt ($2b$/$2a$) and legacy werkzeug (scrypt/pbkdf2) formats.
    """
    if not password_hash or not plain_password:
        return False

    if password_hash.startswith(("$2b$", "$2a$", "$2y$")):
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8"),
        )

    return check_password_hash(password_hash, plain_password)
