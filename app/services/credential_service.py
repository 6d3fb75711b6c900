"""
Signer credential verification.

A signature is accepted only when the signer re-proves identity with their
password and explicitly consents to a non-empty consent statement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.exceptions import InvalidCredentials
from app.utils.crypto import verify_password

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentPayload:
    password: str
    consent: bool
    consent_statement: str

    @classmethod
    def from_json(cls, data: dict | None) -> "ConsentPayload":
        data = data or {}
        return cls(
            password=str(data.get("password") or ""),
            consent=data.get("consent") is True,
            consent_statement=str(data.get("consent_statement") or data.get("consentStatement") or "").strip(),
        )


def verify_signer(user, payload: ConsentPayload) -> None:
    """Raise InvalidCredentials unless consent and password both check out."""
    if not payload.consent:
        raise InvalidCredentials(user.id, "Explicit consent is required to sign")
    if not payload.consent_statement:
        raise InvalidCredentials(user.id, "Consent statement must not be empty")
    if not verify_password(payload.password, user.password_hash):
        logger.warning("Signature credential check failed for user %s", user.id)
        raise InvalidCredentials(user.id, "Password verification failed")
