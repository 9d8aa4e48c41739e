"""
Local credential handling using bcrypt.

CredentialStore is the only code path that produces or persists credential
hashes. It is never used for directory-managed identities.
"""

from __future__ import annotations

import bcrypt

from console_identity.exceptions import PasswordPolicyViolation
from console_identity.utils.logger import get_logger
from console_identity.utils.validation import ValidationError

from .models import ComplexityResult, IdentityRecord
from .store import IdentityStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
# bcrypt only looks at the first 72 bytes and newer releases reject longer input
MAX_PASSWORD_BYTES = 72

REASON_LENGTH = f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
REASON_UPPERCASE = "Password must contain at least one uppercase letter"
REASON_LOWERCASE = "Password must contain at least one lowercase letter"
REASON_DIGIT = "Password must contain at least one digit"
REASON_SPECIAL = "Password must contain at least one special character"
REASON_TOO_LONG = f"Password must not exceed {MAX_PASSWORD_BYTES} bytes"
REASON_EMPTY = "Password must not be empty"


class CredentialStore:
    """Secure password hashing, verification and complexity policy."""

    DEFAULT_ROUNDS = 12

    def __init__(self, store: IdentityStore | None = None, rounds: int | None = None) -> None:
        self.store = store
        self.rounds = rounds or self.DEFAULT_ROUNDS

    def hash(self, password: str) -> str:
        """Hash a password with a fresh salt at the configured cost.

        Empty passwords are refused since ``verify`` never accepts one.
        """
        if not password:
            raise PasswordPolicyViolation(REASON_EMPTY)
        password_bytes = password.encode("utf-8")
        if len(password_bytes) > MAX_PASSWORD_BYTES:
            raise PasswordPolicyViolation(REASON_TOO_LONG)
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password_bytes, salt).decode("utf-8")

    def verify(self, password: str, hashed: str | None) -> bool:
        if not password or not hashed:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError as exc:
            # malformed hash or over-long password
            logger.warning(
                "Password verification rejected input",
                event="credentials.verify_error",
                error=str(exc),
            )
            return False

    @staticmethod
    def validate_complexity(password: str) -> ComplexityResult:
        """Check the policy rules in order; the first failing rule is the reason."""
        password = password or ""
        if len(password) < MIN_PASSWORD_LENGTH:
            return ComplexityResult(False, REASON_LENGTH)
        if not any(ch.isupper() for ch in password):
            return ComplexityResult(False, REASON_UPPERCASE)
        if not any(ch.islower() for ch in password):
            return ComplexityResult(False, REASON_LOWERCASE)
        if not any(ch.isdigit() for ch in password):
            return ComplexityResult(False, REASON_DIGIT)
        if not any(not ch.isalnum() for ch in password):
            return ComplexityResult(False, REASON_SPECIAL)
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return ComplexityResult(False, REASON_TOO_LONG)
        return ComplexityResult(True)

    @classmethod
    def require_complexity(cls, password: str) -> None:
        result = cls.validate_complexity(password)
        if not result.valid:
            raise PasswordPolicyViolation(result.reason or "Password rejected")

    def needs_rehash(self, hashed: str) -> bool:
        parts = hashed.split("$")
        if len(parts) < 4 or parts[1] not in {"2a", "2b", "2y"}:
            return True
        try:
            return int(parts[2]) < self.rounds
        except ValueError:
            return True

    def _persist(self, identity: IdentityRecord, hashed: str) -> None:
        if self.store is None:
            raise RuntimeError("CredentialStore has no identity store to write to")
        self.store.set_credential_hash(identity.id, hashed)

    def verify_identity(self, identity: IdentityRecord, password: str) -> bool:
        """Verify a locally managed identity and upgrade weak hashes on success."""
        if identity.directory_managed:
            logger.error(
                "Refusing local verification for a directory-managed identity",
                event="credentials.directory_managed_refused",
                username=identity.username,
            )
            return False
        if not self.verify(password, identity.credential_hash):
            return False
        if identity.credential_hash and self.needs_rehash(identity.credential_hash):
            self._persist(identity, self.hash(password))
            logger.info(
                "Credential hash upgraded",
                event="credentials.rehashed",
                username=identity.username,
            )
        return True

    def set_password(self, identity: IdentityRecord, new_password: str) -> None:
        """Validate, hash and persist a new local password."""
        if identity.directory_managed:
            raise ValidationError(
                "Directory-managed identities have no local password",
                {"username": identity.username},
            )
        self.require_complexity(new_password)
        self._persist(identity, self.hash(new_password))
        logger.info(
            "Local password updated",
            event="credentials.password_set",
            username=identity.username,
        )
