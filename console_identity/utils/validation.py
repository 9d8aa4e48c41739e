"""
Input validation helpers shared by login, provisioning and administration.
"""

import re

from console_identity.exceptions import IdentityError


class ValidationError(IdentityError):
    """Input validation error"""

    error_code = "validation_error"


class InputValidator:
    """Centralized input validation with security-focused checks."""

    USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,64}$")
    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    GROUP_NAME_PATTERN = re.compile(r"^[^\x00-\x1f]{2,64}$")
    MAX_PASSWORD_LENGTH = 128

    @classmethod
    def validate_username(cls, username: str) -> str:
        """Validate username format; returns the stripped value."""
        if not username:
            raise ValidationError("Username is required")

        username = username.strip()
        if not username:
            raise ValidationError("Username cannot be empty")

        if len(username) > 64:
            raise ValidationError("Username must be 64 characters or less")

        if not cls.USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username can only contain letters, numbers, underscore, dot, at and dash"
            )
        return username

    @classmethod
    def validate_group_name(cls, name: str) -> str:
        if not name or not name.strip():
            raise ValidationError("Group name is required")
        name = name.strip()
        if not cls.GROUP_NAME_PATTERN.match(name):
            raise ValidationError("Group name must be 2-64 printable characters")
        return name

    @classmethod
    def validate_secret_length(cls, secret: str) -> str:
        if secret is None or len(secret) > cls.MAX_PASSWORD_LENGTH:
            raise ValidationError("Password too long")
        return secret

    @classmethod
    def normalize_email(cls, value: object) -> str | None:
        """Return a trimmed email, or None when absent or malformed."""
        if not isinstance(value, str):
            return None
        value = value.strip()
        if not value or not cls.EMAIL_PATTERN.match(value):
            return None
        return value
