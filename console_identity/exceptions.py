# console_identity/exceptions.py
"""
Exception taxonomy for identity and authentication operations.
"""

from typing import Any


class IdentityError(Exception):
    """Base exception for all identity core errors."""

    error_code = "identity_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# Directory exceptions
class DirectoryError(IdentityError):
    """Base exception for directory-service failures."""

    error_code = "directory_error"


class DirectoryUnavailable(DirectoryError):
    """Directory unreachable or timed out. Transient; callers may retry."""

    error_code = "directory_unavailable"


class DirectoryProtocolError(DirectoryError):
    """Unexpected protocol-level failure reported by the directory."""

    error_code = "directory_protocol_error"

    def __init__(
        self,
        message: str,
        result_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        payload = {"result_code": result_code, **(details or {})}
        super().__init__(message, payload)
        self.result_code = result_code


# Credential exceptions
class InvalidCredentials(IdentityError):
    """A bind or local verification rejected the supplied secret."""

    error_code = "invalid_credentials"


class PasswordPolicyViolation(IdentityError):
    """A new password does not satisfy the complexity policy."""

    error_code = "password_policy_violation"

    def __init__(self, reason: str):
        super().__init__(reason, {"reason": reason})
        self.reason = reason


class AuthenticationFailed(IdentityError):
    """Uniform failure surfaced to login/verify callers.

    The message never reveals which check failed; the specific cause is
    chained as ``__cause__`` and kept in the logs.
    """

    error_code = "authentication_failed"
    public_message = "Invalid credentials"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class TokenInvalid(AuthenticationFailed):
    """Session token failed signature, expiry or identity checks."""

    error_code = "token_invalid"


# Configuration exceptions
class ConfigurationError(IdentityError):
    """Directory disabled or required configuration missing/invalid."""

    error_code = "configuration_error"

    def __init__(self, message: str, field: str | None = None, **kwargs: Any):
        super().__init__(message, {"field": field, **kwargs})
        self.field = field


# Resource exceptions
class NotFound(IdentityError):
    """Identity or group absent."""

    error_code = "not_found"


class AlreadyExists(IdentityError):
    """Attempt to create a duplicate identity or group."""

    error_code = "already_exists"


class GroupInUse(IdentityError):
    """Group deletion refused while memberships remain."""

    error_code = "group_in_use"
