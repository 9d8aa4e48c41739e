"""Authentication event logging for login and token verification."""

from __future__ import annotations

from console_identity.utils.logger import get_logger

_logger = get_logger("console_identity.auth.events", component="auth")


def log_request(authority: str, username: str | None) -> None:
    _logger.debug(
        "Authentication request",
        event="auth.request",
        authority=authority,
        username=username or "<unknown>",
    )


def log_success(authority: str, username: str | None, identity_id: int | None = None) -> None:
    _logger.info(
        "Authentication success",
        event="auth.success",
        authority=authority,
        username=username or "<unknown>",
        identity_id=identity_id,
    )


def log_failure(
    authority: str,
    username: str | None,
    reason: str | None = None,
    error_code: str | None = None,
) -> None:
    _logger.warning(
        "Authentication failure",
        event="auth.failure",
        authority=authority,
        username=username or "<unknown>",
        reason=reason,
        error_code=error_code,
    )
