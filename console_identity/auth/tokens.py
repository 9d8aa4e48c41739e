"""Signed, stateless session tokens (HS256 JWT, fixed 24 hour validity)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from console_identity.config.constants import DEFAULT_TOKEN_ISSUER, TOKEN_VALIDITY_HOURS
from console_identity.exceptions import TokenInvalid

from .models import IdentityRecord

TOKEN_ALGORITHM = "HS256"
TOKEN_VALIDITY = timedelta(hours=TOKEN_VALIDITY_HOURS)


@dataclass(frozen=True)
class TokenClaims:
    identity_id: int
    username: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Issue and decode session tokens.

    ``clock`` is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = DEFAULT_TOKEN_ISSUER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Token signing secret is required")
        self._secret = secret
        self.issuer = issuer
        self._clock = clock or (lambda: datetime.now(UTC))

    def issue(self, identity: IdentityRecord) -> str:
        now = self._clock()
        payload: dict[str, Any] = {
            "sub": str(identity.id),
            "id": identity.id,
            "username": identity.username,
            "iat": int(now.timestamp()),
            "exp": int((now + TOKEN_VALIDITY).timestamp()),
            "jti": str(uuid4()),
            "iss": self.issuer,
        }
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    def decode(self, token: str) -> TokenClaims:
        """Check signature, issuer and expiry; raises TokenInvalid."""
        if not token:
            raise TokenInvalid()
        now = self._clock()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=self.issuer,
                options={
                    "require": ["exp", "iat", "sub"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except InvalidTokenError as exc:
            raise TokenInvalid() from exc

        # time claims are checked against the injected clock
        expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC)
        if now >= expires_at:
            raise TokenInvalid() from ExpiredSignatureError("Signature has expired")
        try:
            identity_id = int(payload.get("id", payload["sub"]))
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        return TokenClaims(
            identity_id=identity_id,
            username=str(payload.get("username", "")),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), UTC),
            expires_at=expires_at,
        )
