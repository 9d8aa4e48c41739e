"""
Hybrid login orchestration.

Decides which authority validates an identity:

* directory disabled, or identity exists and is locally managed:
  CredentialStore only;
* otherwise the directory, with provision-on-login and attribute refresh.

A directory-managed identity never falls back to local verification.
Every failure surfaces as ``AuthenticationFailed`` with one generic
message; the specific cause is chained and logged.
"""

from __future__ import annotations

from collections.abc import Callable

from console_identity.config.schema import DirectoryConfig
from console_identity.directory.client import (
    DirectoryClient,
    DirectoryClientFactory,
    DirectoryEntry,
    create_directory_client,
)
from console_identity.directory.dn import bind_candidates
from console_identity.exceptions import (
    AuthenticationFailed,
    IdentityError,
    InvalidCredentials,
    NotFound,
    TokenInvalid,
)
from console_identity.utils import auth_logger
from console_identity.utils.logger import get_logger
from console_identity.utils.validation import InputValidator

from .credentials import CredentialStore
from .group_sync import GroupSyncEngine
from .models import IdentityRecord, IdentitySummary, LoginResult
from .provisioning import member_of_group_ids, user_attributes
from .store import IdentityStore
from .tokens import TokenIssuer

logger = get_logger(__name__)

AUTHORITY_LOCAL = "local"
AUTHORITY_DIRECTORY = "directory"


class AuthOrchestrator:
    """Login, token verification and password routing."""

    def __init__(
        self,
        store: IdentityStore,
        credentials: CredentialStore,
        tokens: TokenIssuer,
        group_sync: GroupSyncEngine,
        config_provider: Callable[[], DirectoryConfig],
        client_factory: DirectoryClientFactory = create_directory_client,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.group_sync = group_sync
        self._config_provider = config_provider
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------
    def login(self, username: str, password: str) -> LoginResult:
        try:
            username = InputValidator.validate_username(username)
            InputValidator.validate_secret_length(password)
        except IdentityError as exc:
            raise self._failure(AUTHORITY_LOCAL, username, exc) from exc

        authority = AUTHORITY_LOCAL
        try:
            identity = self.store.get_identity(username)
            config = self._config_provider()
            use_local = not config.enabled or (
                identity is not None and not identity.directory_managed
            )
            if not use_local:
                authority = AUTHORITY_DIRECTORY
            auth_logger.log_request(authority, username)

            if use_local:
                identity = self._login_local(identity, password)
            else:
                identity = self._login_directory(config, identity, username, password)
            self.store.stamp_last_login(identity.id)
            token = self.tokens.issue(identity)
            summary = self._summary(identity)
        except IdentityError as exc:
            raise self._failure(authority, username, exc) from exc
        except Exception as exc:
            logger.error(
                "Unexpected error during login",
                event="auth.login_error",
                username=username,
                authority=authority,
                exc_info=True,
            )
            raise self._failure(authority, username, exc) from exc

        auth_logger.log_success(authority, identity.username, identity.id)
        return LoginResult(token=token, identity=summary)

    @staticmethod
    def _failure(authority: str, username: str | None, cause: Exception) -> AuthenticationFailed:
        if isinstance(cause, IdentityError):
            reason, error_code = cause.message, cause.error_code
        else:
            reason, error_code = type(cause).__name__, "internal_error"
        auth_logger.log_failure(authority, username, reason=reason, error_code=error_code)
        return AuthenticationFailed()

    def _login_local(self, identity: IdentityRecord | None, password: str) -> IdentityRecord:
        if identity is None:
            raise NotFound("Identity not found")
        if not identity.active:
            raise InvalidCredentials("Identity is inactive")
        if not self.credentials.verify_identity(identity, password):
            raise InvalidCredentials("Local password mismatch")
        return identity

    def _login_directory(
        self,
        config: DirectoryConfig,
        identity: IdentityRecord | None,
        username: str,
        password: str,
    ) -> IdentityRecord:
        if identity is not None and not identity.active:
            raise InvalidCredentials("Identity is inactive")
        config = config.require_enabled()
        entry = self._search_entry(config, username)
        with self._client_factory(config) as client:
            entry = self._bind_user(client, config, username, password, entry)
            identity = self._provision_or_refresh(config, identity, username, entry)
            if not config.has_service_account:
                # only the user's own bind can read the directory here
                self._sync_from_entry(config, identity, entry, client)
                return identity
        self._sync_from_entry(config, identity, entry)
        return identity

    def _authenticate_directory(
        self, config: DirectoryConfig, username: str, password: str
    ) -> DirectoryEntry | None:
        """Bind as the user; returns the user's entry when it could be read."""
        entry = self._search_entry(config, username)
        with self._client_factory(config) as client:
            return self._bind_user(client, config, username, password, entry)

    def _search_entry(self, config: DirectoryConfig, username: str) -> DirectoryEntry | None:
        """Look the user up with the service account; None when there is none."""
        if not config.has_service_account:
            return None
        with self._client_factory(config) as client:
            client.service_bind()
            entry = client.find_user(username, user_attributes(config))
        if entry is None:
            raise NotFound("User not found in directory")
        return entry

    def _bind_user(
        self,
        client: DirectoryClient,
        config: DirectoryConfig,
        username: str,
        password: str,
        entry: DirectoryEntry | None,
    ) -> DirectoryEntry | None:
        candidates = bind_candidates(config, username, entry.dn if entry else None)
        self._bind_first(client, candidates, password)
        if entry is None:
            # without a service account the user reads its own entry
            entry = client.find_user(username, user_attributes(config))
        return entry

    @staticmethod
    def _bind_first(client: DirectoryClient, candidates: list[str], password: str) -> str:
        """Try the candidate DNs in order; the first accepted bind wins.

        DirectoryUnavailable stops the attempt immediately.
        """
        for candidate in candidates:
            try:
                client.bind(candidate, password)
            except InvalidCredentials:
                logger.debug(
                    "Directory bind candidate rejected",
                    event="auth.bind_candidate_rejected",
                    dn=candidate,
                )
                continue
            return candidate
        raise InvalidCredentials("Directory rejected every bind candidate")

    def _provision_or_refresh(
        self,
        config: DirectoryConfig,
        identity: IdentityRecord | None,
        username: str,
        entry: DirectoryEntry | None,
    ) -> IdentityRecord:
        email = display_name = None
        login = username
        if entry is not None:
            email = InputValidator.normalize_email(entry.text(config.email_attribute))
            display_name = entry.text(config.display_name_attribute)
            login = entry.text(config.login_attribute) or username

        if identity is None:
            logger.info(
                "Provisioning directory identity on first login",
                event="auth.provision_on_login",
                username=login,
            )
            return self.store.insert_identity(
                login,
                email=email,
                display_name=display_name or login,
                directory_managed=True,
                active=True,
            )
        if entry is None:
            return identity
        return self.store.update_identity(
            identity.id, email=email, display_name=display_name or identity.display_name
        )

    def _sync_from_entry(
        self,
        config: DirectoryConfig,
        identity: IdentityRecord,
        entry: DirectoryEntry | None,
        client: DirectoryClient | None = None,
    ) -> None:
        if entry is None or config.member_of_attribute.lower() not in entry.attributes:
            return
        directory_groups = {
            group.name.lower(): group for group in self.store.list_groups(directory_sourced=True)
        }
        desired = member_of_group_ids(entry, config, directory_groups)
        try:
            self.group_sync.sync_membership(identity, desired, client=client, user_dn=entry.dn)
        except IdentityError as exc:
            # membership refresh is best effort; the bind already succeeded
            logger.warning(
                "Group synchronization during login failed",
                event="auth.login_sync_failed",
                username=identity.username,
                error=exc.message,
                error_code=exc.error_code,
            )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    def verify_token(self, token: str) -> IdentitySummary:
        """Validate a session token against the current identity record."""
        try:
            claims = self.tokens.decode(token)
            identity = self.store.get_identity_by_id(claims.identity_id)
            if identity is None:
                raise TokenInvalid("Token subject no longer exists")
            if not identity.active:
                raise TokenInvalid("Token subject is inactive")
        except TokenInvalid as exc:
            auth_logger.log_failure(
                "token", None, reason=str(exc.__cause__ or exc.message), error_code=exc.error_code
            )
            raise TokenInvalid() from exc
        return self._summary(identity)

    def _summary(self, identity: IdentityRecord) -> IdentitySummary:
        return identity.summary(self.store.groups_for_identity(identity.id))

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------
    def change_own_password(
        self,
        identity: IdentityRecord,
        new_password: str,
        *,
        current_password: str | None = None,
    ) -> None:
        """Self-service password change.

        When ``current_password`` is given it is verified against the
        authority that manages the identity before anything is written.
        """
        CredentialStore.require_complexity(new_password)
        if current_password is not None:
            self._verify_current(identity, current_password)
        self._apply_password(identity, new_password)

    def reset_password(
        self, identity: IdentityRecord, new_password: str, acting_admin: str
    ) -> None:
        """Administrative reset; skips current-password verification."""
        CredentialStore.require_complexity(new_password)
        self._apply_password(identity, new_password)
        logger.info(
            "Password reset by administrator",
            event="auth.password_reset",
            username=identity.username,
            acting_admin=acting_admin,
        )

    def _verify_current(self, identity: IdentityRecord, current_password: str) -> None:
        if not identity.directory_managed:
            if not self.credentials.verify_identity(identity, current_password):
                raise InvalidCredentials("Current password is incorrect")
            return
        config = self._config_provider().require_enabled()
        self._authenticate_directory(config, identity.username, current_password)

    def _apply_password(self, identity: IdentityRecord, new_password: str) -> None:
        if not identity.directory_managed:
            self.credentials.set_password(identity, new_password)
            return
        config = self._config_provider().require_enabled()
        with self._client_factory(config) as client:
            client.service_bind()
            entry = client.find_user(identity.username)
            if entry is None:
                raise NotFound(
                    f"Identity not present in directory: {identity.username}",
                    {"username": identity.username},
                )
            client.set_password(entry.dn, new_password)

