"""
IdentityService: the operations exposed to the web layer and admin tooling.

Wires the components together and emits one audit event per completed
mutating operation.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from console_identity.audit import (
    ACTION_GROUP_SYNC,
    ACTION_IMPORT_GROUPS,
    ACTION_IMPORT_IDENTITIES,
    ACTION_LOGIN,
    ACTION_LOGIN_FAILED,
    ACTION_PASSWORD_CHANGE,
    ACTION_PASSWORD_RESET,
    OUTCOME_FAILURE,
    OUTCOME_PARTIAL,
    OUTCOME_SUCCESS,
    AuditEvent,
    AuditRecorder,
    LoggingAuditRecorder,
    emit,
)
from console_identity.auth.credentials import CredentialStore
from console_identity.auth.group_sync import GroupSyncEngine
from console_identity.auth.models import (
    AvailableGroup,
    AvailableIdentity,
    ConnectionTestResult,
    GroupRecord,
    IdentityRecord,
    IdentitySummary,
    ImportResult,
    LoginResult,
    PermissionMap,
    SyncResult,
)
from console_identity.auth.orchestrator import AuthOrchestrator
from console_identity.auth.permissions import PermissionEvaluator
from console_identity.auth.provisioning import UserProvisioningService
from console_identity.auth.store import IdentityStore
from console_identity.auth.tokens import TokenIssuer
from console_identity.config.constants import DEFAULT_TOKEN_ISSUER
from console_identity.config.loader import directory_bind_password_override
from console_identity.config.schema import DirectoryConfig, Settings
from console_identity.directory.client import DirectoryClientFactory, create_directory_client
from console_identity.exceptions import AuthenticationFailed, NotFound
from console_identity.utils.logger import get_logger
from console_identity.utils.validation import InputValidator

logger = get_logger(__name__)


class IdentityService:
    def __init__(
        self,
        store: IdentityStore,
        *,
        token_secret: str,
        token_issuer: str = DEFAULT_TOKEN_ISSUER,
        bcrypt_rounds: int | None = None,
        audit: AuditRecorder | None = None,
        client_factory: DirectoryClientFactory = create_directory_client,
        bind_password_override: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit = audit if audit is not None else LoggingAuditRecorder()
        self._bind_password_override = bind_password_override
        self.credentials = CredentialStore(store, rounds=bcrypt_rounds)
        self.tokens = TokenIssuer(token_secret, issuer=token_issuer, clock=clock)
        self.permissions = PermissionEvaluator(store)
        self.group_sync = GroupSyncEngine(store, self.directory_config, client_factory)
        self.provisioning = UserProvisioningService(
            store, self.credentials, self.directory_config, client_factory
        )
        self.orchestrator = AuthOrchestrator(
            store,
            self.credentials,
            self.tokens,
            self.group_sync,
            self.directory_config,
            client_factory,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        audit: AuditRecorder | None = None,
        client_factory: DirectoryClientFactory = create_directory_client,
    ) -> IdentityService:
        store = IdentityStore(settings.database.path)
        # [directory] values only seed an empty store; the bind password stays in the environment
        seed = settings.directory.model_copy(update={"bind_password": ""})
        if seed != DirectoryConfig():
            store.seed_directory_config(seed)
        return cls(
            store,
            token_secret=settings.auth.token_secret,
            token_issuer=settings.auth.token_issuer,
            bcrypt_rounds=settings.auth.bcrypt_rounds,
            audit=audit,
            client_factory=client_factory,
            bind_password_override=directory_bind_password_override(),
        )

    def directory_config(self) -> DirectoryConfig:
        """Current directory settings, with the environment bind password applied."""
        config = self.store.get_directory_config()
        if self._bind_password_override:
            config = config.model_copy(update={"bind_password": self._bind_password_override})
        return config

    def require_identity(self, username: str) -> IdentityRecord:
        identity = self.store.get_identity(username)
        if identity is None:
            raise NotFound(f"Identity not found: {username}", {"username": username})
        return identity

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def login(self, username: str, password: str) -> LoginResult:
        try:
            result = self.orchestrator.login(username, password)
        except AuthenticationFailed:
            emit(
                self.audit,
                AuditEvent(
                    actor=str(username),
                    action=ACTION_LOGIN_FAILED,
                    target=str(username),
                    outcome=OUTCOME_FAILURE,
                ),
            )
            raise
        emit(
            self.audit,
            AuditEvent(
                actor=result.identity.username,
                action=ACTION_LOGIN,
                target=result.identity.username,
                details={"directory_managed": result.identity.directory_managed},
            ),
        )
        return result

    def verify_token(self, token: str) -> IdentitySummary:
        return self.orchestrator.verify_token(token)

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
        self.orchestrator.change_own_password(
            identity, new_password, current_password=current_password
        )
        emit(
            self.audit,
            AuditEvent(
                actor=identity.username,
                action=ACTION_PASSWORD_CHANGE,
                target=identity.username,
                details={"directory_managed": identity.directory_managed},
            ),
        )

    def reset_password(
        self, identity: IdentityRecord, new_password: str, acting_admin: str
    ) -> None:
        self.orchestrator.reset_password(identity, new_password, acting_admin)
        emit(
            self.audit,
            AuditEvent(
                actor=acting_admin,
                action=ACTION_PASSWORD_RESET,
                target=identity.username,
                details={"directory_managed": identity.directory_managed},
            ),
        )

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    def sync_groups(
        self,
        identity: IdentityRecord,
        desired_group_ids: Iterable[int],
        *,
        actor: str | None = None,
    ) -> SyncResult:
        """Set the identity's group memberships.

        Directory-sourced ids go through the directory for directory-managed
        identities; local-only ids are reconciled locally. A locally managed
        identity cannot join directory-sourced groups.
        """
        groups = self.store.get_groups(desired_group_ids)
        directory_ids = [group.id for group in groups if group.directory_sourced]
        local_ids = [group.id for group in groups if not group.directory_sourced]

        if identity.directory_managed:
            result = self.group_sync.sync_membership(identity, directory_ids)
        else:
            if directory_ids:
                logger.warning(
                    "Ignoring directory-sourced groups for a locally managed identity",
                    event="service.directory_groups_ignored",
                    username=identity.username,
                    group_ids=directory_ids,
                )
            result = SyncResult(identity_id=identity.id)
        applied = self.store.set_local_memberships(identity.id, local_ids)
        result.group_ids = sorted(set(result.group_ids) | set(applied))

        emit(
            self.audit,
            AuditEvent(
                actor=actor or identity.username,
                action=ACTION_GROUP_SYNC,
                target=identity.username,
                outcome=OUTCOME_SUCCESS if result.ok else OUTCOME_PARTIAL,
                details=result.to_dict(),
            ),
        )
        return result

    def create_group(
        self,
        name: str,
        *,
        description: str | None = None,
        classification: str = "system",
        permissions: Mapping[str, Iterable[str]] | None = None,
    ) -> GroupRecord:
        """Create a local-only group."""
        return self.store.insert_group(
            InputValidator.validate_group_name(name),
            description=description,
            directory_sourced=False,
            classification=classification,
            permissions=PermissionMap.from_mapping(permissions),
        )

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def create_local_identity(
        self,
        username: str,
        password: str,
        *,
        email: str | None = None,
        display_name: str | None = None,
        group_ids: Iterable[int] = (),
    ) -> IdentityRecord:
        """Local signup; the password is hashed by CredentialStore."""
        username = InputValidator.validate_username(username)
        CredentialStore.require_complexity(password)
        local_ids = [
            group.id for group in self.store.get_groups(group_ids) if not group.directory_sourced
        ]
        return self.store.insert_identity(
            username,
            credential_hash=self.credentials.hash(password),
            email=InputValidator.normalize_email(email),
            display_name=display_name or username,
            directory_managed=False,
            group_ids=local_ids,
        )

    def import_identities(
        self,
        usernames: Iterable[str],
        group_overrides: Mapping[str, Iterable[int]] | None = None,
        *,
        actor: str = "system",
    ) -> ImportResult:
        usernames = list(usernames)
        result = self.provisioning.import_identities(usernames, group_overrides)
        emit(
            self.audit,
            AuditEvent(
                actor=actor,
                action=ACTION_IMPORT_IDENTITIES,
                target=",".join(usernames),
                outcome=OUTCOME_PARTIAL if result.errors else OUTCOME_SUCCESS,
                details=result.to_dict(),
            ),
        )
        return result

    def import_groups(
        self,
        names: Iterable[str],
        classifications: Mapping[str, str] | None = None,
        *,
        actor: str = "system",
    ) -> ImportResult:
        names = list(names)
        result = self.provisioning.import_groups(names, classifications)
        emit(
            self.audit,
            AuditEvent(
                actor=actor,
                action=ACTION_IMPORT_GROUPS,
                target=",".join(names),
                outcome=OUTCOME_PARTIAL if result.errors else OUTCOME_SUCCESS,
                details=result.to_dict(),
            ),
        )
        return result

    def list_available_identities(self) -> list[AvailableIdentity]:
        return self.provisioning.list_available_identities()

    def list_available_groups(self) -> list[AvailableGroup]:
        return self.provisioning.list_available_groups()

    def test_connection(self) -> ConnectionTestResult:
        return self.provisioning.test_connection()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def has_capability(self, identity: IdentityRecord, resource: str, action: str) -> bool:
        return self.permissions.has_capability(identity, resource, action)

    def effective_permissions(self, identity: IdentityRecord) -> PermissionMap:
        return self.permissions.effective_permissions(identity)
