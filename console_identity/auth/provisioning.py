"""
Identity and group provisioning from the directory.

Batch operations collect per-item failures; only an unreachable directory
or an unusable configuration aborts the batch.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Iterable, Mapping

from console_identity.config.schema import DirectoryConfig
from console_identity.directory.client import (
    DirectoryClient,
    DirectoryClientFactory,
    DirectoryEntry,
    SearchScope,
    create_directory_client,
)
from console_identity.directory.dn import all_users_filter, cn_from_dn
from console_identity.exceptions import (
    AlreadyExists,
    DirectoryProtocolError,
    IdentityError,
    NotFound,
)
from console_identity.utils.logger import get_logger
from console_identity.utils.validation import InputValidator, ValidationError

from .credentials import CredentialStore
from .models import (
    AvailableGroup,
    AvailableIdentity,
    ConnectionTestResult,
    GroupRecord,
    ImportResult,
    ItemError,
    PermissionMap,
)
from .store import IdentityStore

logger = get_logger(__name__)

DEFAULT_GROUP_CLASSIFICATION = "device"
DEFAULT_GROUP_PERMISSIONS = PermissionMap.from_mapping({"dashboard": ["view"]})


def user_attributes(config: DirectoryConfig) -> list[str]:
    """Attributes requested for every user lookup."""
    return [
        config.login_attribute,
        config.display_name_attribute,
        config.email_attribute,
        config.member_of_attribute,
        "objectClass",
    ]


def is_non_human(entry: DirectoryEntry, config: DirectoryConfig) -> bool:
    markers = {cls.lower() for cls in config.non_human_object_classes}
    return bool(entry.object_classes & markers)


def member_of_group_ids(
    entry: DirectoryEntry, config: DirectoryConfig, directory_groups: Mapping[str, GroupRecord]
) -> list[int]:
    """Map the entry's reverse membership DNs to local directory-sourced group ids."""
    ids = set()
    for group_dn in entry.values(config.member_of_attribute):
        if isinstance(group_dn, bytes):
            group_dn = group_dn.decode("utf-8", errors="replace")
        name = cn_from_dn(str(group_dn))
        group = directory_groups.get((name or "").lower())
        if group is not None:
            ids.add(group.id)
    return sorted(ids)


class UserProvisioningService:
    """Imports directory identities and groups into the local store."""

    def __init__(
        self,
        store: IdentityStore,
        credentials: CredentialStore,
        config_provider: Callable[[], DirectoryConfig],
        client_factory: DirectoryClientFactory = create_directory_client,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self._config_provider = config_provider
        self._client_factory = client_factory

    def _directory_groups(self) -> dict[str, GroupRecord]:
        return {
            group.name.lower(): group for group in self.store.list_groups(directory_sourced=True)
        }

    def _initial_groups(
        self,
        client: DirectoryClient,
        config: DirectoryConfig,
        entry: DirectoryEntry,
        directory_groups: Mapping[str, GroupRecord],
    ) -> list[int]:
        ids = member_of_group_ids(entry, config, directory_groups)
        if ids:
            return ids
        # no usable memberOf values; ask the directory which groups list this DN
        found = set()
        for group_entry in client.groups_of(entry.dn):
            name = group_entry.text(config.group_name_attribute) or cn_from_dn(group_entry.dn)
            group = directory_groups.get((name or "").lower())
            if group is not None:
                found.add(group.id)
        return sorted(found)

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------
    def import_identities(
        self,
        usernames: Iterable[str],
        group_overrides: Mapping[str, Iterable[int]] | None = None,
    ) -> ImportResult:
        """Create local directory-managed identities for the given login ids."""
        config = self._config_provider().require_enabled()
        overrides = {key.lower(): list(value) for key, value in (group_overrides or {}).items()}
        result = ImportResult()
        directory_groups = self._directory_groups()

        with self._client_factory(config) as client:
            client.service_bind()
            for requested in usernames:
                try:
                    self._import_one(client, config, requested, overrides, directory_groups, result)
                except (ValidationError, NotFound, DirectoryProtocolError) as exc:
                    logger.warning(
                        "Identity import failed",
                        event="provisioning.import_failed",
                        username=requested,
                        error=exc.message,
                        error_code=exc.error_code,
                    )
                    result.errors.append(ItemError(str(requested), exc.error_code, exc.message))

        logger.info(
            "Identity import finished",
            event="provisioning.import_completed",
            imported=len(result.imported),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result

    def _import_one(
        self,
        client: DirectoryClient,
        config: DirectoryConfig,
        requested: str,
        overrides: Mapping[str, list[int]],
        directory_groups: Mapping[str, GroupRecord],
        result: ImportResult,
    ) -> None:
        username = InputValidator.validate_username(requested)
        if self.store.get_identity(username) is not None:
            logger.info(
                "Skipping identity already present locally",
                event="provisioning.skip_existing",
                username=username,
            )
            result.skipped.append(username)
            return

        entry = client.find_user(username, user_attributes(config))
        if entry is None:
            raise NotFound(f"User not found in directory: {username}", {"username": username})
        if is_non_human(entry, config):
            logger.info(
                "Skipping non-human directory principal",
                event="provisioning.skip_non_human",
                username=username,
                dn=entry.dn,
            )
            result.skipped.append(username)
            return

        group_ids = overrides.get(username.lower()) or self._initial_groups(
            client, config, entry, directory_groups
        )
        login = entry.text(config.login_attribute) or username
        try:
            self.store.insert_identity(
                login,
                credential_hash=self.credentials.hash(secrets.token_urlsafe(32)),
                email=InputValidator.normalize_email(entry.text(config.email_attribute)),
                display_name=entry.text(config.display_name_attribute) or login,
                directory_managed=True,
                active=True,
                group_ids=group_ids,
            )
        except AlreadyExists:
            result.skipped.append(username)
            return
        result.imported.append(login)

    def list_available_identities(self) -> list[AvailableIdentity]:
        """Directory users that are not yet present locally."""
        config = self._config_provider().require_enabled()
        known = {identity.username.lower() for identity in self.store.list_identities()}
        directory_groups = self._directory_groups()
        available = []
        with self._client_factory(config) as client:
            client.service_bind()
            for entry in client.search(
                config.base_dn, all_users_filter(config), SearchScope.SUBTREE, user_attributes(config)
            ):
                login = entry.text(config.login_attribute)
                if not login or login.lower() in known or is_non_human(entry, config):
                    continue
                available.append(
                    AvailableIdentity(
                        username=login,
                        display_name=entry.text(config.display_name_attribute),
                        email=InputValidator.normalize_email(entry.text(config.email_attribute)),
                        dn=entry.dn,
                        group_ids=tuple(member_of_group_ids(entry, config, directory_groups)),
                    )
                )
        return sorted(available, key=lambda item: item.username.lower())

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    def list_available_groups(self) -> list[AvailableGroup]:
        """Directory groups that are not yet present locally."""
        config = self._config_provider().require_enabled()
        known = {group.name.lower() for group in self.store.list_groups()}
        available = []
        with self._client_factory(config) as client:
            client.service_bind()
            for entry in client.search(
                config.base_dn,
                config.group_filter,
                SearchScope.SUBTREE,
                [config.group_name_attribute, "description", config.group_member_attribute],
            ):
                name = entry.text(config.group_name_attribute) or cn_from_dn(entry.dn)
                if not name or name.lower() in known:
                    continue
                available.append(
                    AvailableGroup(
                        name=name,
                        description=entry.text("description"),
                        dn=entry.dn,
                        member_count=len(entry.values(config.group_member_attribute)),
                    )
                )
        return sorted(available, key=lambda item: item.name.lower())

    def import_groups(
        self,
        names: Iterable[str],
        classifications: Mapping[str, str] | None = None,
    ) -> ImportResult:
        """Create directory-sourced groups for the given directory group names."""
        config = self._config_provider().require_enabled()
        classifications = classifications or {}
        result = ImportResult()
        with self._client_factory(config) as client:
            client.service_bind()
            for requested in names:
                try:
                    name = InputValidator.validate_group_name(requested)
                    if self.store.get_group_by_name(name) is not None:
                        result.skipped.append(name)
                        continue
                    entry = client.find_group(
                        name, [config.group_name_attribute, "description"]
                    )
                    if entry is None:
                        raise NotFound(f"Group not found in directory: {name}", {"name": name})
                    canonical = entry.text(config.group_name_attribute) or name
                    self.store.insert_group(
                        canonical,
                        description=entry.text("description"),
                        directory_sourced=True,
                        directory_dn=entry.dn,
                        classification=classifications.get(name, DEFAULT_GROUP_CLASSIFICATION),
                        permissions=DEFAULT_GROUP_PERMISSIONS,
                    )
                    result.imported.append(canonical)
                except AlreadyExists:
                    result.skipped.append(str(requested))
                except (ValidationError, NotFound, DirectoryProtocolError) as exc:
                    logger.warning(
                        "Group import failed",
                        event="provisioning.group_import_failed",
                        group=requested,
                        error=exc.message,
                        error_code=exc.error_code,
                    )
                    result.errors.append(ItemError(str(requested), exc.error_code, exc.message))
        return result

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def test_connection(self) -> ConnectionTestResult:
        """Connect and bind with the service account; never raises."""
        try:
            config = self._config_provider().require_enabled()
            with self._client_factory(config) as client:
                client.service_bind()
        except IdentityError as exc:
            logger.warning(
                "Directory connection test failed",
                event="provisioning.connection_test_failed",
                error=exc.message,
                error_code=exc.error_code,
            )
            return ConnectionTestResult(False, exc.message)
        return ConnectionTestResult(True, f"Connected to {config.server_url}")
