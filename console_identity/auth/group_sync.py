"""
Directory group membership reconciliation.

The local membership table is authoritative for authorization; directory
pushes are best effort and reported per group.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager

from console_identity.config.schema import DirectoryConfig
from console_identity.directory.client import (
    DirectoryClient,
    DirectoryClientFactory,
    ModifyOperation,
    create_directory_client,
)
from console_identity.directory.dn import cn_from_dn
from console_identity.exceptions import DirectoryProtocolError, NotFound
from console_identity.utils.logger import get_logger

from .models import GroupRecord, IdentityRecord, ItemError, SyncResult
from .store import IdentityStore

logger = get_logger(__name__)


class GroupSyncEngine:
    """Push desired directory-sourced memberships to the directory and mirror them locally."""

    def __init__(
        self,
        store: IdentityStore,
        config_provider: Callable[[], DirectoryConfig],
        client_factory: DirectoryClientFactory = create_directory_client,
    ) -> None:
        self.store = store
        self._config_provider = config_provider
        self._client_factory = client_factory
        # identity id -> (lock, number of threads holding or waiting for it)
        self._locks: dict[int, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _identity_lock(self, identity_id: int) -> Iterator[None]:
        """Serialize syncs of one identity; the lock is dropped once unused."""
        with self._locks_guard:
            lock, users = self._locks.get(identity_id, (threading.Lock(), 0))
            self._locks[identity_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[identity_id]
                if users == 1:
                    del self._locks[identity_id]
                else:
                    self._locks[identity_id] = (lock, users - 1)

    def _directory_groups(self, group_ids: Iterable[int]) -> dict[int, GroupRecord]:
        wanted = set(group_ids)
        groups = {group.id: group for group in self.store.get_groups(wanted)}
        unknown = wanted - set(groups)
        if unknown:
            logger.warning(
                "Ignoring unknown group ids",
                event="group_sync.unknown_groups",
                group_ids=sorted(unknown),
            )
        local_only = sorted(gid for gid, group in groups.items() if not group.directory_sourced)
        if local_only:
            logger.warning(
                "Ignoring local-only groups in directory sync",
                event="group_sync.local_groups_ignored",
                group_ids=local_only,
            )
        return {gid: group for gid, group in groups.items() if group.directory_sourced}

    def sync_membership(
        self,
        identity: IdentityRecord,
        desired_group_ids: Iterable[int],
        *,
        client: DirectoryClient | None = None,
        user_dn: str | None = None,
    ) -> SyncResult:
        """Reconcile the identity's directory-sourced groups with ``desired_group_ids``.

        Without ``client`` a service-account connection is opened for the
        sync. A caller holding a bound connection (the user's own bind at
        login when no service account exists) passes it, and the resolved
        ``user_dn``; that connection is left open.

        Raises ConfigurationError when the directory is unusable,
        DirectoryUnavailable when it cannot be reached and NotFound when the
        identity has no directory entry. Local state is left untouched in
        all three cases.
        """
        with self._identity_lock(identity.id):
            desired = self._directory_groups(desired_group_ids)
            config = self._config_provider().require_enabled()
            if client is not None:
                result = self._reconcile(client, config, identity, desired, user_dn)
            else:
                with self._client_factory(config) as own:
                    own.service_bind()
                    result = self._reconcile(own, config, identity, desired, user_dn)

            result.group_ids = self.store.replace_memberships(
                identity.id, desired.keys(), directory_sourced=True
            )
        logger.info(
            "Group membership synchronized",
            event="group_sync.completed",
            username=identity.username,
            added=result.added,
            removed=result.removed,
            benign=result.benign,
            failures=len(result.failures),
        )
        return result

    def _reconcile(
        self,
        client: DirectoryClient,
        config: DirectoryConfig,
        identity: IdentityRecord,
        desired: dict[int, GroupRecord],
        user_dn: str | None,
    ) -> SyncResult:
        """Push the adds and deletes that make the directory match ``desired``."""
        if user_dn is None:
            entry = client.find_user(identity.username)
            if entry is None:
                raise NotFound(
                    f"Identity not present in directory: {identity.username}",
                    {"username": identity.username},
                )
            user_dn = entry.dn

        directory_groups = {
            group.name.lower(): group for group in self.store.list_groups(directory_sourced=True)
        }
        current: dict[int, GroupRecord] = {}
        for group_entry in client.groups_of(user_dn):
            name = group_entry.text(config.group_name_attribute) or cn_from_dn(group_entry.dn)
            group = directory_groups.get((name or "").lower())
            if group is not None:
                current[group.id] = group

        result = SyncResult(identity_id=identity.id)
        for gid in sorted(set(desired) - set(current)):
            self._push(client, config, desired[gid], user_dn, ModifyOperation.ADD, result)
        for gid in sorted(set(current) - set(desired)):
            self._push(client, config, current[gid], user_dn, ModifyOperation.DELETE, result)
        return result

    def _group_dn(self, client: DirectoryClient, group: GroupRecord) -> str | None:
        if group.directory_dn:
            return group.directory_dn
        found = client.find_group(group.name)
        return found.dn if found else None

    def _push(
        self,
        client: DirectoryClient,
        config: DirectoryConfig,
        group: GroupRecord,
        user_dn: str,
        operation: ModifyOperation,
        result: SyncResult,
    ) -> None:
        try:
            group_dn = self._group_dn(client, group)
            if group_dn is None:
                raise NotFound(f"Group not present in directory: {group.name}")
            outcome = client.modify_attribute(
                group_dn, operation, config.group_member_attribute, user_dn
            )
        except (DirectoryProtocolError, NotFound) as exc:
            logger.warning(
                "Directory membership change failed",
                event="group_sync.push_failed",
                group=group.name,
                operation=operation.value,
                error=exc.message,
                error_code=exc.error_code,
            )
            result.failures.append(ItemError(group.name, exc.error_code, exc.message))
            return

        if outcome.benign:
            result.benign.append(group.name)
        elif operation is ModifyOperation.ADD:
            result.added.append(group.name)
        else:
            result.removed.append(group.name)
