"""Capability checks derived from group permission maps."""

from __future__ import annotations

from .models import IdentityRecord, PermissionMap
from .store import IdentityStore


class PermissionEvaluator:
    """Allow-union over every group the identity belongs to.

    There is no deny: an action is granted when any group grants it and
    refused when no group mentions it.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def effective_permissions(self, identity: IdentityRecord) -> PermissionMap:
        merged = PermissionMap()
        for group in self.store.groups_for_identity(identity.id):
            merged = merged.union(group.permissions)
        return merged

    def has_capability(self, identity: IdentityRecord, resource: str, action: str) -> bool:
        if not identity.active:
            return False
        return self.effective_permissions(identity).allows(resource, action)
