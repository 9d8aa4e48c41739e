"""Typed records exchanged between the store, the services and callers."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from console_identity.utils.validation import ValidationError


@dataclass(frozen=True)
class PermissionMap:
    """Resource name → allowed action verbs.

    Built once at the persistence boundary; lookups never re-parse.
    """

    grants: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Iterable[str]] | None) -> PermissionMap:
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ValidationError("Permission map must be an object")
        grants: dict[str, frozenset[str]] = {}
        for resource, actions in payload.items():
            if not isinstance(resource, str) or not resource.strip():
                raise ValidationError("Permission resource names must be non-empty strings")
            if isinstance(actions, str) or not isinstance(actions, Iterable):
                raise ValidationError(
                    f"Actions for {resource!r} must be a list of strings",
                    {"resource": resource},
                )
            verbs = set()
            for action in actions:
                if not isinstance(action, str) or not action.strip():
                    raise ValidationError(
                        f"Invalid action for {resource!r}", {"resource": resource}
                    )
                verbs.add(action.strip())
            grants[resource.strip()] = frozenset(verbs)
        return cls(grants)

    @classmethod
    def from_json(cls, raw: str | None) -> PermissionMap:
        if not raw:
            return cls()
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise ValidationError("Stored permission map is not valid JSON") from exc
        return cls.from_mapping(payload)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def to_dict(self) -> dict[str, list[str]]:
        return {resource: sorted(actions) for resource, actions in self.grants.items()}

    def allows(self, resource: str, action: str) -> bool:
        return action in self.grants.get(resource, frozenset())

    def union(self, other: PermissionMap) -> PermissionMap:
        merged: dict[str, frozenset[str]] = dict(self.grants)
        for resource, actions in other.grants.items():
            merged[resource] = merged.get(resource, frozenset()) | actions
        return PermissionMap(merged)


@dataclass(frozen=True)
class IdentityRecord:
    id: int
    username: str
    credential_hash: str | None = None
    email: str | None = None
    display_name: str | None = None
    directory_managed: bool = False
    active: bool = True
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def summary(self, groups: Iterable[GroupRecord] = ()) -> IdentitySummary:
        return IdentitySummary(
            id=self.id,
            username=self.username,
            email=self.email,
            display_name=self.display_name,
            directory_managed=self.directory_managed,
            active=self.active,
            groups=tuple(sorted(group.name for group in groups)),
        )


@dataclass(frozen=True)
class GroupRecord:
    id: int
    name: str
    description: str | None = None
    directory_sourced: bool = False
    directory_dn: str | None = None
    classification: str = "system"
    permissions: PermissionMap = field(default_factory=PermissionMap)


@dataclass(frozen=True)
class IdentitySummary:
    """What callers of login/verify get to see about an identity."""

    id: int
    username: str
    email: str | None
    display_name: str | None
    directory_managed: bool
    active: bool
    groups: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "display_name": self.display_name,
            "directory_managed": self.directory_managed,
            "active": self.active,
            "groups": list(self.groups),
        }


@dataclass(frozen=True)
class LoginResult:
    token: str
    identity: IdentitySummary


@dataclass(frozen=True)
class ComplexityResult:
    valid: bool
    reason: str | None = None


@dataclass(frozen=True)
class ItemError:
    """Per-item failure collected by a batch operation."""

    item: str
    error_code: str
    message: str


@dataclass
class SyncResult:
    identity_id: int
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    benign: list[str] = field(default_factory=list)
    failures: list[ItemError] = field(default_factory=list)
    group_ids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "added": list(self.added),
            "removed": list(self.removed),
            "benign": list(self.benign),
            "failures": [asdict(f) for f in self.failures],
            "group_ids": list(self.group_ids),
        }


@dataclass
class ImportResult:
    imported: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": list(self.imported),
            "skipped": list(self.skipped),
            "errors": [asdict(e) for e in self.errors],
        }


@dataclass(frozen=True)
class AvailableIdentity:
    username: str
    display_name: str | None
    email: str | None
    dn: str
    group_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class AvailableGroup:
    name: str
    description: str | None
    dn: str
    member_count: int = 0


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
