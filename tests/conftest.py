"""
Shared fixtures: a real temporary SQLite store and an in-memory directory.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from console_identity.audit import AuditEvent, AuditRecorder
from console_identity.auth.store import IdentityStore
from console_identity.config.schema import DirectoryConfig
from console_identity.directory.client import (
    AD_PASSWORD_ATTRIBUTE,
    DirectoryClient,
    DirectoryEntry,
    ModifyOperation,
    ModifyOutcome,
    SearchScope,
)
from console_identity.exceptions import (
    DirectoryProtocolError,
    DirectoryUnavailable,
    InvalidCredentials,
)
from console_identity.service import IdentityService

BASE_DN = "DC=example,DC=com"
SERVICE_DN = f"CN=svc-console,CN=Users,{BASE_DN}"
SERVICE_PASSWORD = "svc-secret"
TOKEN_SECRET = "test-token-secret-0123456789"

_PAIR = re.compile(r"\(([A-Za-z][A-Za-z0-9-]*)=([^()]*)\)")
_ESCAPE = re.compile(r"\\([0-9a-fA-F]{2})")


def _unescape(value: str) -> str:
    return _ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), value)


class FakeDirectory:
    """In-memory directory shared by every client the factory hands out.

    Filters are evaluated as a conjunction of ``(attr=value)`` assertions,
    which covers every filter the services build.
    """

    def __init__(self) -> None:
        self.users: dict[str, dict[str, list[Any]]] = {}
        self.groups: dict[str, dict[str, list[Any]]] = {}
        self.passwords: dict[str, str] = {SERVICE_DN.lower(): SERVICE_PASSWORD}
        self.hide_member_of: set[str] = set()
        self.failing_groups: set[str] = set()
        self.unavailable = False
        self.calls: list[tuple] = []
        self.clients: list[FakeDirectoryClient] = []
        self.password_writes: list[tuple[str, bytes]] = []
        # called before each modify, e.g. to hold a sync at a known point
        self.modify_hook: Callable[[str], None] | None = None

    # -- population ---------------------------------------------------
    def add_user(
        self,
        login: str,
        password: str | None = None,
        *,
        display_name: str | None = None,
        mail: str | None = None,
        object_classes: tuple[str, ...] = ("top", "person", "organizationalPerson", "user"),
        expose_member_of: bool = True,
    ) -> str:
        dn = f"CN={login},CN=Users,{BASE_DN}"
        attrs: dict[str, list[Any]] = {
            "samaccountname": [login],
            "cn": [login],
            "objectclass": list(object_classes),
        }
        if display_name:
            attrs["displayname"] = [display_name]
        if mail:
            attrs["mail"] = [mail]
        self.users[dn] = attrs
        if password:
            self.passwords[dn.lower()] = password
        if not expose_member_of:
            self.hide_member_of.add(dn)
        return dn

    def add_group(self, name: str, members: tuple[str, ...] = (), description: str = "") -> str:
        dn = f"CN={name},OU=Groups,{BASE_DN}"
        self.groups[dn] = {
            "cn": [name],
            "objectclass": ["top", "group"],
            "member": list(members),
            "description": [description] if description else [],
        }
        return dn

    def members(self, group_dn: str) -> list[str]:
        return list(self.groups[group_dn]["member"])

    # -- querying -----------------------------------------------------
    def _entry_attributes(self, dn: str) -> dict[str, list[Any]]:
        if dn in self.users:
            attrs = {key: list(values) for key, values in self.users[dn].items()}
            if dn not in self.hide_member_of:
                attrs["memberof"] = [
                    gdn for gdn, gattrs in self.groups.items() if dn in gattrs["member"]
                ]
            return attrs
        return {key: list(values) for key, values in self.groups[dn].items()}

    @staticmethod
    def _matches(attrs: dict[str, list[Any]], search_filter: str) -> bool:
        for attr, raw in _PAIR.findall(search_filter):
            values = [str(v).lower() for v in attrs.get(attr.lower(), [])]
            if raw == "*":
                if not values:
                    return False
                continue
            if _unescape(raw).lower() not in values:
                return False
        return True

    def search(self, base_dn: str, search_filter: str, attributes: list[str]) -> list[DirectoryEntry]:
        wanted = {name.lower() for name in attributes}
        results = []
        for dn in [*self.users, *self.groups]:
            if not dn.lower().endswith(base_dn.lower()):
                continue
            attrs = self._entry_attributes(dn)
            if not self._matches(attrs, search_filter):
                continue
            results.append(
                DirectoryEntry(dn, {k: v for k, v in attrs.items() if k in wanted})
            )
        return results

    def modify_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "modify"]

    def factory(self, config: DirectoryConfig) -> FakeDirectoryClient:
        client = FakeDirectoryClient(config.require_enabled(), self)
        self.clients.append(client)
        return client


class FakeDirectoryClient(DirectoryClient):
    def __init__(self, config: DirectoryConfig, directory: FakeDirectory) -> None:
        super().__init__(config)
        self.directory = directory
        self.closed = False

    def _do_connect(self) -> None:
        self.directory.calls.append(("connect",))
        if self.directory.unavailable:
            raise DirectoryUnavailable("Directory unavailable during connect")

    def _do_bind(self, dn: str, secret: str) -> None:
        self.directory.calls.append(("bind", dn))
        if self.directory.unavailable:
            raise DirectoryUnavailable("Directory unavailable during bind")
        if self.directory.passwords.get(dn.lower()) != secret:
            raise InvalidCredentials("Directory rejected the bind", {"dn": dn})

    def _do_search(
        self, base_dn: str, search_filter: str, scope: SearchScope, attributes: list[str]
    ) -> Iterator[DirectoryEntry]:
        self.directory.calls.append(("search", search_filter))
        yield from self.directory.search(base_dn, search_filter, attributes)

    def _do_modify(
        self, dn: str, operation: ModifyOperation, attribute: str, values: list[Any]
    ) -> ModifyOutcome:
        self.directory.calls.append(("modify", dn, operation.value, attribute, values[0]))
        if self.directory.modify_hook is not None:
            self.directory.modify_hook(values[0])
        if dn in self.directory.failing_groups:
            raise DirectoryProtocolError("Insufficient access rights", result_code=50)
        if attribute == AD_PASSWORD_ATTRIBUTE:
            self.directory.password_writes.append((dn, values[0]))
            return ModifyOutcome.APPLIED
        members = self.directory.groups[dn][attribute.lower()]
        value = values[0]
        if operation is ModifyOperation.ADD:
            if value in members:
                return ModifyOutcome.ALREADY_PRESENT
            members.append(value)
        elif operation is ModifyOperation.DELETE:
            if value not in members:
                return ModifyOutcome.ALREADY_ABSENT
            members.remove(value)
        return ModifyOutcome.APPLIED

    def _do_close(self) -> None:
        self.closed = True
        self.directory.calls.append(("close",))


class ListAuditRecorder(AuditRecorder):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


@pytest.fixture
def store(tmp_path) -> Iterator[IdentityStore]:
    store = IdentityStore(tmp_path / "identity.db")
    yield store
    store.close()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def directory_config() -> DirectoryConfig:
    return DirectoryConfig(
        enabled=True,
        host="dc01.example.com",
        base_dn=BASE_DN,
        bind_dn=SERVICE_DN,
        bind_password=SERVICE_PASSWORD,
    )


@pytest.fixture
def audit() -> ListAuditRecorder:
    return ListAuditRecorder()


@pytest.fixture
def service(store, directory, audit) -> IdentityService:
    return IdentityService(
        store,
        token_secret=TOKEN_SECRET,
        bcrypt_rounds=4,
        audit=audit,
        client_factory=directory.factory,
    )


@pytest.fixture
def directory_enabled(store, directory_config) -> DirectoryConfig:
    return store.save_directory_config(directory_config)


@pytest.fixture
def all_clients_closed(directory):
    """Assert after the test that every directory client was released."""
    yield
    assert all(client.closed for client in directory.clients)
