from __future__ import annotations

import types

import ldap3
import pytest
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError

from console_identity.config.schema import DirectoryConfig
from console_identity.directory import client as client_mod
from console_identity.directory.client import (
    DirectoryState,
    DirectoryTimeouts,
    Ldap3DirectoryClient,
    ModifyOperation,
    ModifyOutcome,
    create_directory_client,
    encode_ad_password,
)
from console_identity.exceptions import (
    ConfigurationError,
    DirectoryProtocolError,
    DirectoryUnavailable,
    InvalidCredentials,
)

PAGED = client_mod.PAGED_RESULTS_OID


def _inject_fake_ldap3(monkeypatch):
    """Replace ldap3.Server/Connection with scriptable fakes."""
    script = types.SimpleNamespace(
        servers=[],
        connections=[],
        open_error=None,
        bind_code=0,
        bind_message="",
        search_error=None,
        pages=[[]],
        modify_code=0,
        modify_message="",
    )

    class FakeServer:
        def __init__(self, host, **kwargs):
            self.host = host
            self.kwargs = kwargs
            script.servers.append(self)

    class FakeConnection:
        def __init__(self, server, user=None, password=None, **kwargs):
            self.server = server
            self.user = user
            self.password = password
            self.kwargs = kwargs
            self.result = {}
            self.response = []
            self.searches = []
            self.modifications = []
            self.bind_calls = 0
            self.unbound = False
            script.connections.append(self)

        def open(self):
            if script.open_error is not None:
                raise script.open_error

        def bind(self):
            self.bind_calls += 1
            self.result = {"result": script.bind_code, "message": script.bind_message}
            return script.bind_code == 0

        def search(self, **kwargs):
            self.searches.append(kwargs)
            if script.search_error is not None:
                raise script.search_error
            page_index = len(self.searches) - 1
            entries = script.pages[page_index]
            more = page_index + 1 < len(script.pages)
            self.response = [
                {"type": "searchResEntry", "dn": dn, "attributes": attrs}
                for dn, attrs in entries
            ] + [{"type": "searchResRef", "uri": ["ldap://other"]}]
            self.result = {
                "result": 0,
                "controls": {PAGED: {"value": {"cookie": b"next" if more else b""}}},
            }
            return bool(entries)

        def modify(self, dn, changes):
            self.modifications.append((dn, changes))
            self.result = {"result": script.modify_code, "message": script.modify_message}
            return script.modify_code == 0

        def unbind(self):
            self.unbound = True

    monkeypatch.setattr(client_mod.ldap3, "Server", FakeServer)
    monkeypatch.setattr(client_mod.ldap3, "Connection", FakeConnection)
    return script


@pytest.fixture
def fake_ldap3(monkeypatch):
    return _inject_fake_ldap3(monkeypatch)


@pytest.fixture
def config():
    return DirectoryConfig(
        enabled=True,
        host="dc01.example.com",
        use_tls=True,
        base_dn="DC=example,DC=com",
        bind_dn="CN=svc,CN=Users,DC=example,DC=com",
        bind_password="svc-secret",
        connect_timeout=3,
        operation_timeout=7,
        page_size=2,
    )


def _bound_client(config):
    client = Ldap3DirectoryClient(config)
    client.connect()
    client.service_bind()
    return client


def test_connect_uses_independent_timeouts(fake_ldap3, config):
    with Ldap3DirectoryClient(config) as client:
        assert client.state is DirectoryState.CONNECTING
    server = fake_ldap3.servers[0]
    conn = fake_ldap3.connections[0]
    assert server.host == "dc01.example.com"
    assert server.kwargs["port"] == 636
    assert server.kwargs["use_ssl"] is True
    assert server.kwargs["connect_timeout"] == 3
    assert conn.kwargs["receive_timeout"] == 7
    assert conn.kwargs["raise_exceptions"] is False
    assert conn.unbound is True
    assert client.state is DirectoryState.UNBOUND


def test_explicit_timeouts_override_config(fake_ldap3, config):
    client = Ldap3DirectoryClient(config, DirectoryTimeouts(connect=1, operation=2))
    client.connect()
    client.close()
    assert fake_ldap3.servers[0].kwargs["connect_timeout"] == 1
    assert fake_ldap3.connections[0].kwargs["receive_timeout"] == 2


def test_connect_failure_is_unavailable_and_releases(fake_ldap3, config):
    fake_ldap3.open_error = LDAPSocketOpenError("socket connection error")
    client = Ldap3DirectoryClient(config)
    with pytest.raises(DirectoryUnavailable):
        client.connect()
    assert client.state is DirectoryState.UNBOUND
    assert fake_ldap3.connections[0].unbound is True


def test_bind_rejection_is_invalid_credentials(fake_ldap3, config):
    fake_ldap3.bind_code = 49
    client = Ldap3DirectoryClient(config)
    client.connect()
    with pytest.raises(InvalidCredentials):
        client.bind("CN=alice,CN=Users,DC=example,DC=com", "wrong")
    # a rejected bind leaves the transport open for the next candidate
    assert client.state is DirectoryState.CONNECTING
    client.close()


def test_service_bind_rejection_is_configuration_error(fake_ldap3, config):
    fake_ldap3.bind_code = 49
    with Ldap3DirectoryClient(config) as client:
        with pytest.raises(ConfigurationError):
            client.service_bind()


def test_bind_busy_server_is_unavailable(fake_ldap3, config):
    fake_ldap3.bind_code = 51
    with Ldap3DirectoryClient(config) as client:
        with pytest.raises(DirectoryUnavailable):
            client.bind("CN=alice,CN=Users,DC=example,DC=com", "secret")


def test_empty_secret_never_reaches_the_server(fake_ldap3, config):
    with Ldap3DirectoryClient(config) as client:
        with pytest.raises(InvalidCredentials):
            client.bind("CN=alice,CN=Users,DC=example,DC=com", "")
        assert fake_ldap3.connections[0].bind_calls == 0


def test_search_requires_bound_state(fake_ldap3, config):
    with Ldap3DirectoryClient(config) as client:
        with pytest.raises(DirectoryProtocolError):
            client.search("DC=example,DC=com", "(objectClass=person)")


def test_paged_search_follows_cookie(fake_ldap3, config):
    fake_ldap3.pages = [
        [("CN=a,DC=example,DC=com", {"cn": "a", "mail": ["a@example.com"]})],
        [("CN=b,DC=example,DC=com", {"CN": ["b"]})],
    ]
    client = _bound_client(config)
    entries = list(client.search("DC=example,DC=com", "(objectClass=person)", attributes=["cn"]))
    conn = fake_ldap3.connections[0]

    assert [entry.dn for entry in entries] == ["CN=a,DC=example,DC=com", "CN=b,DC=example,DC=com"]
    assert entries[0].values("cn") == ["a"]
    assert entries[1].first("cn") == "b"
    assert conn.searches[0]["paged_size"] == 2
    assert conn.searches[0]["paged_cookie"] is None
    assert conn.searches[1]["paged_cookie"] == b"next"
    assert conn.searches[0]["search_scope"] == ldap3.SUBTREE
    assert client.state is DirectoryState.BOUND
    client.close()


def test_search_timeout_is_unavailable_and_restores_state(fake_ldap3, config):
    fake_ldap3.search_error = LDAPSocketReceiveError("timed out")
    client = _bound_client(config)
    with pytest.raises(DirectoryUnavailable):
        list(client.search("DC=example,DC=com", "(objectClass=person)"))
    assert client.state is DirectoryState.BOUND
    client.close()
    assert fake_ldap3.connections[0].unbound is True


def test_abandoned_search_returns_to_bound(fake_ldap3, config):
    fake_ldap3.pages = [[("CN=a,DC=example,DC=com", {}), ("CN=b,DC=example,DC=com", {})]]
    client = _bound_client(config)
    results = client.search("DC=example,DC=com", "(objectClass=person)")
    next(results)
    assert client.state is DirectoryState.SEARCHING
    results.close()
    assert client.state is DirectoryState.BOUND
    client.close()


@pytest.mark.parametrize(
    "operation, code, message, expected",
    [
        (ModifyOperation.ADD, 0, "", ModifyOutcome.APPLIED),
        (ModifyOperation.ADD, 20, "", ModifyOutcome.ALREADY_PRESENT),
        (ModifyOperation.ADD, 68, "00000562: UpdErr", ModifyOutcome.ALREADY_PRESENT),
        (ModifyOperation.DELETE, 16, "", ModifyOutcome.ALREADY_ABSENT),
        (ModifyOperation.DELETE, 53, "00000561: SvcErr: WILL_NOT_PERFORM", ModifyOutcome.ALREADY_ABSENT),
    ],
)
def test_modify_outcomes(fake_ldap3, config, operation, code, message, expected):
    fake_ldap3.modify_code = code
    fake_ldap3.modify_message = message
    client = _bound_client(config)
    outcome = client.modify_attribute(
        "CN=Ops,DC=example,DC=com", operation, "member", "CN=a,DC=example,DC=com"
    )
    assert outcome is expected
    assert client.state is DirectoryState.BOUND
    client.close()


def test_modify_genuine_error_raises(fake_ldap3, config):
    fake_ldap3.modify_code = 50
    fake_ldap3.modify_message = "insufficientAccessRights"
    client = _bound_client(config)
    with pytest.raises(DirectoryProtocolError) as excinfo:
        client.modify_attribute(
            "CN=Ops,DC=example,DC=com", ModifyOperation.ADD, "member", "CN=a,DC=example,DC=com"
        )
    assert excinfo.value.result_code == 50
    assert client.state is DirectoryState.BOUND
    client.close()


def test_duplicate_on_delete_is_not_benign(fake_ldap3, config):
    fake_ldap3.modify_code = 68
    client = _bound_client(config)
    with pytest.raises(DirectoryProtocolError):
        client.modify_attribute(
            "CN=Ops,DC=example,DC=com", ModifyOperation.DELETE, "member", "CN=a,DC=example,DC=com"
        )
    client.close()


def test_encode_ad_password_is_quoted_utf16le():
    assert encode_ad_password("Ab1!") == b'"\x00A\x00b\x001\x00!\x00"\x00'
    assert encode_ad_password("é") == b'"\x00\xe9\x00"\x00'


def test_set_password_replaces_unicode_pwd(fake_ldap3, config):
    client = _bound_client(config)
    client.set_password("CN=alice,CN=Users,DC=example,DC=com", "N3w!Secret")
    dn, changes = fake_ldap3.connections[0].modifications[0]
    assert dn == "CN=alice,CN=Users,DC=example,DC=com"
    assert changes == {
        "unicodePwd": [(ldap3.MODIFY_REPLACE, ['"N3w!Secret"'.encode("utf-16-le")])]
    }
    client.close()


def test_context_manager_closes_on_exception(fake_ldap3, config):
    with pytest.raises(RuntimeError):
        with Ldap3DirectoryClient(config) as client:
            client.service_bind()
            raise RuntimeError("boom")
    assert client.state is DirectoryState.UNBOUND
    assert fake_ldap3.connections[0].unbound is True


def test_factory_refuses_disabled_directory(config):
    with pytest.raises(ConfigurationError):
        create_directory_client(config.model_copy(update={"enabled": False}))
