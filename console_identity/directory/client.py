"""
Directory protocol client.

``DirectoryClient`` owns the connection state machine; concrete transports
implement the ``_do_*`` hooks. ``Ldap3DirectoryClient`` is the production
transport built on ldap3.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ldap3
from ldap3.core.exceptions import (
    LDAPCommunicationError,
    LDAPException,
    LDAPStartTLSError,
)

from console_identity.config.schema import DirectoryConfig
from console_identity.exceptions import (
    ConfigurationError,
    DirectoryProtocolError,
    DirectoryUnavailable,
    InvalidCredentials,
)
from console_identity.utils.logger import get_logger

from . import dn as dn_utils

logger = get_logger(__name__)

# LDAP result codes
RESULT_SUCCESS = 0
RESULT_NO_SUCH_ATTRIBUTE = 16
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_INVALID_CREDENTIALS = 49
RESULT_BUSY = 51
RESULT_UNAVAILABLE = 52
RESULT_UNWILLING_TO_PERFORM = 53
RESULT_ENTRY_ALREADY_EXISTS = 68
RESULT_SERVER_DOWN = 81
RESULT_TIMEOUT = 85

TRANSIENT_RESULTS = {RESULT_BUSY, RESULT_UNAVAILABLE, RESULT_SERVER_DOWN, RESULT_TIMEOUT}
# AD reports ERROR_MEMBER_NOT_IN_GROUP (0x561) as unwillingToPerform
AD_MEMBER_NOT_IN_GROUP = "00000561"

PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
AD_PASSWORD_ATTRIBUTE = "unicodePwd"


class DirectoryState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BOUND = "bound"
    SEARCHING = "searching"
    MODIFYING = "modifying"
    UNBOUND = "unbound"


class ModifyOperation(str, Enum):
    ADD = "add"
    DELETE = "delete"
    REPLACE = "replace"


class ModifyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PRESENT = "already_present"  # benign duplicate add
    ALREADY_ABSENT = "already_absent"  # benign missing delete

    @property
    def benign(self) -> bool:
        return self is not ModifyOutcome.APPLIED


class SearchScope(str, Enum):
    BASE = "base"
    ONE_LEVEL = "one_level"
    SUBTREE = "subtree"


@dataclass(frozen=True)
class DirectoryTimeouts:
    connect: float = 10.0
    operation: float = 30.0

    @classmethod
    def from_config(cls, config: DirectoryConfig) -> DirectoryTimeouts:
        return cls(connect=config.connect_timeout, operation=config.operation_timeout)


@dataclass
class DirectoryEntry:
    """A search result; attribute names are stored lower-cased."""

    dn: str
    attributes: dict[str, list[Any]] = field(default_factory=dict)

    def values(self, name: str) -> list[Any]:
        return list(self.attributes.get(name.lower(), []))

    def first(self, name: str) -> Any | None:
        values = self.values(name)
        return values[0] if values else None

    def text(self, name: str) -> str | None:
        value = self.first(name)
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        value = str(value).strip()
        return value or None

    @property
    def object_classes(self) -> set[str]:
        return {str(v).lower() for v in self.values("objectClass")}


def normalize_attributes(raw: dict[str, Any] | None) -> dict[str, list[Any]]:
    normalized: dict[str, list[Any]] = {}
    for key, value in (raw or {}).items():
        if value is None:
            values: list[Any] = []
        elif isinstance(value, (list, tuple, set)):
            values = list(value)
        else:
            values = [value]
        normalized[str(key).lower()] = values
    return normalized


def encode_ad_password(password: str) -> bytes:
    """Quote the password and encode it as UTF-16LE, as AD requires for unicodePwd."""
    return f'"{password}"'.encode("utf-16-le")


class DirectoryClient(ABC):
    """Stateful directory connection.

    Valid transitions::

        DISCONNECTED -> CONNECTING -> BOUND -> {SEARCHING | MODIFYING} -> BOUND
        any -> UNBOUND (close)

    Only ``connect`` and ``bind`` are allowed outside ``BOUND``. Instances
    are context managers; leaving the ``with`` block always closes.
    """

    def __init__(self, config: DirectoryConfig, timeouts: DirectoryTimeouts | None = None):
        self.config = config
        self.timeouts = timeouts or DirectoryTimeouts.from_config(config)
        self.state = DirectoryState.DISCONNECTED
        self.bound_dn: str | None = None

    # Context management
    def __enter__(self) -> DirectoryClient:
        if self.state is DirectoryState.DISCONNECTED:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _require(self, *states: DirectoryState, operation: str) -> None:
        if self.state not in states:
            raise DirectoryProtocolError(
                f"Cannot {operation} while connection is {self.state.value}",
                details={"state": self.state.value, "operation": operation},
            )

    # Public operations
    def connect(self) -> None:
        self._require(DirectoryState.DISCONNECTED, operation="connect")
        self.state = DirectoryState.CONNECTING
        try:
            self._do_connect()
        except Exception:
            self.close()
            raise
        logger.debug(
            "Directory transport opened",
            event="directory.connected",
            host=self.config.host,
            port=self.config.effective_port,
            tls=self.config.use_tls,
        )

    def bind(self, dn: str, secret: str) -> None:
        """Authenticate as ``dn``; raises InvalidCredentials or DirectoryUnavailable."""
        self._require(DirectoryState.CONNECTING, DirectoryState.BOUND, operation="bind")
        if not dn or not secret:
            # an empty secret would be an unauthenticated bind, which servers accept
            raise InvalidCredentials("Empty bind DN or secret")
        self.state = DirectoryState.CONNECTING
        self.bound_dn = None
        self._do_bind(dn, secret)
        self.state = DirectoryState.BOUND
        self.bound_dn = dn

    def service_bind(self) -> None:
        """Bind with the configured service account."""
        if not self.config.has_service_account:
            raise ConfigurationError(
                "Directory service account is not configured", field="bind_dn"
            )
        try:
            self.bind(self.config.bind_dn, self.config.bind_password)
        except InvalidCredentials as exc:
            raise ConfigurationError(
                "Directory service account credentials were rejected", field="bind_dn"
            ) from exc

    def search(
        self,
        base_dn: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: list[str] | None = None,
    ) -> Generator[DirectoryEntry, None, None]:
        """Lazy, single-pass sequence of entries.

        The connection stays in ``SEARCHING`` until the iterator is drained or
        closed. Mid-stream failures raise DirectoryProtocolError or
        DirectoryUnavailable from the iterator.
        """
        self._require(DirectoryState.BOUND, operation="search")
        return self._iterate(base_dn, search_filter, scope, list(attributes or []))

    def _iterate(
        self, base_dn: str, search_filter: str, scope: SearchScope, attributes: list[str]
    ) -> Generator[DirectoryEntry, None, None]:
        self._require(DirectoryState.BOUND, operation="search")
        self.state = DirectoryState.SEARCHING
        try:
            yield from self._do_search(base_dn, search_filter, scope, attributes)
        finally:
            if self.state is DirectoryState.SEARCHING:
                self.state = DirectoryState.BOUND

    def modify_attribute(
        self, dn: str, operation: ModifyOperation, attribute: str, value: Any
    ) -> ModifyOutcome:
        self._require(DirectoryState.BOUND, operation="modify")
        operation = ModifyOperation(operation)
        self.state = DirectoryState.MODIFYING
        try:
            outcome = self._do_modify(dn, operation, attribute, [value])
        finally:
            if self.state is DirectoryState.MODIFYING:
                self.state = DirectoryState.BOUND
        if outcome.benign:
            logger.info(
                "Directory modify reported a benign outcome",
                event="directory.modify_benign",
                dn=dn,
                operation=operation.value,
                attribute=attribute,
                outcome=outcome.value,
            )
        return outcome

    def set_password(self, dn: str, new_password: str) -> None:
        """Replace the AD password attribute with the encoded value."""
        self.modify_attribute(
            dn, ModifyOperation.REPLACE, AD_PASSWORD_ATTRIBUTE, encode_ad_password(new_password)
        )
        logger.info("Directory password replaced", event="directory.password_set", dn=dn)

    def close(self) -> None:
        if self.state is DirectoryState.UNBOUND:
            return
        try:
            self._do_close()
        finally:
            self.state = DirectoryState.UNBOUND
            self.bound_dn = None

    # Lookups shared by the services
    def find_user(self, login: str, attributes: list[str] | None = None) -> DirectoryEntry | None:
        """First entry matching the login id under the user filter, or None."""
        results = self.search(
            self.config.base_dn,
            dn_utils.user_filter(self.config, login),
            SearchScope.SUBTREE,
            attributes or [self.config.login_attribute],
        )
        try:
            return next(iter(results), None)
        finally:
            results.close()

    def find_group(self, name: str, attributes: list[str] | None = None) -> DirectoryEntry | None:
        results = self.search(
            self.config.base_dn,
            dn_utils.group_name_filter(self.config, name),
            SearchScope.SUBTREE,
            attributes or [self.config.group_name_attribute],
        )
        try:
            return next(iter(results), None)
        finally:
            results.close()

    def groups_of(self, member_dn: str) -> list[DirectoryEntry]:
        """Groups whose member attribute references ``member_dn``."""
        return list(
            self.search(
                self.config.base_dn,
                dn_utils.group_member_filter(self.config, member_dn),
                SearchScope.SUBTREE,
                [self.config.group_name_attribute],
            )
        )

    # Transport hooks
    @abstractmethod
    def _do_connect(self) -> None: ...

    @abstractmethod
    def _do_bind(self, dn: str, secret: str) -> None: ...

    @abstractmethod
    def _do_search(
        self, base_dn: str, search_filter: str, scope: SearchScope, attributes: list[str]
    ) -> Iterator[DirectoryEntry]: ...

    @abstractmethod
    def _do_modify(
        self, dn: str, operation: ModifyOperation, attribute: str, values: list[Any]
    ) -> ModifyOutcome: ...

    @abstractmethod
    def _do_close(self) -> None: ...


_LDAP3_SCOPES = {
    SearchScope.BASE: ldap3.BASE,
    SearchScope.ONE_LEVEL: ldap3.LEVEL,
    SearchScope.SUBTREE: ldap3.SUBTREE,
}

_LDAP3_OPERATIONS = {
    ModifyOperation.ADD: ldap3.MODIFY_ADD,
    ModifyOperation.DELETE: ldap3.MODIFY_DELETE,
    ModifyOperation.REPLACE: ldap3.MODIFY_REPLACE,
}

_TRANSPORT_ERRORS = (LDAPCommunicationError, LDAPStartTLSError, OSError)


class Ldap3DirectoryClient(DirectoryClient):
    """DirectoryClient over an ldap3 synchronous connection."""

    def __init__(self, config: DirectoryConfig, timeouts: DirectoryTimeouts | None = None):
        super().__init__(config, timeouts)
        self._conn: ldap3.Connection | None = None

    def _result(self) -> tuple[int, str]:
        result = getattr(self._conn, "result", None) or {}
        code = result.get("result")
        message = result.get("message") or result.get("description") or ""
        return (int(code) if code is not None else -1), str(message)

    def _unavailable(self, action: str, exc: BaseException) -> DirectoryUnavailable:
        logger.warning(
            "Directory unavailable",
            event="directory.unavailable",
            action=action,
            host=self.config.host,
            error=str(exc),
        )
        return DirectoryUnavailable(
            f"Directory unavailable during {action}",
            details={"host": self.config.host, "action": action},
        )

    def _result_error(self, action: str, code: int, message: str) -> Exception:
        if code in TRANSIENT_RESULTS:
            return DirectoryUnavailable(
                f"Directory unavailable during {action}",
                details={"result_code": code, "action": action},
            )
        return DirectoryProtocolError(
            f"Directory {action} failed: {message or 'result ' + str(code)}",
            result_code=code,
            details={"action": action},
        )

    def _do_connect(self) -> None:
        try:
            server = ldap3.Server(
                self.config.host,
                port=self.config.effective_port,
                use_ssl=self.config.use_tls,
                connect_timeout=self.timeouts.connect,
                get_info=ldap3.NONE,
            )
            self._conn = ldap3.Connection(
                server,
                receive_timeout=self.timeouts.operation,
                raise_exceptions=False,
                read_only=False,
            )
            self._conn.open()
        except _TRANSPORT_ERRORS as exc:
            raise self._unavailable("connect", exc) from exc
        except LDAPException as exc:
            raise DirectoryProtocolError(f"Directory connect failed: {exc}") from exc

    def _do_bind(self, dn: str, secret: str) -> None:
        assert self._conn is not None
        self._conn.user = dn
        self._conn.password = secret
        try:
            ok = self._conn.bind()
        except _TRANSPORT_ERRORS as exc:
            raise self._unavailable("bind", exc) from exc
        except LDAPException as exc:
            raise DirectoryProtocolError(f"Directory bind failed: {exc}") from exc
        if ok:
            return
        code, message = self._result()
        if code == RESULT_INVALID_CREDENTIALS:
            raise InvalidCredentials("Directory rejected the bind", details={"dn": dn})
        raise self._result_error("bind", code, message)

    def _do_search(
        self, base_dn: str, search_filter: str, scope: SearchScope, attributes: list[str]
    ) -> Iterator[DirectoryEntry]:
        assert self._conn is not None
        cookie: bytes | None = None
        while True:
            try:
                self._conn.search(
                    search_base=base_dn,
                    search_filter=search_filter,
                    search_scope=_LDAP3_SCOPES[scope],
                    attributes=attributes or ldap3.NO_ATTRIBUTES,
                    paged_size=self.config.page_size,
                    paged_cookie=cookie,
                )
            except _TRANSPORT_ERRORS as exc:
                raise self._unavailable("search", exc) from exc
            except LDAPException as exc:
                raise DirectoryProtocolError(f"Directory search failed: {exc}") from exc

            code, message = self._result()
            if code != RESULT_SUCCESS:
                raise self._result_error("search", code, message)

            for item in list(self._conn.response or []):
                if item.get("type") != "searchResEntry":
                    continue
                yield DirectoryEntry(
                    dn=item.get("dn", ""),
                    attributes=normalize_attributes(item.get("attributes")),
                )

            controls = (self._conn.result or {}).get("controls") or {}
            cookie = controls.get(PAGED_RESULTS_OID, {}).get("value", {}).get("cookie")
            if not cookie:
                return

    def _do_modify(
        self, dn: str, operation: ModifyOperation, attribute: str, values: list[Any]
    ) -> ModifyOutcome:
        assert self._conn is not None
        try:
            ok = self._conn.modify(dn, {attribute: [(_LDAP3_OPERATIONS[operation], values)]})
        except _TRANSPORT_ERRORS as exc:
            raise self._unavailable("modify", exc) from exc
        except LDAPException as exc:
            raise DirectoryProtocolError(f"Directory modify failed: {exc}") from exc
        if ok:
            return ModifyOutcome.APPLIED

        code, message = self._result()
        if operation is ModifyOperation.ADD and code in (
            RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
            RESULT_ENTRY_ALREADY_EXISTS,
        ):
            return ModifyOutcome.ALREADY_PRESENT
        if operation is ModifyOperation.DELETE and (
            code == RESULT_NO_SUCH_ATTRIBUTE
            or (code == RESULT_UNWILLING_TO_PERFORM and AD_MEMBER_NOT_IN_GROUP in message)
        ):
            return ModifyOutcome.ALREADY_ABSENT
        raise self._result_error("modify", code, message)

    def _do_close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.unbind()
        except Exception as exc:
            logger.debug(
                "Ignoring error while closing directory connection",
                event="directory.close_failed",
                error=str(exc),
            )


DirectoryClientFactory = Callable[[DirectoryConfig], DirectoryClient]


def create_directory_client(
    config: DirectoryConfig, timeouts: DirectoryTimeouts | None = None
) -> DirectoryClient:
    """Build the production client for an enabled, complete configuration."""
    return Ldap3DirectoryClient(config.require_enabled(), timeouts)
