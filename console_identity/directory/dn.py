"""DN and filter helpers plus the enumerated bind-DN strategy."""

from __future__ import annotations

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn, parse_dn

from console_identity.config.schema import DirectoryConfig


def user_filter(config: DirectoryConfig, login: str) -> str:
    """Filter matching one login id under the configured user filter."""
    return (
        f"(&{config.user_filter}({config.login_attribute}={escape_filter_chars(login)}))"
    )


def all_users_filter(config: DirectoryConfig) -> str:
    return f"(&{config.user_filter}({config.login_attribute}=*))"


def group_name_filter(config: DirectoryConfig, name: str) -> str:
    return (
        f"(&{config.group_filter}({config.group_name_attribute}={escape_filter_chars(name)}))"
    )


def group_member_filter(config: DirectoryConfig, member_dn: str) -> str:
    """Reverse lookup: groups whose member attribute references ``member_dn``."""
    return (
        f"(&{config.group_filter}"
        f"({config.group_member_attribute}={escape_filter_chars(member_dn)}))"
    )


def cn_from_dn(dn: str) -> str | None:
    """Return the value of the leading CN RDN, e.g. ``Admins`` for ``CN=Admins,OU=x``."""
    try:
        components = parse_dn(dn)
    except LDAPInvalidDnError:
        return None
    if not components:
        return None
    attr, value, _sep = components[0]
    if attr.lower() != "cn":
        return None
    # parse_dn keeps RDN escapes in place
    return value.replace("\\,", ",").replace("\\=", "=").replace("\\\\", "\\")


def _dc_components(base_dn: str) -> list[str]:
    try:
        components = parse_dn(base_dn)
    except LDAPInvalidDnError:
        return []
    return [value for attr, value, _sep in components if attr.lower() == "dc"]


def domain_from_base_dn(base_dn: str) -> str | None:
    """``DC=corp,DC=example,DC=com`` → ``corp.example.com``."""
    parts = _dc_components(base_dn)
    return ".".join(parts) if parts else None


def netbios_from_base_dn(base_dn: str) -> str | None:
    """Down-level domain name guessed from the first DC component."""
    parts = _dc_components(base_dn)
    return parts[0].upper() if parts else None


def bind_candidates(
    config: DirectoryConfig, login: str, searched_dn: str | None = None
) -> list[str]:
    """Ordered list of DNs to try when binding as ``login``.

    When a service-account search located the entry, its DN is the only
    candidate. Otherwise the configured ``bind_formats`` are expanded in
    order, skipping ``search`` and formats that cannot be derived.
    """
    if searched_dn:
        return [searched_dn]

    candidates: list[str] = []
    domain = domain_from_base_dn(config.base_dn)
    netbios = netbios_from_base_dn(config.base_dn)
    for fmt in config.bind_formats:
        if fmt == "upn":
            if "@" in login:
                candidates.append(login)
            elif domain and "\\" not in login:
                candidates.append(f"{login}@{domain}")
        elif fmt == "down_level":
            if "\\" in login:
                candidates.append(login)
            elif netbios and "@" not in login:
                candidates.append(f"{netbios}\\{login}")
        elif fmt == "rdn":
            rdn = escape_rdn(login)
            candidates.append(f"CN={rdn},CN=Users,{config.base_dn}")
            candidates.append(f"CN={rdn},OU=Users,{config.base_dn}")

    seen: set[str] = set()
    ordered = []
    for dn in candidates:
        if dn.lower() not in seen:
            seen.add(dn.lower())
            ordered.append(dn)
    return ordered
