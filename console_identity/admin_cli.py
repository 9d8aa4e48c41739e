from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from typing import Any, Protocol, cast

from pydantic import ValidationError

from console_identity.auth.credentials import CredentialStore
from console_identity.auth.store import IdentityStore
from console_identity.config.constants import (
    DEFAULT_CONFIG_PATH,
    ENV_CONFIG_PATH,
    SECTION_DATABASE,
    SECTION_LOGGING,
)
from console_identity.config.loader import load_config, load_settings
from console_identity.config.schema import DirectoryConfig
from console_identity.exceptions import IdentityError
from console_identity.service import IdentityService
from console_identity.utils.logger import configure, logging_context


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _read_password(args: argparse.Namespace, *, confirm: bool = True) -> str | None:
    password = getattr(args, "password", None)
    if password:
        return password
    if getattr(args, "stdin", False):
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("Enter password: ")
    if confirm and password != getpass.getpass("Confirm password: "):
        print("Passwords do not match", file=sys.stderr)
        return None
    return password


def _store(args: argparse.Namespace) -> IdentityStore:
    config = load_config(args.config)
    return IdentityStore(config.get(SECTION_DATABASE, "path"))


def _service(args: argparse.Namespace) -> IdentityService:
    return IdentityService.from_settings(load_settings(args.config))


def _parse_id_lists(items: list[str] | None) -> dict[str, list[int]]:
    """``user=1,2`` → ``{"user": [1, 2]}``"""
    parsed: dict[str, list[int]] = {}
    for item in items or []:
        key, _, value = item.partition("=")
        parsed[key.strip()] = [int(v) for v in value.split(",") if v.strip()]
    return parsed


def _parse_pairs(items: list[str] | None) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in items or []:
        key, _, value = item.partition("=")
        parsed[key.strip()] = value.strip()
    return parsed


def cmd_init_db(args: argparse.Namespace) -> int:
    store = _store(args)
    print(f"Database ready: {store.db_path}")
    store.close()
    return 0


def cmd_configure_directory(args: argparse.Namespace) -> int:
    store = _store(args)
    current = store.get_directory_config().model_dump()
    updates = {
        key: value
        for key, value in {
            "enabled": args.enabled,
            "host": args.host,
            "port": args.port,
            "use_tls": args.tls,
            "base_dn": args.base_dn,
            "bind_dn": args.bind_dn,
            "user_filter": args.user_filter,
            "group_filter": args.group_filter,
            "login_attribute": args.login_attribute,
            "connect_timeout": args.connect_timeout,
            "operation_timeout": args.operation_timeout,
        }.items()
        if value is not None
    }
    if args.bind_password_stdin:
        updates["bind_password"] = sys.stdin.readline().rstrip("\n")
    try:
        config = DirectoryConfig.model_validate({**current, **updates})
    except ValidationError as exc:
        print(f"Invalid directory settings: {exc}", file=sys.stderr)
        store.close()
        return 1
    store.save_directory_config(config)
    _print_json(config.model_dump(mode="json", exclude={"bind_password"}))
    store.close()
    return 0


def cmd_test_directory(args: argparse.Namespace) -> int:
    result = _service(args).test_connection()
    print(result.message)
    return 0 if result.success else 1


def cmd_create_user(args: argparse.Namespace) -> int:
    password = _read_password(args)
    if password is None:
        return 1
    identity = _service(args).create_local_identity(
        args.username,
        password,
        email=args.email,
        display_name=args.display_name,
        group_ids=args.group or [],
    )
    print(f"Created identity {identity.username} (id={identity.id})")
    return 0


def cmd_import_users(args: argparse.Namespace) -> int:
    result = _service(args).import_identities(
        args.usernames, _parse_id_lists(args.group_override), actor=args.actor
    )
    _print_json(result.to_dict())
    return 1 if result.errors else 0


def cmd_import_groups(args: argparse.Namespace) -> int:
    result = _service(args).import_groups(
        args.names, _parse_pairs(args.classification), actor=args.actor
    )
    _print_json(result.to_dict())
    return 1 if result.errors else 0


def cmd_sync_groups(args: argparse.Namespace) -> int:
    service = _service(args)
    identity = service.require_identity(args.username)
    result = service.sync_groups(identity, args.group_ids, actor=args.actor)
    _print_json(result.to_dict())
    return 0 if result.ok else 1


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = _read_password(args)
    if password is None:
        return 1
    print(CredentialStore(rounds=args.rounds).hash(password))
    return 0


def cmd_check_password(args: argparse.Namespace) -> int:
    password = _read_password(args, confirm=False)
    if password is None:
        return 1
    result = CredentialStore.validate_complexity(password)
    if result.valid:
        print("Password satisfies the complexity policy")
        return 0
    print(result.reason)
    return 1


def _bool_flag(parser: argparse.ArgumentParser, name: str, help_text: str) -> None:
    dest = name.replace("-", "_")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(f"--{name}", dest=dest, action="store_true", default=None, help=help_text)
    group.add_argument(f"--no-{name}", dest=dest, action="store_false")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="console-identity-admin", description="Admin CLI for the identity core"
    )
    p.add_argument(
        "--config",
        "-c",
        default=os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH),
        help="Path to config file",
    )
    p.add_argument("--log-level", default=None, help="Override the configured log level")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub_init = sub.add_parser("init-db", help="Create the identity database schema")
    sub_init.set_defaults(func=cmd_init_db)

    sub_dir = sub.add_parser("configure-directory", help="Update stored directory settings")
    _bool_flag(sub_dir, "enabled", "Enable directory integration")
    _bool_flag(sub_dir, "tls", "Use LDAPS")
    sub_dir.add_argument("--host")
    sub_dir.add_argument("--port", type=int)
    sub_dir.add_argument("--base-dn")
    sub_dir.add_argument("--bind-dn")
    sub_dir.add_argument(
        "--bind-password-stdin",
        action="store_true",
        help="Read the service-account password from stdin",
    )
    sub_dir.add_argument("--user-filter")
    sub_dir.add_argument("--group-filter")
    sub_dir.add_argument("--login-attribute")
    sub_dir.add_argument("--connect-timeout", type=float)
    sub_dir.add_argument("--operation-timeout", type=float)
    sub_dir.set_defaults(func=cmd_configure_directory)

    sub_test = sub.add_parser("test-directory", help="Connect and bind with the service account")
    sub_test.set_defaults(func=cmd_test_directory)

    sub_user = sub.add_parser("create-user", help="Create a locally managed identity")
    sub_user.add_argument("username")
    sub_user.add_argument("--password", help="Password (use stdin or prompt if omitted)")
    sub_user.add_argument("--stdin", action="store_true", help="Read password from stdin")
    sub_user.add_argument("--email")
    sub_user.add_argument("--display-name")
    sub_user.add_argument("--group", type=int, action="append", help="Local group id")
    sub_user.set_defaults(func=cmd_create_user)

    sub_imp = sub.add_parser("import-users", help="Import identities from the directory")
    sub_imp.add_argument("usernames", nargs="+")
    sub_imp.add_argument(
        "--group-override",
        action="append",
        metavar="USER=ID,ID",
        help="Initial group ids for one user instead of its directory groups",
    )
    sub_imp.add_argument("--actor", default="admin-cli")
    sub_imp.set_defaults(func=cmd_import_users)

    sub_grp = sub.add_parser("import-groups", help="Import groups from the directory")
    sub_grp.add_argument("names", nargs="+")
    sub_grp.add_argument("--classification", action="append", metavar="NAME=TAG")
    sub_grp.add_argument("--actor", default="admin-cli")
    sub_grp.set_defaults(func=cmd_import_groups)

    sub_sync = sub.add_parser("sync-groups", help="Set an identity's group memberships")
    sub_sync.add_argument("username")
    sub_sync.add_argument("group_ids", nargs="*", type=int)
    sub_sync.add_argument("--actor", default="admin-cli")
    sub_sync.set_defaults(func=cmd_sync_groups)

    sub_hash = sub.add_parser("hash-password", help="Generate a bcrypt hash for a password")
    sub_hash.add_argument("--password", help="Password (use stdin or prompt if omitted)")
    sub_hash.add_argument("--stdin", action="store_true", help="Read password from stdin")
    sub_hash.add_argument("--rounds", type=int, default=CredentialStore.DEFAULT_ROUNDS)
    sub_hash.set_defaults(func=cmd_hash_password)

    sub_check = sub.add_parser("check-password", help="Check a password against the policy")
    sub_check.add_argument("--password", help="Password (use stdin or prompt if omitted)")
    sub_check.add_argument("--stdin", action="store_true", help="Read password from stdin")
    sub_check.set_defaults(func=cmd_check_password)
    return p


class _Cmd(Protocol):
    def __call__(self, args: argparse.Namespace) -> int: ...


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level
    if level is None:
        level = load_config(args.config).get(SECTION_LOGGING, "level", fallback="INFO")
    configure(level=level, handlers=None)
    func = cast(_Cmd, getattr(args, "func"))
    try:
        with logging_context(command=args.cmd):
            return func(args)
    except IdentityError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
