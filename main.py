#!/usr/bin/env python3
"""
Gatehouse -- administration CLI for the credential/session store.

Usage:
  python main.py init-db
  python main.py add-permission doc:read --description "Read documents"
  python main.py add-role editor doc:read doc:write
  python main.py add-principal alice --roles editor
  python main.py add-principal bob --roles viewer --mfa
  python main.py set-status bob disabled
  python main.py revoke-sessions alice
  python main.py generate-key k2
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the store (default: sqlite:///gatehouse.db)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py for the rest.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.keys import generate_signing_key
from auth.manager import AuthSessionManager, build_auth_manager
from auth.models import PrincipalStatus
from auth.schema import make_engine
from auth.store import RoleStore
from core.config import get_settings


def _read_password(identifier: str, from_stdin: bool) -> str:
    """Read a new password from stdin (scripts) or prompt twice (interactive)."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass(f"Password for {identifier}: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _cmd_init_db(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    # make_engine() already ran create_all(); report what is there.
    print(f"  Store ready: {len(roles.list_roles())} role(s), {len(manager.principals.list_principals())} principal(s).")
    return 0


def _cmd_add_permission(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    roles.define_permission(args.identifier, args.description)
    print(f"  Permission {args.identifier} defined.")
    return 0


def _cmd_add_role(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    role = roles.define_role(args.identifier, args.permissions)
    print(f"  Role {role.identifier} -> {', '.join(role.permissions) or '(no permissions)'}")
    return 0


def _cmd_add_principal(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    role_ids = [r for r in (args.roles or "").split(",") if r]
    known = {r.identifier for r in roles.list_roles()}
    unknown = [r for r in role_ids if r not in known]
    if unknown:
        print(f"  [!] Unknown role(s): {', '.join(unknown)}")
        return 1
    password = _read_password(args.identifier, args.password_stdin)
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    try:
        manager.register_principal(args.identifier, password, roles=role_ids, mfa_enabled=args.mfa)
    except IntegrityError:
        print(f"  [!] Principal {args.identifier} already exists.")
        return 1
    print(f"  Principal {args.identifier} created (roles: {', '.join(role_ids) or 'none'}, mfa: {args.mfa}).")
    return 0


def _cmd_set_status(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    status = PrincipalStatus(args.status)
    if not manager.principals.set_status(args.identifier, status):
        print(f"  [!] No principal named {args.identifier}.")
        return 1
    if status is PrincipalStatus.active:
        manager.guard.reset_principal(args.identifier)
    if status is PrincipalStatus.disabled:
        manager.revoke_all_sessions(args.identifier, reason="disabled")
    print(f"  {args.identifier} is now {status.value}.")
    return 0


def _cmd_revoke_sessions(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    count = manager.revoke_all_sessions(args.identifier, reason="admin")
    print(f"  {count} session(s) revoked for {args.identifier}.")
    return 0


def _cmd_generate_key(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    key = generate_signing_key(args.kid)
    print("  Append this entry to SIGNING_KEYS (comma-separated, newest last):")
    print(f"{key.kid}:{key.secret}")
    return 0


def _cmd_purge(args: argparse.Namespace, manager: AuthSessionManager, roles: RoleStore) -> int:
    purged = manager.purge_expired()
    print("  Purged " + ", ".join(f"{n} {name}" for name, n in purged.items()) + ".")
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "add-permission": _cmd_add_permission,
    "add-role": _cmd_add_role,
    "add-principal": _cmd_add_principal,
    "set-status": _cmd_set_status,
    "revoke-sessions": _cmd_revoke_sessions,
    "generate-key": _cmd_generate_key,
    "purge": _cmd_purge,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Administer principals, roles and sessions in the Gatehouse store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py add-permission 'doc:*'
  python main.py add-role admin 'doc:*'
  echo 's3cret-pass' | python main.py add-principal carol --roles admin --password-stdin
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init-db", help="Create the schema if it does not exist")

    p = sub.add_parser("add-permission", help="Define (or re-describe) a permission")
    p.add_argument("identifier", help="Permission id, e.g. doc:read or a wildcard grant doc:*")
    p.add_argument("--description", default="", help="Human-readable description")

    p = sub.add_parser("add-role", help="Create or replace a role")
    p.add_argument("identifier", help="Role id, e.g. editor")
    p.add_argument("permissions", nargs="*", metavar="PERMISSION", help="Permissions the role grants")

    p = sub.add_parser("add-principal", help="Create a principal with a password")
    p.add_argument("identifier", help="Login identifier")
    p.add_argument("--roles", metavar="R1,R2", help="Comma-separated role ids")
    p.add_argument("--mfa", action="store_true", help="Require a second factor at login")
    p.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")

    p = sub.add_parser("set-status", help="Activate (unlock) or disable a principal")
    p.add_argument("identifier")
    p.add_argument("status", choices=[PrincipalStatus.active.value, PrincipalStatus.disabled.value])

    p = sub.add_parser("revoke-sessions", help="Revoke every session of a principal")
    p.add_argument("identifier")

    p = sub.add_parser("generate-key", help="Print a new signing key entry for SIGNING_KEYS")
    p.add_argument("kid", help="Key id to embed in token headers, e.g. k2")

    sub.add_parser("purge", help="Delete expired sessions, spent challenges and idle counters")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    engine = make_engine(settings.database_url, timeout=settings.storage_timeout_seconds)
    try:
        manager = build_auth_manager(settings, engine=engine)
        roles = RoleStore(engine)
        return _COMMANDS[args.command](args, manager, roles)
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    except AuthError as exc:
        print(f"  [!] {exc}")
        return 2
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
