#!/usr/bin/env python3
"""
authcore -- Administrative command line for the auth service.

Operates directly on the configured database (DB_URL), so it works before the
API is running: define roles, create the first admin, deactivate accounts,
and reclaim expired sessions.

Usage:
  python main.py create-role admin --permission audit:read --permission users:write
  python main.py create-user alice --email alice@example.com --role admin
  python main.py set-roles alice --role viewer
  python main.py deactivate alice
  python main.py list-roles
  python main.py sweep

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. Must match the API's key, since it
                also keys the session-token digest.
  DB_URL        SQLAlchemy database URL (default: sqlite authcore.db).
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import ConflictError, StorageUnavailable
from auth.models import Role
from auth.passwords import MAX_PASSWORD_BYTES
from auth.service import AuthService
from core.config import get_settings


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the password from --password, else prompt twice on the terminal."""
    if given is not None:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat:   ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _check_password(password: str) -> bool:
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return False
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return False
    return True


def cmd_create_role(service: AuthService, args: argparse.Namespace) -> int:
    service.users.upsert_role(Role(name=args.name, permissions=frozenset(args.permission)))
    perms = ", ".join(sorted(args.permission)) or "(none)"
    print(f"  Role '{args.name}' saved with permissions: {perms}")
    return 0


def cmd_list_roles(service: AuthService, args: argparse.Namespace) -> int:
    roles = service.users.list_roles()
    if not roles:
        print("  No roles defined.")
    for role in roles:
        print(f"  {role.name:<20} {', '.join(sorted(role.permissions)) or '-'}")
    return 0


def cmd_create_user(service: AuthService, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None or not _check_password(password):
        return 1
    try:
        user = service.register(args.username, args.email, password, roles=args.role)
    except ConflictError as exc:
        print(f"  [!] {exc}")
        return 1
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    roles = ", ".join(sorted(user.roles)) or "(none)"
    print(f"  Created user '{user.username}' (id: {user.id}) with roles: {roles}")
    return 0


def cmd_set_roles(service: AuthService, args: argparse.Namespace) -> int:
    user = service.users.find_by_username_or_email(args.identifier)
    if user is None:
        print(f"  [!] No user matches '{args.identifier}'.")
        return 1
    service.users.set_roles(user.id, frozenset(args.role))
    print(f"  Roles for '{user.username}' set to: {', '.join(sorted(args.role)) or '(none)'}")
    return 0


def cmd_set_active(service: AuthService, args: argparse.Namespace) -> int:
    user = service.users.find_by_username_or_email(args.identifier)
    if user is None:
        print(f"  [!] No user matches '{args.identifier}'.")
        return 1
    active = args.command == "activate"
    service.set_active(user.id, active)
    print(f"  User '{user.username}' {'activated' if active else 'deactivated'}.")
    return 0


def cmd_sweep(service: AuthService, args: argparse.Namespace) -> int:
    counts = service.sweep()
    print(f"  Removed {counts['sessions']} expired or invalidated session(s).")
    return 0


_COMMANDS = {
    "create-role": cmd_create_role,
    "list-roles": cmd_list_roles,
    "create-user": cmd_create_user,
    "set-roles": cmd_set_roles,
    "activate": cmd_set_active,
    "deactivate": cmd_set_active,
    "sweep": cmd_sweep,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Manage users, roles and sessions for the authcore service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-role viewer --permission reports:read
  python main.py create-role admin --permission reports:read --permission audit:read
  python main.py create-user root --email root@example.com --role admin
  SECRET_KEY=... DB_URL=postgresql://... python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-role", help="Create a role or replace its permissions")
    p.add_argument("name", help="Role name")
    p.add_argument(
        "--permission",
        action="append",
        default=[],
        metavar="PERM",
        help="Permission granted by the role (repeatable)",
    )

    sub.add_parser("list-roles", help="List roles and their permissions")

    p = sub.add_parser("create-user", help="Create a user account")
    p.add_argument("username", help="Login name (letters, digits, _ . -)")
    p.add_argument("--email", required=True, help="Email address, also usable as login identifier")
    p.add_argument("--role", action="append", default=[], metavar="ROLE", help="Role to assign (repeatable)")
    p.add_argument("--password", default=None, help="Password (prompted for when omitted)")

    p = sub.add_parser("set-roles", help="Replace a user's roles")
    p.add_argument("identifier", help="Username or email")
    p.add_argument("--role", action="append", default=[], metavar="ROLE", help="Role to assign (repeatable)")

    for name, text in (("activate", "Re-enable a user"), ("deactivate", "Disable a user and end their sessions")):
        p = sub.add_parser(name, help=text)
        p.add_argument("identifier", help="Username or email")

    sub.add_parser("sweep", help="Delete expired and invalidated sessions")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    service = AuthService.from_settings(get_settings())
    try:
        return _COMMANDS[args.command](service, args)
    except StorageUnavailable:
        print("  [!] Database unavailable. Check DB_URL and try again.")
        return 2
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
