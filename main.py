#!/usr/bin/env python3
"""
Turnstile -- operator commands for the authentication backend.

Usage:
  python main.py create-user --name "Ada Lovelace" --email ada@x.com --role Admin
  python main.py purge-sessions

Configuration comes from the same environment variables / .env file as the
API (DATABASE_URL, ACCESS_SECRET_KEY, REFRESH_SECRET_KEY, BCRYPT_ROUNDS...).
The password for create-user is always read with getpass, never from argv,
so it does not end up in shell history.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthError
from auth.models import Role
from auth.service import build_auth_service
from auth.store import Database
from core.config import get_settings

logger = logging.getLogger("turnstile.cli")


def _read_password() -> str:
    """Prompt twice and return the password. Exits on mismatch."""
    password = getpass.getpass("Password: ")
    confirm = getpass.getpass("Confirm password: ")
    if password != confirm:
        print("  [!] Passwords do not match.", file=sys.stderr)
        sys.exit(2)
    return password


def create_user(db: Database, args: argparse.Namespace) -> int:
    """Register one account. Used to bootstrap the first Admin."""
    settings = get_settings()
    service = build_auth_service(settings)
    password = _read_password()
    try:
        user = service.prepare_user(args.name, args.email, password, args.role)
        with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
            profile = service.create_user(conn, user)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        for err in exc.detail.get("errors", []):
            print(f"      {err['field']}: {err['message']}", file=sys.stderr)
        return 1
    print(f"  Created {profile.role.value} user {profile.email} ({profile.id})")
    return 0


def purge_sessions(db: Database, args: argparse.Namespace) -> int:
    """Delete expired sessions once and report how many were removed."""
    settings = get_settings()
    service = build_auth_service(settings)
    try:
        with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
            removed = service.sweep_expired_sessions(conn)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    print(f"  Removed {removed} expired session(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="turnstile",
        description="Operator commands for the Turnstile authentication backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --name "Ada Lovelace" --email ada@x.com --role Admin
  python main.py purge-sessions
  DATABASE_URL=sqlite:///prod.db python main.py purge-sessions
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a user (password is prompted)")
    create.add_argument("--name", required=True, help="Display name, 2-50 characters")
    create.add_argument("--email", required=True, help="Login email (stored lower-cased)")
    create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.ADMIN.value,
        metavar="ROLE",
        help="One of: " + ", ".join(r.value for r in Role) + " (default: Admin)",
    )
    create.set_defaults(handler=create_user)

    purge = sub.add_parser("purge-sessions", help="Delete expired refresh-token sessions")
    purge.set_defaults(handler=purge_sessions)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    db = Database(get_settings().database_url)
    try:
        return args.handler(db, args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
