#!/usr/bin/env python3
"""
keyfob -- operator CLI for the identity database.

Usage:
  python main.py seed-roles
  python main.py create-admin --username alice --password 's3cret-pass'
  python main.py create-admin --username alice --password 's3cret-pass' --email alice@example.com

Both commands read DATABASE_URL and ALLOWED_ROLES from the environment (or
.env), exactly as the API does, so they provision the same database the
server will open.
"""

import argparse
import logging
import sys

from auth.errors import AuthError
from auth.models import ClaimRecord, ClaimType
from auth.provisioning import RoleProvisioningService
from auth.store import IdentityStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, password_too_long
from core.config import get_settings

logger = logging.getLogger("keyfob.cli")

ADMIN_ROLE = "admin"


def _open_store() -> tuple[IdentityStore, RoleProvisioningService]:
    settings = get_settings()
    store = IdentityStore(
        settings.database_url,
        max_failed_attempts=settings.max_failed_attempts,
        lockout_seconds=settings.lockout_seconds,
    )
    return store, RoleProvisioningService(store, settings.allowed_roles)


def seed_roles() -> int:
    """Create every allow-listed role that does not exist yet."""
    store, roles = _open_store()
    try:
        roles.ensure_roles(sorted(roles.allowed_roles))
        print(f"Roles present: {', '.join(store.list_roles())}")
    finally:
        store.close()
    return 0


def create_admin(username: str, password: str, email: str | None = None) -> int:
    """Create a user holding only the admin role. Refuses an existing username."""
    store, roles = _open_store()
    try:
        if store.get_by_username(username) is not None:
            print(f"  [!] User '{username}' already exists.", file=sys.stderr)
            return 1
        if ADMIN_ROLE not in roles.allowed_roles:
            print(f"  [!] '{ADMIN_ROLE}' is not in ALLOWED_ROLES.", file=sys.stderr)
            return 1
        if password_too_long(password):
            print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.", file=sys.stderr)
            return 1

        identity = store.create_user(username, hash_password(password), email=email)
        if email:
            store.add_claim(identity.user_id, ClaimRecord(ClaimType.EMAIL.value, email))
        try:
            roles.set_role(identity.user_id, ADMIN_ROLE)
        except AuthError as exc:
            print(f"  [!] {exc.message}", file=sys.stderr)
            return 1
        print(f"Created admin '{username}' ({identity.user_id}).")
    finally:
        store.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keyfob",
        description="Provision roles and administrator accounts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed-roles
  python main.py create-admin --username alice --password 's3cret-pass'
  DATABASE_URL=sqlite:///prod.db python main.py seed-roles
        """,
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("seed-roles", help="Create every role in ALLOWED_ROLES")

    admin = sub.add_parser("create-admin", help="Create a user with the admin role")
    admin.add_argument("--username", required=True, help="Login name for the new admin")
    admin.add_argument("--password", required=True, help="Initial password")
    admin.add_argument("--email", default=None, help="Optional email; also stored as the email claim")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "seed-roles":
        return seed_roles()
    if args.command == "create-admin":
        return create_admin(args.username, args.password, args.email)

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
