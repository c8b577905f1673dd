#!/usr/bin/env python3
"""
Account service -- administrative command line.

Usage:
  python main.py seed
  python main.py create-user ann@example.com
  python main.py create-user ann@example.com --role Admin --first-name Ann
  python main.py create-user ann@example.com --unconfirmed

Environment variables (or .env):
  DATABASE_URL    SQLAlchemy URL of the identity database.
  SEED_ROLES      JSON list of roles to create, e.g. '["Admin","User"]'.
  ADMIN_EMAIL     Seeded admin account (together with ADMIN_PASSWORD).
  ADMIN_PASSWORD
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import DuplicateIdentityError, IdentityStoreError
from auth.models import Identity, normalize_email
from auth.store import IdentityStore
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 8


def _read_password() -> Optional[str]:
    """Prompt twice for a password without echoing it. Returns None on mismatch."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    if len(first) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    return first


def cmd_seed(store: IdentityStore) -> int:
    settings = get_settings()
    admin = store.seed(settings.seed_roles, settings.admin_email, settings.admin_password)
    print(f"  Roles ensured: {', '.join(settings.seed_roles)}")
    if admin is not None:
        print(f"  Admin account created: {admin.email}")
    elif settings.admin_email:
        print(f"  Admin account already present: {normalize_email(settings.admin_email)}")
    return 0


def cmd_create_user(store: IdentityStore, args: argparse.Namespace) -> int:
    email = normalize_email(args.email)
    if "@" not in email:
        print(f"  [!] '{args.email}' doesn't look like an email address.")
        return 2

    known = {r.strip() for r in get_settings().seed_roles}
    if args.role not in known:
        print(f"  [!] Unknown role '{args.role}'. Known roles: {', '.join(sorted(known))}")
        return 2

    password = _read_password()
    if password is None:
        return 2

    store.seed(get_settings().seed_roles)
    identity = Identity(
        email=email,
        username=email,
        first_name=args.first_name,
        last_name=args.last_name,
        email_confirmed=not args.unconfirmed,
    )
    try:
        identity = store.create(identity, password)
    except DuplicateIdentityError:
        print(f"  [!] An account for {email} already exists.")
        return 1
    try:
        store.add_to_role(identity, args.role)
    except IdentityStoreError as e:
        store.delete(identity)
        print(f"  [!] Role '{args.role}' could not be assigned ({e}); account removed.")
        return 1
    print(f"  Created {email} (id={identity.id}, role={args.role})")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="accounts",
        description="Administrative tasks for the account service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-user ann@example.com --role Admin
  DATABASE_URL=sqlite:///other.db python main.py seed
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("seed", help="Create the configured roles and, if set, the admin account")

    create = sub.add_parser("create-user", help="Create a local account with a password")
    create.add_argument("email", metavar="EMAIL", help="Email address of the new account")
    create.add_argument(
        "--role",
        default=get_settings().default_role,
        metavar="ROLE",
        help="Role to assign (default: DEFAULT_ROLE)",
    )
    create.add_argument("--first-name", default=None, metavar="NAME")
    create.add_argument("--last-name", default=None, metavar="NAME")
    create.add_argument(
        "--unconfirmed",
        action="store_true",
        help="Leave the email unverified; the user must redeem a code before it is confirmed",
    )
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    store = IdentityStore(db_url=get_settings().database_url)
    try:
        if args.command == "seed":
            code = cmd_seed(store)
        else:
            code = cmd_create_user(store, args)
    except IdentityStoreError as e:
        print(f"  [!] Identity store error: {e}")
        code = 1
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
