#!/usr/bin/env python3
"""
TenantGuard -- administrative command line.

Usage:
  python main.py create-user --email admin@example.com --role super_admin
  python main.py create-user --email owner@acme.test --role store_owner --company-id 7
  python main.py revoke-devices --email owner@acme.test
  python main.py purge

The password for create-user is read interactively (or from stdin with
--password-stdin) and never accepted as a command-line argument.

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. Must match the running API so
                device-token digests line up.
  DATABASE_URL  Optional. Points every store at one database instead of the
                per-package SQLite files.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.events import DevicesRevoked, UserCreated
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.devices import DeviceTrustStore
from auth.models import COMPANY_SCOPED_ROLES, Role, User
from auth.second_factor import SecondFactorEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from tenants.store import TenantStore

_MIN_PASSWORD_LENGTH = 8


def _open_stores() -> tuple[UserStore, TenantStore, AuditStore]:
    url = get_settings().database_url
    if url:
        return UserStore(db_url=url), TenantStore(db_url=url), AuditStore(db_url=url)
    return UserStore(), TenantStore(), AuditStore()


def _read_password(from_stdin: bool) -> Optional[str]:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def cmd_create_user(args: argparse.Namespace) -> int:
    role = Role(args.role)
    if role is Role.SUPER_ADMIN and (args.company_id is not None or args.store_id is not None):
        print("  [!] super_admin accounts are not attached to a company.")
        return 2
    if role is not Role.SUPER_ADMIN and args.company_id is None:
        print(f"  [!] --company-id is required for role {role.value}.")
        return 2
    if args.store_id is not None and role not in COMPANY_SCOPED_ROLES:
        print("  [!] Only store owners and managers can be attached to a store.")
        return 2

    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    if not _MIN_PASSWORD_LENGTH <= len(password.encode("utf-8")) <= 72:
        print(f"  [!] Password must be between {_MIN_PASSWORD_LENGTH} and 72 bytes.")
        return 2

    user_store, tenant_store, audit_store = _open_stores()
    try:
        if args.company_id is not None and tenant_store.get_company(args.company_id) is None:
            print(f"  [!] Company {args.company_id} does not exist.")
            return 1
        if args.store_id is not None:
            store = tenant_store.get_store(args.store_id)
            if store is None or store.company_id != args.company_id:
                print(f"  [!] Store {args.store_id} does not belong to company {args.company_id}.")
                return 1
        try:
            user_id = user_store.create_user(
                User(
                    email=args.email,
                    role=role,
                    password_hash=hash_password(password),
                    company_id=args.company_id,
                    store_id=args.store_id,
                    first_name=args.first_name,
                    last_name=args.last_name,
                )
            )
        except IntegrityError:
            print(f"  [!] A user with email {args.email} already exists.")
            return 1
        AuditLogger(audit_store).record(
            None,
            UserCreated(
                user_id=user_id,
                email=args.email.strip().lower(),
                role=role.value,
                values={
                    "email": args.email.strip().lower(),
                    "role": role.value,
                    "company_id": args.company_id,
                    "store_id": args.store_id,
                },
            ),
            metadata={"source": "cli"},
        )
        print(f"  Created {role.value} {args.email} (id={user_id}).")
        return 0
    finally:
        user_store.close()
        tenant_store.close()
        audit_store.close()


def cmd_revoke_devices(args: argparse.Namespace) -> int:
    user_store, tenant_store, audit_store = _open_stores()
    try:
        user = user_store.get_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email {args.email}.")
            return 1
        count = DeviceTrustStore(user_store).revoke_all(user.id)
        AuditLogger(audit_store).record(
            None,
            DevicesRevoked(user_id=user.id, email=user.email, count=count),
            metadata={"source": "cli", "company_id": user.company_id, "store_id": user.store_id},
        )
        print(f"  Revoked {count} trusted device(s) for {user.email}.")
        return 0
    finally:
        user_store.close()
        tenant_store.close()
        audit_store.close()


def cmd_purge(args: argparse.Namespace) -> int:
    user_store, tenant_store, audit_store = _open_stores()
    try:
        challenges = SecondFactorEngine(user_store).purge_expired()
        devices = DeviceTrustStore(user_store).purge_expired()
        sessions = SessionIssuer(user_store).purge_expired()
        print(f"  Purged {challenges} challenge(s), {devices} device token(s), {sessions} session(s).")
        return 0
    finally:
        user_store.close()
        tenant_store.close()
        audit_store.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tenantguard",
        description="Administrative tasks for the TenantGuard auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email admin@example.com --role super_admin
  echo 'correct horse battery' | python main.py create-user --email m@acme.test --role manager --company-id 7 --password-stdin
  python main.py revoke-devices --email m@acme.test
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account (bootstrap the first super admin)")
    create.add_argument("--email", required=True, help="Login email")
    create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.SUPER_ADMIN.value,
        help="Account role (default: super_admin)",
    )
    create.add_argument("--company-id", type=int, default=None, metavar="ID", help="Company the account belongs to")
    create.add_argument("--store-id", type=int, default=None, metavar="ID", help="Store (managers and store owners only)")
    create.add_argument("--first-name", default=None)
    create.add_argument("--last-name", default=None)
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    create.set_defaults(func=cmd_create_user)

    revoke = sub.add_parser("revoke-devices", help="Revoke every trusted device of a user")
    revoke.add_argument("--email", required=True, help="Email of the user")
    revoke.set_defaults(func=cmd_revoke_devices)

    purge = sub.add_parser("purge", help="Delete expired challenges, device tokens and sessions")
    purge.set_defaults(func=cmd_purge)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
