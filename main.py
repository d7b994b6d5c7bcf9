#!/usr/bin/env python3
"""
TimeTrack auth -- administrative command line.

Usage:
  python main.py create-user alice --email alice@example.com
  python main.py create-user bob --account-type business
  python main.py reset-mfa alice
  python main.py revoke-devices alice
  python main.py audit alice --limit 50
  python main.py alerts --limit 20

create-user prompts for the password (or reads one line from stdin with
--password-stdin). reset-mfa is the support path for a user who lost both
their authenticator and their recovery codes: it turns MFA off, deletes the
recovery codes and revokes every trusted device.
alerts lists the security.brute_force_detected events written when one address
fails too many logins, newest first.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database.
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Account
from auth.monitor import BRUTE_FORCE_ACTION
from auth.store import AccountStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, password_too_long
from core.config import get_settings


def _read_password(from_stdin: bool) -> str | None:
    """Return the new password, or None after printing why it was refused."""
    if from_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            return None
    if not password:
        print("  [!] A password is required.")
        return None
    if password_too_long(password):
        print(f"  [!] Password is longer than {MAX_PASSWORD_BYTES} bytes.")
        return None
    return password


def _lookup(store: AccountStore, identifier: str) -> Account | None:
    account = store.get_by_identifier(identifier)
    if account is None:
        print(f"  [!] No account matches '{identifier}'.")
    return account


def create_user(store: AccountStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    account = Account(
        username=args.username,
        email=args.email,
        account_type=args.account_type,
        hashed_password=hash_password(password),
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError:
        print(f"  [!] Username or email already in use: '{args.username}'.")
        return 1
    print(f"Created account {account_id} ({args.username}).")
    return 0


def reset_mfa(store: AccountStore, args: argparse.Namespace) -> int:
    account = _lookup(store, args.identifier)
    if account is None:
        return 1
    store.disable_mfa(account.id)
    revoked = store.delete_trusted_devices(account.id)
    print(f"MFA reset for {account.username}; {revoked} trusted device(s) revoked.")
    return 0


def revoke_devices(store: AccountStore, args: argparse.Namespace) -> int:
    account = _lookup(store, args.identifier)
    if account is None:
        return 1
    revoked = store.delete_trusted_devices(account.id)
    print(f"{revoked} trusted device(s) revoked for {account.username}.")
    return 0


def show_audit(store: AccountStore, args: argparse.Namespace) -> int:
    account = _lookup(store, args.identifier)
    if account is None:
        return 1
    actions = store.recent_audit_actions(account.id, limit=args.limit)
    if not actions:
        print(f"No audit events for {account.username}.")
        return 0
    for action in actions:
        print(f"  {action}")
    return 0


def show_alerts(store: AccountStore, args: argparse.Namespace) -> int:
    alerts = store.recent_audit_events(BRUTE_FORCE_ACTION, limit=args.limit)
    if not alerts:
        print("No brute-force alerts.")
        return 0
    for alert in alerts:
        targets = ", ".join(alert.details.get("targeted_users", [])) or "-"
        print(
            f"  {alert.timestamp:%Y-%m-%d %H:%M:%S} ip={alert.ip_address} "
            f"attempts={alert.details.get('attempts', '?')} users={targets}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="timetrack-auth",
        description="Administer TimeTrack accounts and multi-factor authentication.",
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    create = commands.add_parser("create-user", help="Create a password account")
    create.add_argument("username")
    create.add_argument("--email", default=None, help="Optional email; also accepted as a login identifier")
    create.add_argument(
        "--account-type",
        choices=["personal", "business"],
        default="personal",
        help="Account type (default: personal)",
    )
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    create.set_defaults(handler=create_user)

    reset = commands.add_parser("reset-mfa", help="Disable MFA and revoke trusted devices for an account")
    reset.add_argument("identifier", metavar="USERNAME_OR_EMAIL")
    reset.set_defaults(handler=reset_mfa)

    revoke = commands.add_parser("revoke-devices", help="Revoke every trusted device of an account")
    revoke.add_argument("identifier", metavar="USERNAME_OR_EMAIL")
    revoke.set_defaults(handler=revoke_devices)

    audit = commands.add_parser("audit", help="Show the most recent audit actions of an account")
    audit.add_argument("identifier", metavar="USERNAME_OR_EMAIL")
    audit.add_argument("--limit", type=int, default=20, help="Number of events to show (default: 20)")
    audit.set_defaults(handler=show_audit)

    alerts = commands.add_parser("alerts", help="Show recent brute-force alerts across all accounts")
    alerts.add_argument("--limit", type=int, default=20, help="Number of alerts to show (default: 20)")
    alerts.set_defaults(handler=show_alerts)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = AccountStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
