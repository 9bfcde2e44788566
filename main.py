#!/usr/bin/env python3
"""
SessionGate -- operator command line.

Usage:
  python main.py sweep
  python main.py sweep --retention-days 7
  python main.py create-user admin@example.com --role admin
  python main.py mask sk_live_1234567890

Configuration comes from the same environment variables / .env file as the
API (see core/config.py). DATABASE_URL selects the database to operate on.
"""

import argparse
import getpass
import logging
import sys
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.encryption import mask_secret
from auth.janitor import SessionJanitor
from auth.models import User
from auth.pairing import PairingStore
from auth.sessions import SessionStore
from auth.store import UserStore, create_db_engine
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 8


def _sweep(args: argparse.Namespace) -> int:
    settings = get_settings()
    retention_days = args.retention_days if args.retention_days is not None else settings.session_retention_days
    engine = create_db_engine(settings.database_url)
    try:
        result = SessionJanitor(SessionStore(engine), retention=timedelta(days=retention_days)).sweep()
        pairings = PairingStore(engine).purge_expired()
    finally:
        engine.dispose()
    print(f"  Expired or invalidated sessions removed: {result.expired_removed}")
    print(f"  Sessions older than {retention_days} days removed: {result.stale_removed}")
    print(f"  Expired pairing requests removed: {pairings}")
    print(f"  Total sessions removed: {result.total}")
    return 0


def _read_password() -> str | None:
    password = getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    if password != getpass.getpass("  Confirm password: "):
        print("  [!] Passwords do not match.")
        return None
    return password


def _create_user(args: argparse.Namespace) -> int:
    password = _read_password()
    if password is None:
        return 1
    engine = create_db_engine(get_settings().database_url)
    try:
        user_id = UserStore(engine).create_user(
            User(
                email=args.email,
                role=args.role,
                full_name=args.full_name,
                hashed_password=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    finally:
        engine.dispose()
    print(f"  Created {args.role} user {args.email.lower()} (id {user_id}).")
    return 0


def _mask(args: argparse.Namespace) -> int:
    print(mask_secret(args.secret))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Operator tasks for the SessionGate auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py sweep --retention-days 7
  python main.py create-user admin@example.com --role admin --full-name "Site Admin"
  python main.py mask sk_live_1234567890
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at INFO level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sweep = sub.add_parser("sweep", help="Delete expired, invalidated and stale sessions once")
    sweep.add_argument(
        "--retention-days",
        type=int,
        default=None,
        metavar="DAYS",
        help="Delete sessions created more than DAYS ago (default: SESSION_RETENTION_DAYS)",
    )
    sweep.set_defaults(func=_sweep)

    create = sub.add_parser("create-user", help="Create a user account (password is prompted)")
    create.add_argument("email", help="Login email address")
    create.add_argument("--role", choices=["user", "admin"], default="user", help="Account role (default: user)")
    create.add_argument("--full-name", default=None, help="Display name")
    create.set_defaults(func=_create_user)

    mask = sub.add_parser("mask", help="Print the display-safe form of a secret")
    mask.add_argument("secret", help="Secret to mask")
    mask.set_defaults(func=_mask)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
