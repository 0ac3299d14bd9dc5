#!/usr/bin/env python3
"""
Gatekeeper -- operator CLI for the authentication store.

Usage:
  python main.py sweep
  python main.py sweep --retention-days 7
  python main.py create-user alice --email alice@example.com --role admin --role user
  python main.py create-user bob --email bob@example.com --passwordless

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: sqlite file under auth/).
  SECRET_KEY     Required unless DEBUG=true.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import SweepFailedError
from auth.models import User
from auth.notify import build_notifier
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import hash_password
from core.config import Settings, get_settings

logger = logging.getLogger("gatekeeper.cli")


def _sweep(settings: Settings, retention_days: Optional[int]) -> int:
    """Run one expiry sweep. Exit status 1 if any collection failed."""
    store = AuthStore(settings.database_url)
    try:
        service = AuthService(store, build_notifier(settings), settings)
        result = asyncio.run(service.sweep(retention_days))
    finally:
        store.close()

    for name, count in sorted(result.deleted.items()):
        print(f"  {name}: {count} deleted")
    try:
        result.raise_for_failures()
    except SweepFailedError as exc:
        for name, error in sorted(exc.failures.items()):
            print(f"  [!] {name}: {error}")
        logger.error("%s", exc)
        return 1
    return 0


def _create_user(settings: Settings, args: argparse.Namespace) -> int:
    hashed: Optional[str] = None
    if not args.passwordless:
        password = getpass.getpass("Password: ")
        if not password or password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords are empty or do not match.")
            return 1
        hashed = hash_password(password)

    store = AuthStore(settings.database_url)
    try:
        user_id = store.create_user(
            User(
                username=args.username,
                email=args.email,
                hashed_password=hashed,
                roles=args.role or ["user"],
            )
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' already exists.")
        return 1
    finally:
        store.close()

    print(f"  Created user '{args.username}' (id {user_id}).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Maintenance commands for the Gatekeeper authentication store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py sweep --retention-days 7
  python main.py create-user alice --email alice@example.com --role admin
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    sweep = commands.add_parser("sweep", help="Delete expired refresh tokens, codes and reset requests")
    sweep.add_argument(
        "--retention-days",
        type=int,
        default=None,
        metavar="N",
        help="Keep records for N days past their expiry (default: RETENTION_DAYS setting)",
    )

    create = commands.add_parser("create-user", help="Create an identity (bootstrap helper)")
    create.add_argument("username", help="Unique login name")
    create.add_argument("--email", required=True, help="Address for emailed login codes")
    create.add_argument(
        "--role",
        action="append",
        metavar="ROLE",
        help="Role label; repeat for several (default: user)",
    )
    create.add_argument(
        "--passwordless",
        action="store_true",
        help="Create without a password; the user can only sign in with emailed codes",
    )
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    settings = get_settings()

    if args.command == "sweep":
        if args.retention_days is not None and args.retention_days < 0:
            parser.error("--retention-days must not be negative")
        return _sweep(settings, args.retention_days)
    return _create_user(settings, args)


if __name__ == "__main__":
    sys.exit(main())
