#!/usr/bin/env python3
"""
gatekeeper -- operator provisioning and maintenance CLI.

Accounts are provisioned out of band: there is no HTTP endpoint that creates
operators. This CLI talks to the same database as the API server, using the
same configuration (environment variables / .env, see core/config.py).

Usage:
  python main.py create-operator --email ops@example.com --name "Ops Team"
  python main.py create-operator --email ops@example.com --name Ops --password 'S3cure!pass'
  python main.py set-active --email ops@example.com --inactive
  python main.py sweep-tokens

Environment variables:
  DATABASE_URL                          Store handle (default sqlite:///gatekeeper.db)
  ACCESS_SECRET_KEY / REFRESH_SECRET_KEY  Required unless DEBUG=true
"""

import argparse
import getpass
import sys
from typing import Optional

from api.main import Services, build_services
from core.config import Settings, get_settings
from core.database import Database
from core.errors import GatekeeperError
from core.logging import configure_logging


def _read_password(args: argparse.Namespace) -> Optional[str]:
    """Password from --password, else prompted twice without echo."""
    if args.password:
        return args.password
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _create_operator(services: Services, args: argparse.Namespace) -> int:
    password = _read_password(args)
    if password is None:
        return 1
    operator = services.sessions.provision_operator(args.email, password, args.name, args.role)
    print(f"  Created operator {operator.email} (id={operator.id}, role={operator.role}).")
    return 0


def _set_active(services: Services, args: argparse.Namespace) -> int:
    operator = services.credentials.get_by_email(args.email)
    if operator is None:
        print(f"  [!] No operator with email '{args.email}'.")
        return 1
    revoked = services.sessions.set_operator_active(operator.id, args.active)
    state = "enabled" if args.active else "disabled"
    print(f"  Operator {operator.email} {state}; {revoked} session(s) revoked.")
    return 0


def _sweep_tokens(services: Services, args: argparse.Namespace) -> int:
    removed = services.ledger.sweep_expired()
    print(f"  Removed {removed} expired refresh token record(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Operator provisioning and maintenance for the gatekeeper API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-operator --email ops@example.com --name "Ops Team"
  python main.py set-active --email ops@example.com --inactive
  DATABASE_URL=sqlite:///prod.db python main.py sweep-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-operator", help="Provision a new operator account")
    create.add_argument("--email", required=True, help="Login email (stored lower-cased)")
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument("--role", default=None, help="Role (default: the configured operator role)")
    create.add_argument(
        "--password",
        default=None,
        help="Initial password. Prompted for when omitted; avoid passing it on shared hosts.",
    )
    create.set_defaults(handler=_create_operator)

    active = sub.add_parser("set-active", help="Enable or disable an operator account")
    active.add_argument("--email", required=True, help="Operator email")
    toggle = active.add_mutually_exclusive_group(required=True)
    toggle.add_argument("--active", dest="active", action="store_true", help="Enable the account")
    toggle.add_argument(
        "--inactive",
        dest="active",
        action="store_false",
        help="Disable the account and revoke every session",
    )
    active.set_defaults(handler=_set_active)

    sweep = sub.add_parser("sweep-tokens", help="Delete expired refresh token records now")
    sweep.set_defaults(handler=_sweep_tokens)

    return parser


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    database = Database(settings.database_url, timeout=settings.database_timeout_seconds).open()
    try:
        return args.handler(build_services(settings, database), args)
    except GatekeeperError as exc:
        print(f"  [!] {exc.public_message}")
        for line in exc.detail:
            print(f"      - {line}")
        return 1
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())
