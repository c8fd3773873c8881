"""Command-line interface for the EventKampus service."""

from __future__ import annotations

import argparse
import logging
import sys
from getpass import getpass
from typing import Sequence

from eventkampus.auth import AuthService
from eventkampus.config import Settings, load_settings
from eventkampus.database import Database
from eventkampus.errors import EventKampusError, ValidationError
from eventkampus.models import Role
from eventkampus.security import TokenService

logger = logging.getLogger("eventkampus.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="EventKampus ticketing service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the application database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )

    user_parser = subparsers.add_parser("create-user", help="Create an account from the shell")
    user_parser.add_argument("email", help="Unique email address for login")
    user_parser.add_argument("display_name", help="Display name (organization or attendee name)")
    user_parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.ATTENDEE.value,
        help="Account role (default: ATTENDEE)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-user"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.db_path, timeout=settings.db_timeout)
    database.initialize()
    logger.info("Database initialised at %s", settings.db_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from eventkampus.service import create_app
    import uvicorn

    if not settings.jwt_secret or not settings.jwt_refresh_secret:
        raise SystemExit(
            "EVENTKAMPUS_JWT_SECRET and EVENTKAMPUS_JWT_REFRESH_SECRET must be set before serving."
        )
    if not settings.midtrans_server_key:
        logger.warning("No Midtrans server key configured; paid registrations will fail.")

    logger.info("Starting EventKampus API on http://%s:%s", host, port)
    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass("Password: ")
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(database: Database, *, email: str, display_name: str, role: str) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Failed to set password after three attempts.", file=sys.stderr)
        return 1

    # Token secrets are irrelevant for account creation.
    service = AuthService(database, TokenService("unused-secret", "unused-refresh-secret"))
    try:
        user = service.register(email, password, display_name, role)
    except ValidationError as exc:
        for message in exc.errors or [exc.message]:
            print(f"Error: {message}", file=sys.stderr)
        return 1
    except EventKampusError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print(f"Created {user.role.value} user #{user.id}: {user.display_name} <{user.email}>")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    settings = load_settings()
    database = _initialise_database(settings)

    if args.command == "init-db":
        return 0
    if args.command == "create-user":
        return _create_user(
            database,
            email=args.email,
            display_name=args.display_name,
            role=args.role,
        )

    _serve(settings=settings, database=database, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
