"""
Command line interface.

    python -m vaultgate serve
    python -m vaultgate create-user alice --role moderator
"""

import argparse
import getpass
import sys

from loguru import logger

from .auth.database import UserDatabase
from .auth.permissions import Role
from .config import Settings
from .errors import ConfigurationError, VaultGateError
from .log import configure_logging


def _create_user(args) -> int:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("Error: Password required")
        return 1

    users = UserDatabase(settings.db_path)
    try:
        users.create_user(args.username, password, args.role)
    except VaultGateError as e:
        print(f"Error: {e.message}")
        return 1

    print(f"User {args.username} ({args.role}) created")
    return 0


def _serve(args) -> int:
    from .app import serve

    settings = Settings.from_env()
    if args.port:
        settings.http_port = args.port
    if args.ws_port:
        settings.ws_port = args.ws_port
    serve(settings)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="vaultgate content gate server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP and real-time servers")
    serve_parser.add_argument("--port", type=int, help="HTTP port (overrides VAULTGATE_PORT)")
    serve_parser.add_argument("--ws-port", type=int, help="WebSocket port (overrides VAULTGATE_WS_PORT)")
    serve_parser.set_defaults(func=_serve)

    user_parser = subparsers.add_parser("create-user", help="Add a user to the user table")
    user_parser.add_argument("username")
    user_parser.add_argument(
        "--role",
        default=Role.MEMBER.value,
        choices=[role.value for role in Role],
    )
    user_parser.add_argument("--password", help="Password (prompted if omitted)")
    user_parser.set_defaults(func=_create_user)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
