"""
Service container.

Builds every registry once and wires them together. The vault, key issuer
and kill switch share a single lock.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from loguru import logger

from .auth.credentials import CredentialStore
from .auth.database import UserDatabase
from .auth.jwt_handler import JWTHandler
from .auth.permissions import Role
from .clock import Clock, utcnow
from .config import Settings
from .presence import PresenceRegistry
from .realtime.router import CommandRouter
from .vault.content import ContentVault
from .vault.keys import KeyIssuer
from .vault.killswitch import KillSwitch


@dataclass
class Services:
    settings: Settings
    users: UserDatabase
    presence: PresenceRegistry
    credentials: CredentialStore
    vault: ContentVault
    kill_switch: KillSwitch
    key_issuer: KeyIssuer
    router: CommandRouter


def build_services(
    settings: Settings,
    users: Optional[UserDatabase] = None,
    clock: Clock = utcnow,
) -> Services:
    """
    Construct and wire all registries.

    Args:
        settings: Loaded settings
        users: Existing user table (default: open settings.db_path)
        clock: Time source shared by every store

    Returns:
        Services
    """
    users = users or UserDatabase(settings.db_path)
    presence = PresenceRegistry(clock=clock)
    credentials = CredentialStore(
        users,
        JWTHandler(settings.secret),
        presence=presence,
        token_ttl=timedelta(seconds=settings.token_ttl),
        clock=clock,
    )

    vault = ContentVault(clock=clock)
    kill_switch = KillSwitch(lock=vault.lock)
    key_issuer = KeyIssuer(vault, users, kill_switch, clock=clock)

    router = CommandRouter(
        credentials, presence, users, key_issuer, kill_switch, clock=clock
    )

    return Services(
        settings=settings,
        users=users,
        presence=presence,
        credentials=credentials,
        vault=vault,
        kill_switch=kill_switch,
        key_issuer=key_issuer,
        router=router,
    )


def bootstrap_owner(services: Services) -> bool:
    """
    Create the configured owner account if it does not exist yet.

    Returns:
        True if an account was created
    """
    settings = services.settings
    if not settings.owner_username:
        if services.users.count_users() == 0:
            logger.warning("No users exist and no VAULTGATE_OWNER_USERNAME is configured")
        return False

    if services.users.get_user(settings.owner_username) is not None:
        return False

    services.users.create_user(settings.owner_username, settings.owner_password, Role.OWNER.value)
    logger.info(f"Bootstrap owner created: {settings.owner_username}")
    return True
