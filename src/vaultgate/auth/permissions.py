"""
Access policy for vaultgate.

This module provides:
- The closed role hierarchy (member < pro < moderator < owner)
- Role-based permission table
- Pure decision functions used by every mutating operation

Nothing here has side effects; callers pass in the state they already hold.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Set

from ..errors import Forbidden

if TYPE_CHECKING:
    from .models import User


class Role(str, Enum):
    """
    Predefined roles, lowest to highest.
    """
    MEMBER = "member"
    PRO = "pro"
    MODERATOR = "moderator"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank

    @classmethod
    def parse(cls, value) -> "Role":
        """Coerce a string to a Role, raising ValueError for unknown names."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


ROLE_RANK: Dict[Role, int] = {
    Role.MEMBER: 0,
    Role.PRO: 1,
    Role.MODERATOR: 2,
    Role.OWNER: 3,
}


class Permission(str, Enum):
    """
    Enum of all privileged actions.
    """
    FETCH_KEY = "fetch_key"                 # Request the content decryption key
    DOWNLOAD_CONTENT = "download_content"   # Download ciphertext
    VIEW_ONLINE = "view_online"             # List online principals

    ISSUE_COMMANDS = "issue_commands"       # Kick / timeout / custom commands

    UPLOAD_CONTENT = "upload_content"
    CREATE_USERS = "create_users"
    BAN_USERS = "ban_users"
    TOGGLE_KILL_SWITCH = "toggle_kill_switch"
    REVOKE_SESSIONS = "revoke_sessions"


_BASE_PERMISSIONS = {
    Permission.FETCH_KEY,
    Permission.DOWNLOAD_CONTENT,
    Permission.VIEW_ONLINE,
}

ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.MEMBER: set(_BASE_PERMISSIONS),
    Role.PRO: set(_BASE_PERMISSIONS),
    Role.MODERATOR: _BASE_PERMISSIONS | {Permission.ISSUE_COMMANDS},
    Role.OWNER: set(Permission),
}


def has_permission(role: Role, permission: Permission) -> bool:
    """
    Check if a role has a specific permission.

    Args:
        role: Role (or role name)
        permission: The permission to check

    Returns:
        bool: True if the role has the permission
    """
    try:
        role = Role.parse(role)
    except ValueError:
        # Unknown role, no permissions
        return False
    return permission in ROLE_PERMISSIONS.get(role, set())


def can_upload(role: Role) -> bool:
    return has_permission(role, Permission.UPLOAD_CONTENT)


def can_create_user(role: Role) -> bool:
    return has_permission(role, Permission.CREATE_USERS)


def can_command(role: Role) -> bool:
    """Moderators and owners may send commands to other principals."""
    return has_permission(role, Permission.ISSUE_COMMANDS)


def can_ban(role: Role) -> bool:
    return has_permission(role, Permission.BAN_USERS)


def can_toggle_kill_switch(role: Role) -> bool:
    return has_permission(role, Permission.TOGGLE_KILL_SWITCH)


def can_revoke_sessions(role: Role) -> bool:
    return has_permission(role, Permission.REVOKE_SESSIONS)


def can_act_while_kill_switch_on(role: Role) -> bool:
    """Only owners keep privileged access while the kill switch is on."""
    return Role.parse(role) is Role.OWNER


def can_target(actor_role: Role, target_role: Role) -> bool:
    """
    Decide whether `actor_role` may act on a principal holding `target_role`.

    Owners may target anyone. Moderators may target only roles strictly
    below moderator. Everyone else may target no one.

    Args:
        actor_role: Role of the principal sending the command
        target_role: Role of the principal being acted on

    Returns:
        bool: True if the hierarchy allows it
    """
    actor = Role.parse(actor_role)
    target = Role.parse(target_role)

    if actor is Role.OWNER:
        return True
    if not can_command(actor):
        return False
    return actor.outranks(target) and target.rank < Role.MODERATOR.rank


def is_suspended(user: "User", now: Optional[datetime] = None) -> bool:
    """True if the user has a suspension window that has not elapsed yet."""
    if user.suspended_until is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now < user.suspended_until


def key_issue_denial(
    user: "User",
    kill_switch_on: bool,
    role: Optional[Role] = None,
    now: Optional[datetime] = None,
) -> Optional[Forbidden]:
    """
    Explain why a key must not be issued, or return None if it may be.

    Args:
        user: Current user record (ban state is read live)
        kill_switch_on: Current kill switch state
        role: Role to authorize with (default: the user's role); callers pass
            the credential's snapshotted role
        now: Reference time for suspension checks

    Returns:
        Forbidden error describing the denial, or None
    """
    role = Role.parse(role if role is not None else user.role)

    if kill_switch_on and not can_act_while_kill_switch_on(role):
        return Forbidden("KillSwitchActive", "Kill switch active")
    if user.banned:
        return Forbidden("Banned", f"User '{user.username}' is banned")
    if is_suspended(user, now):
        return Forbidden(
            "Suspended",
            f"User '{user.username}' is suspended until {user.suspended_until.isoformat()}",
        )
    if not has_permission(role, Permission.FETCH_KEY):
        return Forbidden("Forbidden", f"Role '{role.value}' may not fetch keys")
    return None


def can_issue_key(
    user: "User",
    kill_switch_on: bool,
    role: Optional[Role] = None,
    now: Optional[datetime] = None,
) -> bool:
    return key_issue_denial(user, kill_switch_on, role=role, now=now) is None


def require_permission(
    username: str,
    role: Role,
    permission: Permission,
    kill_switch_on: bool = False,
) -> None:
    """
    Require a permission, raising Forbidden if not authorized.

    Args:
        username: The acting user (for the error message)
        role: The acting role
        permission: The required permission
        kill_switch_on: If True, only owners pass

    Raises:
        Forbidden: If the role lacks the permission or the kill switch blocks it
    """
    if not has_permission(role, permission):
        raise Forbidden(
            "Forbidden",
            f"User {username} denied permission for action: {permission.value}",
        )
    if kill_switch_on and not can_act_while_kill_switch_on(role):
        raise Forbidden("KillSwitchActive", "Kill switch active")
