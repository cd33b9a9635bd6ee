"""
Authentication module for vaultgate.

Provides JWT-backed credentials with server-side revocation and the role
hierarchy used by every access decision.
"""

from .models import User, Credential, PrincipalContext
from .database import UserDatabase
from .jwt_handler import JWTHandler, TokenPayload
from .credentials import CredentialStore
from .permissions import (
    Permission,
    Role,
    ROLE_PERMISSIONS,
    can_act_while_kill_switch_on,
    can_ban,
    can_command,
    can_create_user,
    can_issue_key,
    can_revoke_sessions,
    can_target,
    can_toggle_kill_switch,
    can_upload,
    has_permission,
    is_suspended,
    key_issue_denial,
    require_permission,
)

__all__ = [
    # User models and database
    "User",
    "Credential",
    "PrincipalContext",
    "UserDatabase",
    # Tokens and credentials
    "JWTHandler",
    "TokenPayload",
    "CredentialStore",
    # Access policy
    "Permission",
    "Role",
    "ROLE_PERMISSIONS",
    "can_act_while_kill_switch_on",
    "can_ban",
    "can_command",
    "can_create_user",
    "can_issue_key",
    "can_revoke_sessions",
    "can_target",
    "can_toggle_kill_switch",
    "can_upload",
    "has_permission",
    "is_suspended",
    "key_issue_denial",
    "require_permission",
]
