"""
Authentication data models.

Data classes for users, credentials and validated principals.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .permissions import Role


@dataclass
class User:
    """
    User account.

    Attributes:
        username: Unique username
        password_hash: Bcrypt hashed password
        role: Position in the role hierarchy
        created_at: Account creation timestamp
        banned: Permanent ban flag
        suspended_until: End of a temporary suspension (None if not suspended)
    """
    username: str
    password_hash: str
    role: Role
    created_at: datetime
    banned: bool = False
    suspended_until: Optional[datetime] = None


@dataclass(frozen=True)
class Credential:
    """
    Issued credential.

    The role is snapshotted at issuance and does not follow later changes to
    the user record; a role change takes effect on the next login.

    Attributes:
        credential_id: JWT ID (jti claim), also the session identity
        token: Signed bearer token handed to the client
        username: User the credential is bound to
        role: Role at issuance
        issued_at: Issuance timestamp
        expires_at: Hard expiry
    """
    credential_id: str
    token: str
    username: str
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class PrincipalContext:
    """
    Result of a successful credential validation.

    Attributes:
        credential_id: Identity of the presented credential
        username: Authenticated username
        role: Snapshotted role
        issued_at: Credential issuance time
        expires_at: Credential expiry
    """
    credential_id: str
    username: str
    role: Role
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_credential(cls, credential: Credential) -> "PrincipalContext":
        return cls(
            credential_id=credential.credential_id,
            username=credential.username,
            role=credential.role,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
        )
