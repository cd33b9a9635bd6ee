"""
Credential store.

Combines the user table and JWT handling for the complete login flow, and
keeps the server-side record of every live credential so tokens can be
revoked before they expire.
"""

import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

from loguru import logger

from ..clock import Clock, utcnow
from ..errors import AuthFailure, Forbidden
from .database import UserDatabase
from .jwt_handler import JWTHandler
from .models import Credential, PrincipalContext, User
from .permissions import is_suspended

if TYPE_CHECKING:
    from ..presence import PresenceRegistry


DEFAULT_TOKEN_TTL = timedelta(minutes=30)


class CredentialStore:
    """
    Issues, validates, revokes and expires credentials.

    Ban and suspension checks run under the same lock as minting, and
    revocation of a user's credentials takes that lock too, so a ban can never
    interleave with a login in a way that leaves a usable credential behind.
    """

    def __init__(
        self,
        users: UserDatabase,
        jwt_handler: JWTHandler,
        presence: Optional["PresenceRegistry"] = None,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Clock = utcnow,
    ):
        """
        Initialize store.

        Args:
            users: User table used for lookup and lazy suspension expiry
            jwt_handler: Token signer
            presence: Registry to mark a principal online on login
            token_ttl: Lifetime of issued credentials
            clock: Time source
        """
        self.users = users
        self.jwt = jwt_handler
        self.presence = presence
        self.token_ttl = token_ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._credentials: Dict[str, Credential] = {}
        # credential_id -> original expiry; reported as "Revoked" until then
        self._revoked: Dict[str, datetime] = {}

    def issue(self, username: str, password: str, version: Optional[str] = None) -> Credential:
        """
        Authenticate a user and mint a credential.

        Args:
            username: Username
            password: Plain text password
            version: Client version recorded in presence

        Returns:
            Credential

        Raises:
            AuthFailure: InvalidCredentials
            Forbidden: Banned or Suspended
        """
        with self._lock:
            user = self.users.get_user(username)
            if not user:
                logger.warning(f"Login failed: user '{username}' not found")
                raise AuthFailure("InvalidCredentials", "Invalid credentials")

            if not self.users.verify_password(user, password):
                logger.warning(f"Login failed: invalid password for '{username}'")
                raise AuthFailure("InvalidCredentials", "Invalid credentials")

            self._check_standing(user)

            now = self._clock()
            token, payload = self.jwt.create_access_token(
                username=user.username,
                role=user.role,
                issued_at=now,
                lifetime=self.token_ttl,
            )
            credential = Credential(
                credential_id=payload.jti,
                token=token,
                username=user.username,
                role=user.role,
                issued_at=now,
                expires_at=now + self.token_ttl,
            )
            self._credentials[credential.credential_id] = credential

        if self.presence is not None:
            self.presence.record_heartbeat(
                credential.credential_id, credential.username, credential.role, version
            )

        logger.info(f"User logged in: {username} (role: {user.role.value})")
        return credential

    def _check_standing(self, user: User) -> None:
        """Reject banned and suspended users; clear a suspension that has elapsed."""
        if user.banned:
            logger.warning(f"Login refused: '{user.username}' is banned")
            raise Forbidden("Banned", f"User '{user.username}' is banned")

        if user.suspended_until is not None:
            if is_suspended(user, self._clock()):
                logger.warning(f"Login refused: '{user.username}' is suspended")
                raise Forbidden(
                    "Suspended",
                    f"User '{user.username}' is suspended until {user.suspended_until.isoformat()}",
                )
            self.users.clear_suspension(user.username)
            logger.info(f"Suspension elapsed for '{user.username}'")

    def validate(self, token: str) -> PrincipalContext:
        """
        Validate a presented token.

        Expiry is re-checked here on every call and never left to the sweeper.

        Args:
            token: Bearer token

        Returns:
            PrincipalContext

        Raises:
            AuthFailure: Expired, Unknown or Revoked
        """
        if not token:
            raise AuthFailure("Unauthorized", "No token provided")

        payload = self.jwt.verify_token(token)

        with self._lock:
            credential = self._credentials.get(payload.jti)
            if credential is None:
                if payload.jti in self._revoked:
                    raise AuthFailure("Revoked", "Token has been revoked")
                raise AuthFailure("Unknown", "Unknown token")

            if self._clock() >= credential.expires_at:
                del self._credentials[payload.jti]
                logger.debug(f"Credential expired for {credential.username}")
                raise AuthFailure("Expired", "Token has expired")

            return PrincipalContext.from_credential(credential)

    def get(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            return self._credentials.get(credential_id)

    def revoke(self, token: str) -> bool:
        """
        Revoke the credential behind `token` (logout).

        Returns:
            True if a live credential was revoked
        """
        payload = self.jwt.verify_token(token)
        return self.revoke_id(payload.jti)

    def revoke_id(self, credential_id: str) -> bool:
        with self._lock:
            credential = self._credentials.pop(credential_id, None)
            if credential is None:
                return False
            self._revoked[credential_id] = credential.expires_at

        logger.info(f"Credential revoked for {credential.username}")
        return True

    def revoke_user(self, username: str) -> List[str]:
        """
        Revoke every live credential held by `username`.

        Returns:
            Revoked credential ids
        """
        with self._lock:
            ids = [
                cid for cid, credential in self._credentials.items()
                if credential.username == username
            ]
            for cid in ids:
                self._revoked[cid] = self._credentials.pop(cid).expires_at

        if ids:
            logger.info(f"Revoked {len(ids)} credential(s) for {username}")
        return ids

    def sweep_expired(self) -> int:
        """
        Drop expired credentials and revocation markers past their expiry.

        Returns:
            Number of credentials removed
        """
        now = self._clock()
        with self._lock:
            expired = [
                cid for cid, credential in self._credentials.items()
                if credential.expires_at <= now
            ]
            for cid in expired:
                del self._credentials[cid]

            for cid in [cid for cid, exp in self._revoked.items() if exp <= now]:
                del self._revoked[cid]

        if expired:
            logger.debug(f"Swept {len(expired)} expired credentials")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)
