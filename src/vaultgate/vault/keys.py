"""
Key issuer.

Hands the vault's content key to authorized sessions for a bounded window and
records each issuance as a grant keyed by credential id.

Revocation here is advisory. Once a client holds the raw key it can keep
decrypting the ciphertext it already downloaded; the server can only refuse
to issue the key again and report the grant as invalid from then on. A vault
replace is what actually makes old keys useless, because the ciphertext they
decrypt is gone.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from loguru import logger

from ..auth.database import UserDatabase
from ..auth.models import PrincipalContext
from ..auth.permissions import key_issue_denial
from ..clock import Clock, utcnow
from ..errors import AuthFailure, InvalidInput
from .content import ContentVault
from .killswitch import KillSwitch


MIN_KEY_TTL = 5
MAX_KEY_TTL = 300
DEFAULT_KEY_TTL = 15


@dataclass(frozen=True)
class IssuedKeyGrant:
    """
    Record that a credential currently holds the content key.

    Attributes:
        credential_id: Credential the key was issued to
        username: Holder
        generation: Vault generation the key belongs to
        expires_at: Advisory expiry
    """
    credential_id: str
    username: str
    generation: int
    expires_at: datetime


@dataclass(frozen=True)
class KeyGrantResult:
    """What the caller hands back to the client."""
    key: bytes
    expires_at: datetime
    generation: int


def clamp_ttl(requested_ttl, minimum: int = MIN_KEY_TTL, maximum: int = MAX_KEY_TTL,
              default: int = DEFAULT_KEY_TTL) -> int:
    """
    Turn a client-requested TTL into a bounded number of seconds.

    Args:
        requested_ttl: None, a number, or a numeric string

    Returns:
        Seconds in [minimum, maximum]

    Raises:
        InvalidInput: InvalidTtl if the value is not numeric
    """
    if requested_ttl is None or requested_ttl == "":
        return default
    if isinstance(requested_ttl, bool):
        raise InvalidInput("InvalidTtl", "ttlSeconds must be a number")
    try:
        seconds = int(float(requested_ttl))
    except (TypeError, ValueError, OverflowError):
        raise InvalidInput("InvalidTtl", f"ttlSeconds must be a number, got {requested_ttl!r}")
    return min(max(seconds, minimum), maximum)


class KeyIssuer:
    """
    Issues the current content key and tracks grants.

    Shares the vault's lock: issuing, replacing content and flipping the kill
    switch are mutually exclusive.
    """

    def __init__(
        self,
        vault: ContentVault,
        users: UserDatabase,
        kill_switch: KillSwitch,
        clock: Clock = utcnow,
    ):
        if kill_switch.lock is not vault.lock:
            raise ValueError("KillSwitch must share the vault lock")

        self.vault = vault
        self.users = users
        self.kill_switch = kill_switch
        self.lock = vault.lock
        self._clock = clock
        self._grants: Dict[str, IssuedKeyGrant] = {}

        vault.on_replace(lambda generation: self.revoke_all())
        kill_switch.on_enable(self.revoke_all)

    def issue_key(self, principal: PrincipalContext, requested_ttl=None) -> KeyGrantResult:
        """
        Issue the content key to `principal`.

        Args:
            principal: Validated principal
            requested_ttl: Client-requested lifetime in seconds (clamped)

        Returns:
            KeyGrantResult

        Raises:
            NotFound: NoContent
            Forbidden: KillSwitchActive, Banned or Suspended
            InvalidInput: InvalidTtl
        """
        ttl = clamp_ttl(requested_ttl)

        with self.lock:
            key, generation = self.vault.current_key()

            user = self.users.get_user(principal.username)
            if user is None:
                raise AuthFailure("Unknown", f"User '{principal.username}' no longer exists")

            now = self._clock()
            denial = key_issue_denial(
                user, self.kill_switch.enabled, role=principal.role, now=now
            )
            if denial is not None:
                logger.warning(f"Key refused for {principal.username}: {denial.code}")
                raise denial

            grant = IssuedKeyGrant(
                credential_id=principal.credential_id,
                username=principal.username,
                generation=generation,
                expires_at=now + timedelta(seconds=ttl),
            )
            self._grants[principal.credential_id] = grant

        logger.info(f"Key issued to {principal.username} for {ttl}s (generation {generation})")
        return KeyGrantResult(key=key, expires_at=grant.expires_at, generation=generation)

    def get_grant(self, credential_id: str) -> Optional[IssuedKeyGrant]:
        with self.lock:
            return self._grants.get(credential_id)

    def has_valid_grant(self, credential_id: str) -> bool:
        """True if the credential holds an unexpired grant for the current content."""
        with self.lock:
            grant = self._grants.get(credential_id)
            if grant is None:
                return False
            if grant.generation != self.vault.generation:
                return False
            return self._clock() < grant.expires_at

    def revoke(self, credential_id: str) -> bool:
        with self.lock:
            return self._grants.pop(credential_id, None) is not None

    def revoke_all(self) -> int:
        """
        Clear every grant.

        Returns:
            Number of grants cleared
        """
        with self.lock:
            count = len(self._grants)
            self._grants.clear()

        if count:
            logger.info(f"Revoked {count} key grant(s)")
        return count

    def sweep_expired(self) -> int:
        now = self._clock()
        with self.lock:
            expired = [cid for cid, grant in self._grants.items() if grant.expires_at <= now]
            for cid in expired:
                del self._grants[cid]
        return len(expired)

    def __len__(self) -> int:
        with self.lock:
            return len(self._grants)
