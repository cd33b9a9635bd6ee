"""
Content protection for vaultgate.

Encrypts one payload in memory and issues time-boxed decryption keys.
"""

from .content import ContentBlob, ContentVault, decrypt_blob
from .keys import (
    DEFAULT_KEY_TTL,
    MAX_KEY_TTL,
    MIN_KEY_TTL,
    IssuedKeyGrant,
    KeyGrantResult,
    KeyIssuer,
    clamp_ttl,
)
from .killswitch import KillSwitch

__all__ = [
    "ContentBlob",
    "ContentVault",
    "decrypt_blob",
    "IssuedKeyGrant",
    "KeyGrantResult",
    "KeyIssuer",
    "KillSwitch",
    "clamp_ttl",
    "DEFAULT_KEY_TTL",
    "MIN_KEY_TTL",
    "MAX_KEY_TTL",
]
