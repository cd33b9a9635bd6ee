"""
Content vault.

Holds one symmetric key and one ciphertext in memory. Every upload generates
a fresh AES-256-GCM key and nonce and replaces the previous blob wholesale.

Download format:
    [nonce: 12 bytes][auth tag: 16 bytes][ciphertext: N bytes]
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from ..clock import Clock, utcnow
from ..errors import Conflict, InvalidInput, NotFound


KEY_SIZE = 32       # AES-256
NONCE_SIZE = 12     # 96-bit GCM nonce
TAG_SIZE = 16


@dataclass(frozen=True)
class ContentBlob:
    """
    The single encrypted payload.

    Attributes:
        content_key: 32-byte AES key
        nonce: GCM nonce
        auth_tag: GCM authentication tag
        ciphertext: Encrypted payload without the tag
        generation: Increments on every upload
        uploaded_at: Upload time
    """
    content_key: bytes
    nonce: bytes
    auth_tag: bytes
    ciphertext: bytes
    generation: int
    uploaded_at: datetime

    def to_bytes(self) -> bytes:
        return self.nonce + self.auth_tag + self.ciphertext


def encrypt_payload(plaintext: bytes) -> Tuple[bytes, bytes, bytes, bytes]:
    """
    Encrypt under a freshly generated AES-256-GCM key.

    Returns:
        (key, nonce, auth_tag, ciphertext)
    """
    key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return key, nonce, sealed[-TAG_SIZE:], sealed[:-TAG_SIZE]


def decrypt_blob(key: bytes, blob: bytes) -> bytes:
    """
    Decrypt a downloaded blob with a key obtained from the key issuer.

    Args:
        key: 32-byte content key
        blob: nonce | tag | ciphertext as served by the vault

    Returns:
        Plaintext bytes

    Raises:
        InvalidInput: If the blob is malformed or the key does not match
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise InvalidInput("InvalidContent", "Blob too short")

    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise InvalidInput("InvalidContent", "Key does not match content")


class ContentVault:
    """
    In-memory holder of the encrypted payload.

    `lock` is shared with the key issuer and kill switch so that replacing the
    blob and clearing key grants is one critical section.
    """

    def __init__(self, lock: Optional[threading.RLock] = None, clock: Clock = utcnow):
        self.lock = lock or threading.RLock()
        self._clock = clock
        self._upload_lock = threading.Lock()
        self._blob: Optional[ContentBlob] = None
        self._generation = 0
        self._replace_listeners: List[Callable[[int], None]] = []

    def on_replace(self, listener: Callable[[int], None]) -> None:
        """Register a callback run inside the vault lock after every replace."""
        self._replace_listeners.append(listener)

    def upload(self, plaintext: Union[bytes, str]) -> ContentBlob:
        """
        Encrypt `plaintext` under a fresh key and replace the current blob.

        Args:
            plaintext: Payload (str is encoded as UTF-8)

        Returns:
            The new ContentBlob

        Raises:
            InvalidInput: MissingPayload for an empty payload
            Conflict: ContentBusy if another upload is in progress
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if not plaintext:
            raise InvalidInput("MissingPayload", "Missing payload")

        if not self._upload_lock.acquire(blocking=False):
            raise Conflict("ContentBusy", "Content is already being replaced")
        try:
            key, nonce, tag, ciphertext = encrypt_payload(plaintext)

            with self.lock:
                self._generation += 1
                blob = ContentBlob(
                    content_key=key,
                    nonce=nonce,
                    auth_tag=tag,
                    ciphertext=ciphertext,
                    generation=self._generation,
                    uploaded_at=self._clock(),
                )
                self._blob = blob
                for listener in self._replace_listeners:
                    listener(blob.generation)
        finally:
            self._upload_lock.release()

        logger.info(
            f"Content replaced (generation {blob.generation}, {len(plaintext)} bytes)"
        )
        return blob

    def current_ciphertext(self) -> bytes:
        """
        Raises:
            NotFound: NoContent if nothing has been uploaded
        """
        with self.lock:
            if self._blob is None:
                raise NotFound("NoContent", "No content uploaded")
            return self._blob.to_bytes()

    def current_key(self) -> Tuple[bytes, int]:
        """
        Returns:
            (content_key, generation)

        Raises:
            NotFound: NoContent if nothing has been uploaded
        """
        with self.lock:
            if self._blob is None:
                raise NotFound("NoContent", "No content uploaded")
            return self._blob.content_key, self._blob.generation

    @property
    def generation(self) -> int:
        with self.lock:
            return self._generation

    @property
    def has_content(self) -> bool:
        with self.lock:
            return self._blob is not None
