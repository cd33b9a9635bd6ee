"""
Presence registry.

Soft, heartbeat-maintained record of connected principals, keyed by
connection identity. A user may be present under several identities at once
(an HTTP session plus one or more real-time connections).
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from loguru import logger

from .auth.permissions import Role
from .clock import Clock, utcnow


DEFAULT_CLIENT_VERSION = "1.0"


@dataclass(frozen=True)
class PresenceEntry:
    """
    One live connection.

    Attributes:
        identity: Connection identity (credential id or real-time connection id)
        username: Principal name
        role: Role from the principal's credential
        client_version: Version string reported by the client
        last_seen: Last heartbeat or message
    """
    identity: str
    username: str
    role: Role
    client_version: str
    last_seen: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "username": self.username,
            "role": self.role.value,
            "version": self.client_version,
            "lastSeen": self.last_seen.isoformat(),
            "connectionId": self.identity,
        }


class PresenceRegistry:
    """
    Insertion-ordered presence map guarded by a lock.

    Callers never see the underlying dict; listings are snapshots.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, PresenceEntry]" = OrderedDict()

    def record_heartbeat(
        self,
        identity: str,
        username: str,
        role: Role,
        version: Optional[str] = None,
    ) -> bool:
        """
        Create or refresh the entry for `identity`.

        A refresh keeps the entry's original position in the listing.

        Returns:
            True if a new entry was created
        """
        now = self._clock()
        version = str(version) if version else DEFAULT_CLIENT_VERSION

        with self._lock:
            existing = self._entries.get(identity)
            if existing is not None:
                self._entries[identity] = replace(
                    existing,
                    username=username,
                    role=Role.parse(role),
                    client_version=version,
                    last_seen=now,
                )
                return False

            self._entries[identity] = PresenceEntry(
                identity=identity,
                username=username,
                role=Role.parse(role),
                client_version=version,
                last_seen=now,
            )

        logger.debug(f"Presence added: {username} ({identity})")
        return True

    def touch(self, identity: str) -> bool:
        """Refresh last_seen without changing anything else."""
        with self._lock:
            existing = self._entries.get(identity)
            if existing is None:
                return False
            self._entries[identity] = replace(existing, last_seen=self._clock())
            return True

    def get(self, identity: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._entries.get(identity)

    def list_online(self) -> List[PresenceEntry]:
        """Snapshot of all entries in insertion order."""
        with self._lock:
            return list(self._entries.values())

    def find_by_username(self, username: str) -> List[str]:
        """Identities currently present for `username` (possibly empty)."""
        with self._lock:
            return [
                identity for identity, entry in self._entries.items()
                if entry.username == username
            ]

    def remove(self, identity: str) -> Optional[PresenceEntry]:
        with self._lock:
            entry = self._entries.pop(identity, None)

        if entry is not None:
            logger.debug(f"Presence removed: {entry.username} ({identity})")
        return entry

    def remove_user(self, username: str) -> List[PresenceEntry]:
        """Remove every entry for `username`."""
        with self._lock:
            identities = self.find_by_username(username)
            return [self._entries.pop(identity) for identity in identities]

    def sweep_stale(self, max_age: Union[float, timedelta]) -> List[PresenceEntry]:
        """
        Remove entries whose last heartbeat is older than `max_age`.

        Args:
            max_age: Seconds (or timedelta) without a heartbeat

        Returns:
            Entries that were removed
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = self._clock() - max_age

        with self._lock:
            stale = [
                identity for identity, entry in self._entries.items()
                if entry.last_seen < cutoff
            ]
            removed = [self._entries.pop(identity) for identity in stale]

        if removed:
            logger.info(f"Swept {len(removed)} stale presence entries")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
