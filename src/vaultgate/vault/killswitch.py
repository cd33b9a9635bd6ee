"""
Process-wide kill switch.

While on, only owners may perform privileged operations. Turning it on runs
the registered enable hooks (grant revocation) inside the same lock as the
flip, so nobody can observe the switch on with grants still outstanding.
"""

import threading
from typing import Callable, List, Optional

from loguru import logger


class KillSwitch:
    """Single boolean with transactional enable hooks."""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self.lock = lock or threading.RLock()
        self._enabled = False
        self._enable_hooks: List[Callable[[], object]] = []

    def on_enable(self, hook: Callable[[], object]) -> None:
        self._enable_hooks.append(hook)

    @property
    def enabled(self) -> bool:
        with self.lock:
            return self._enabled

    def set(self, enabled: bool, actor: str = "system") -> bool:
        """
        Set the switch.

        Turning it off does not restore anything revoked while it was on.

        Args:
            enabled: New state
            actor: Username for the audit log

        Returns:
            The new state
        """
        enabled = bool(enabled)
        with self.lock:
            self._enabled = enabled
            if enabled:
                for hook in self._enable_hooks:
                    hook()

        logger.warning(f"Kill switch {'ENABLED' if enabled else 'disabled'} by {actor}")
        return enabled
