"""
Command router for the real-time channel.

Tracks live connections, validates privileged commands against the access
policy, executes built-in actions (kick, ban, timeout), forwards custom
commands, and broadcasts presence and kill switch changes.

Connection lifecycle:
    UNAUTHENTICATED -> AUTHENTICATED -> ACTIVE <-> IDLE -> CLOSED

A connection that fails validation at the handshake never gets past
UNAUTHENTICATED and is never registered.
"""

import asyncio
import secrets
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from websockets.exceptions import ConnectionClosed

from ..auth.credentials import CredentialStore
from ..auth.database import UserDatabase
from ..auth.models import PrincipalContext
from ..auth.permissions import (
    Role,
    can_act_while_kill_switch_on,
    can_ban,
    can_command,
    can_target,
    can_toggle_kill_switch,
)
from ..clock import Clock, utcnow
from ..errors import AuthFailure, Forbidden, InvalidInput, NotFound, VaultGateError
from ..presence import PresenceRegistry
from ..vault.keys import KeyIssuer
from ..vault.killswitch import KillSwitch
from . import protocol
from .protocol import CommandMessage, HeartbeatMessage, KillSwitchMessage


# Close codes in the application range (4000-4999)
CLOSE_KICKED = 4000
CLOSE_BANNED = 4001
CLOSE_SUSPENDED = 4002
CLOSE_UNAUTHORIZED = 4401

# Longest accepted timeout
MAX_TIMEOUT_SECONDS = 10 * 365 * 24 * 60 * 60


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"


class ClientConnection:
    """
    One real-time connection.

    `transport` is anything with async `send(str)` and `close(code, reason)`,
    normally a websockets server connection.
    """

    def __init__(self, transport, version: Optional[str] = None, clock: Clock = utcnow):
        self.connection_id = f"ws-{secrets.token_hex(8)}"
        self.transport = transport
        self.version = version
        self.state = ConnectionState.UNAUTHENTICATED
        self.principal: Optional[PrincipalContext] = None
        self.token: Optional[str] = None
        self._clock = clock
        self.last_activity = clock()

    def authenticate(self, principal: PrincipalContext, token: str) -> None:
        if self.state is not ConnectionState.UNAUTHENTICATED:
            raise RuntimeError(f"Cannot authenticate connection in state {self.state.value}")
        self.principal = principal
        self.token = token
        self.state = ConnectionState.AUTHENTICATED

    def activate(self) -> None:
        if self.state in (ConnectionState.AUTHENTICATED, ConnectionState.IDLE):
            self.state = ConnectionState.ACTIVE
        self.last_activity = self._clock()

    @property
    def username(self) -> Optional[str]:
        return self.principal.username if self.principal else None

    @property
    def is_open(self) -> bool:
        return self.state not in (ConnectionState.UNAUTHENTICATED, ConnectionState.CLOSED)

    async def send(self, event: Dict[str, Any]) -> bool:
        """
        Send one event. Delivery failures are dropped, not retried.

        Returns:
            True if the frame was handed to the transport
        """
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            await self.transport.send(protocol.encode(event))
            return True
        except (ConnectionClosed, ConnectionError) as e:
            logger.debug(f"[{self.connection_id}] Dropped {event.get('type')}: {e}")
            return False

    async def close(self, code: int, reason: str) -> None:
        self.state = ConnectionState.CLOSED
        try:
            await self.transport.close(code=code, reason=reason)
        except (ConnectionClosed, ConnectionError) as e:
            logger.debug(f"[{self.connection_id}] Close failed: {e}")


class CommandRouter:
    """
    Single authority over live real-time connections.

    All methods run on the event loop; registry mutations happen without an
    intervening await so a kick is never observed half-applied.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        presence: PresenceRegistry,
        users: UserDatabase,
        key_issuer: KeyIssuer,
        kill_switch: KillSwitch,
        clock: Clock = utcnow,
    ):
        self.credentials = credentials
        self.presence = presence
        self.users = users
        self.key_issuer = key_issuer
        self.kill_switch = kill_switch
        self._clock = clock
        self._connections: Dict[str, ClientConnection] = {}

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self, transport, token: str, version: Optional[str] = None) -> ClientConnection:
        """
        Authenticate and register a new connection.

        Raises:
            AuthFailure: If the token does not validate; nothing is registered
        """
        connection = ClientConnection(transport, version=version, clock=self._clock)
        principal = self.credentials.validate(token)
        connection.authenticate(principal, token)

        self._connections[connection.connection_id] = connection
        self.presence.record_heartbeat(
            connection.connection_id, principal.username, principal.role, version
        )
        connection.activate()

        logger.success(
            f"[{connection.connection_id}] {principal.username} connected ({principal.role.value})"
        )

        await connection.send(protocol.kill_switch_update(self.kill_switch.enabled))
        await self.broadcast_presence()
        return connection

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        removed = self.presence.remove(connection_id)
        if connection is not None:
            connection.state = ConnectionState.CLOSED
            logger.info(f"[{connection_id}] {connection.username} disconnected")
        if removed is not None:
            await self.broadcast_presence()

    def get_connection(self, connection_id: str) -> Optional[ClientConnection]:
        return self._connections.get(connection_id)

    def connections(self) -> List[ClientConnection]:
        return list(self._connections.values())

    # ========================================================================
    # Inbound messages
    # ========================================================================

    async def handle_message(self, connection: ClientConnection, raw) -> None:
        """Parse and dispatch one inbound frame from `connection`."""
        if not connection.is_open:
            return

        connection.activate()
        created = self.presence.record_heartbeat(
            connection.connection_id,
            connection.principal.username,
            connection.principal.role,
            connection.version,
        )
        if created:
            await self.broadcast_presence()

        try:
            message = protocol.parse_message(raw)
        except InvalidInput as e:
            logger.warning(f"[{connection.connection_id}] {e.message}")
            await connection.send(protocol.error_event(e))
            return

        if isinstance(message, HeartbeatMessage):
            if message.version:
                connection.version = message.version
                self.presence.record_heartbeat(
                    connection.connection_id,
                    connection.principal.username,
                    connection.principal.role,
                    message.version,
                )
            return

        if isinstance(message, KillSwitchMessage):
            ack = await self._handle_kill_switch_message(connection, message)
        else:
            ack = await self.handle_command(connection, message)

        await connection.send(ack)

        if not ack["ok"] and ack.get("reason") in ("Expired", "Revoked", "Unknown", "Unauthorized"):
            await self._drop(connection, CLOSE_UNAUTHORIZED, "credential no longer valid")

    async def _handle_kill_switch_message(
        self, connection: ClientConnection, message: KillSwitchMessage
    ) -> Dict[str, Any]:
        try:
            principal = self.credentials.validate(connection.token)
            enabled = await self.set_kill_switch(principal, message.enable)
        except VaultGateError as e:
            return protocol.command_ack("kill-switch", None, error=e, request_id=message.id)
        return protocol.command_ack(
            "kill-switch", None, request_id=message.id, killSwitchEnabled=enabled
        )

    async def handle_command(self, sender: ClientConnection, command: CommandMessage) -> Dict[str, Any]:
        """
        Run a privileged command and build its acknowledgement.

        Processing order:
            1. sender must be moderator or above
            2. target must resolve to at least one live presence entry
            3. hierarchy must allow sender to act on target
            4. kill switch blocks everyone but owners
            5. dispatch by action

        Returns:
            command-ack event (never raises for a rejected command)
        """
        try:
            principal = self.credentials.validate(sender.token)
            result = await self._execute(principal, sender, command)
        except VaultGateError as e:
            logger.warning(
                f"[{sender.connection_id}] {command.action} -> {command.target_principal} "
                f"rejected: {e.code}"
            )
            return protocol.command_ack(
                command.action, command.target_principal, error=e, request_id=command.id
            )

        return protocol.command_ack(
            command.action, command.target_principal, request_id=command.id, **result
        )

    async def _execute(
        self, principal: PrincipalContext, sender: ClientConnection, command: CommandMessage
    ) -> Dict[str, Any]:
        if not can_command(principal.role):
            raise Forbidden("Forbidden", f"Role '{principal.role.value}' may not issue commands")

        username, identities, target_role = self._resolve_target(command.target_principal)

        if not can_target(principal.role, target_role):
            raise Forbidden(
                "Forbidden",
                f"Role '{principal.role.value}' may not target role '{target_role.value}'",
            )

        if self.kill_switch.enabled and not can_act_while_kill_switch_on(principal.role):
            raise Forbidden("KillSwitchActive", "Kill switch active")

        if command.action == protocol.KICK:
            count = await self.kick(username, CLOSE_KICKED, f"kicked by {principal.username}")
            return {"disconnected": count}

        if command.action == protocol.BAN:
            return await self._ban(principal, username)

        if command.action == protocol.TIMEOUT:
            return await self._timeout(principal, username, command.timeout_seconds())

        return await self._forward(principal, command, identities)

    def _resolve_target(self, target: str) -> Tuple[str, List[str], Role]:
        """
        Resolve a connection identity or username to live identities.

        Returns:
            (username, identities, highest role among those identities)

        Raises:
            NotFound: TargetNotFound
        """
        entry = self.presence.get(target)
        if entry is not None:
            username = entry.username
            identities = [target]
        else:
            username = target
            identities = self.presence.find_by_username(target)

        entries = [e for e in (self.presence.get(i) for i in identities) if e is not None]
        if not entries:
            raise NotFound("TargetNotFound", f"No live connection for '{target}'")

        role = max((e.role for e in entries), key=lambda r: r.rank)
        return username, identities, role

    # ========================================================================
    # Actions
    # ========================================================================

    async def kick(self, username: str, code: int = CLOSE_KICKED, reason: str = "kicked") -> int:
        """
        Disconnect every live connection of `username` and drop their presence.

        Returns:
            Number of presence entries / connections removed
        """
        removed = {entry.identity for entry in self.presence.remove_user(username)}
        targets = [c for c in self._connections.values() if c.username == username]
        for connection in targets:
            self._connections.pop(connection.connection_id, None)
            connection.state = ConnectionState.CLOSED
            removed.add(connection.connection_id)

        await asyncio.gather(*(c.close(code, reason) for c in targets))
        await self.broadcast_presence()

        logger.info(f"Kicked {username} ({len(removed)} connection(s)): {reason}")
        return len(removed)

    def _revoke_access(self, username: str) -> None:
        for credential_id in self.credentials.revoke_user(username):
            self.key_issuer.revoke(credential_id)

    async def _ban(self, principal: PrincipalContext, username: str) -> Dict[str, Any]:
        if not can_ban(principal.role):
            raise Forbidden("Forbidden", "Only owners may ban")

        if not self.users.set_banned(username, True):
            raise NotFound("TargetNotFound", f"User '{username}' does not exist")
        self._revoke_access(username)

        count = await self.kick(username, CLOSE_BANNED, f"banned by {principal.username}")
        return {"disconnected": count}

    async def _timeout(self, principal: PrincipalContext, username: str, seconds) -> Dict[str, Any]:
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            raise InvalidInput("InvalidTimeout", "timeout seconds must be a positive number")
        # NaN fails every comparison
        if not 0 < seconds <= MAX_TIMEOUT_SECONDS:
            raise InvalidInput(
                "InvalidTimeout", f"timeout seconds must be in (0, {MAX_TIMEOUT_SECONDS}]"
            )

        try:
            until = self._clock() + timedelta(seconds=seconds)
        except OverflowError:
            raise InvalidInput("InvalidTimeout", "timeout ends out of range")
        if not self.users.set_suspended_until(username, until):
            raise NotFound("TargetNotFound", f"User '{username}' does not exist")
        self._revoke_access(username)

        count = await self.kick(
            username, CLOSE_SUSPENDED, f"suspended by {principal.username} for {seconds}s"
        )
        return {"disconnected": count, "suspendedUntil": until.isoformat()}

    async def _forward(
        self, principal: PrincipalContext, command: CommandMessage, identities: List[str]
    ) -> Dict[str, Any]:
        recipients = [self._connections[i] for i in identities if i in self._connections]
        if not recipients:
            raise NotFound(
                "TargetNotConnected",
                f"'{command.target_principal}' has no real-time connection",
            )

        event = protocol.forwarded_command(principal.username, command.action, command.data)
        results = await asyncio.gather(*(c.send(event) for c in recipients))
        return {"delivered": sum(1 for ok in results if ok)}

    # ========================================================================
    # Kill switch and broadcasts
    # ========================================================================

    async def set_kill_switch(self, principal: PrincipalContext, enabled: bool) -> bool:
        """
        Toggle the kill switch (owner only) and broadcast the new state.

        Turning it on revokes every key grant in the same locked step.

        Raises:
            Forbidden: If the principal is not an owner
        """
        if not can_toggle_kill_switch(principal.role):
            raise Forbidden("Forbidden", "Only owners may toggle the kill switch")

        state = self.kill_switch.set(enabled, actor=principal.username)
        await self.broadcast(protocol.kill_switch_update(state))
        return state

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """Send `event` to every open connection; returns the number delivered."""
        targets = [c for c in self._connections.values() if c.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(event) for c in targets))
        return sum(1 for ok in results if ok)

    async def broadcast_presence(self) -> int:
        return await self.broadcast(protocol.presence_update(self.presence.list_online()))

    # ========================================================================
    # Periodic maintenance
    # ========================================================================

    def sweep_idle(self, idle_after: float) -> int:
        """Move connections quiet for `idle_after` seconds to IDLE."""
        cutoff = self._clock() - timedelta(seconds=idle_after)
        count = 0
        for connection in self._connections.values():
            if connection.state is ConnectionState.ACTIVE and connection.last_activity < cutoff:
                connection.state = ConnectionState.IDLE
                count += 1
        return count

    async def close_invalid(self) -> int:
        """Close connections whose credential has expired or been revoked."""
        dropped = []
        for connection in list(self._connections.values()):
            try:
                self.credentials.validate(connection.token)
            except AuthFailure:
                dropped.append(connection)

        for connection in dropped:
            await self._drop(connection, CLOSE_UNAUTHORIZED, "credential no longer valid")
        return len(dropped)

    async def _drop(self, connection: ClientConnection, code: int, reason: str) -> None:
        self._connections.pop(connection.connection_id, None)
        removed = self.presence.remove(connection.connection_id)
        await connection.close(code, reason)
        if removed is not None:
            await self.broadcast_presence()
