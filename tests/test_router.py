"""
Tests for the real-time command router: connection lifecycle, privileged
commands, broadcasts and maintenance sweeps.
"""

import asyncio
import json

import pytest

from vaultgate.errors import AuthFailure, Forbidden
from vaultgate.realtime.router import (
    CLOSE_BANNED,
    CLOSE_KICKED,
    CLOSE_SUSPENDED,
    CLOSE_UNAUTHORIZED,
    ConnectionState,
)
from vaultgate.realtime.server import extract_handshake_params
from vaultgate.sweeper import sweep_once

from conftest import FakeTransport, password_for


async def open_connection(services, login, username, version="1.0"):
    transport = FakeTransport()
    credential = login(username)
    connection = await services.router.connect(transport, credential.token, version)
    return connection, transport


async def send(services, connection, **message):
    await services.router.handle_message(connection, json.dumps(message))
    return connection.transport.last("command-ack")


def command(target, action, data=None, request_id=None):
    message = {"type": "command", "targetPrincipal": target, "action": action}
    if data is not None:
        message["data"] = data
    if request_id is not None:
        message["id"] = request_id
    return message


class TestConnect:

    def test_connect_registers_and_announces(self, services, login):
        async def scenario():
            olivia, olivia_t = await open_connection(services, login, "olivia")
            mary, mary_t = await open_connection(services, login, "mary", version="2.0")

            assert mary.state is ConnectionState.ACTIVE
            assert services.router.get_connection(mary.connection_id) is mary
            assert mary_t.sent[0] == {"type": "kill-switch-update", "enabled": False}

            update = olivia_t.last("presence-update")
            names = [entry["username"] for entry in update["entries"]]
            assert "mary" in names
            entry = services.presence.get(mary.connection_id)
            assert entry.client_version == "2.0"

        asyncio.run(scenario())

    def test_invalid_token_is_never_registered(self, services):
        async def scenario():
            transport = FakeTransport()
            with pytest.raises(AuthFailure):
                await services.router.connect(transport, "garbage")
            assert services.router.connections() == []
            assert len(services.presence) == 0
            assert transport.sent == []

        asyncio.run(scenario())

    def test_revoked_token_rejected(self, services, login):
        async def scenario():
            credential = login("mary")
            services.credentials.revoke(credential.token)
            with pytest.raises(AuthFailure) as exc_info:
                await services.router.connect(FakeTransport(), credential.token)
            assert exc_info.value.code == "Revoked"

        asyncio.run(scenario())

    def test_disconnect_removes_presence(self, services, login):
        async def scenario():
            mary, _ = await open_connection(services, login, "mary")
            await services.router.disconnect(mary.connection_id)

            assert services.router.get_connection(mary.connection_id) is None
            assert services.presence.get(mary.connection_id) is None

        asyncio.run(scenario())


class TestKick:

    def test_moderator_kicks_member(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            mary, mary_t = await open_connection(services, login, "mary")

            ack = await send(services, mona, **command("mary", "kick", request_id="k1"))

            assert ack["ok"] is True
            assert ack["id"] == "k1"
            assert mary_t.closed[0] == CLOSE_KICKED
            assert services.presence.find_by_username("mary") == []
            assert services.router.get_connection(mary.connection_id) is None

        asyncio.run(scenario())

    def test_kick_by_connection_identity(self, services, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            paul, paul_t = await open_connection(services, login, "paul")

            ack = await send(services, olivia, **command(paul.connection_id, "kick"))

            assert ack["ok"] is True
            assert paul_t.closed is not None

        asyncio.run(scenario())

    def test_kick_drops_every_session_of_the_user(self, services, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            _, first = await open_connection(services, login, "paul")
            _, second = await open_connection(services, login, "paul")

            ack = await send(services, olivia, **command("paul", "kick"))

            # two websocket entries plus the two login entries
            assert ack["disconnected"] == 4
            assert first.closed is not None
            assert second.closed is not None

        asyncio.run(scenario())

    def test_unknown_target(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            ack = await send(services, mona, **command("ghost", "kick"))
            assert ack["ok"] is False
            assert ack["reason"] == "TargetNotFound"

        asyncio.run(scenario())

    def test_member_cannot_command(self, services, login):
        async def scenario():
            mary, _ = await open_connection(services, login, "mary")
            _, paul_t = await open_connection(services, login, "paul")

            ack = await send(services, mary, **command("paul", "kick"))

            assert ack["ok"] is False
            assert ack["reason"] == "Forbidden"
            assert paul_t.closed is None

        asyncio.run(scenario())


class TestHierarchy:

    @pytest.mark.parametrize("target", ["olivia", "mike"])
    def test_moderator_cannot_target_owner_or_moderator(self, services, login, target):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            _, target_t = await open_connection(services, login, target)

            ack = await send(services, mona, **command(target, "kick"))

            assert ack["ok"] is False
            assert ack["reason"] == "Forbidden"
            assert target_t.closed is None

        asyncio.run(scenario())

    def test_owner_can_target_owner(self, services, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            _, oscar_t = await open_connection(services, login, "oscar")

            ack = await send(services, olivia, **command("oscar", "kick"))

            assert ack["ok"] is True
            assert oscar_t.closed[0] == CLOSE_KICKED

        asyncio.run(scenario())


class TestBan:

    def test_moderator_cannot_ban(self, services, users, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            await open_connection(services, login, "mary")

            ack = await send(services, mona, **command("mary", "ban"))

            assert ack["ok"] is False
            assert ack["reason"] == "Forbidden"
            assert not users.get_user("mary").banned

        asyncio.run(scenario())

    def test_owner_ban_revokes_and_blocks_login(self, services, users, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            mary, mary_t = await open_connection(services, login, "mary")

            ack = await send(services, olivia, **command("mary", "ban"))

            assert ack["ok"] is True
            assert mary_t.closed[0] == CLOSE_BANNED
            assert users.get_user("mary").banned
            with pytest.raises(AuthFailure) as exc_info:
                services.credentials.validate(mary.token)
            assert exc_info.value.code == "Revoked"
            with pytest.raises(Forbidden) as exc_info:
                services.credentials.issue("mary", password_for("mary"))
            assert exc_info.value.code == "Banned"

        asyncio.run(scenario())


class TestTimeout:

    def test_timeout_suspends_until_elapsed(self, services, clock, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            _, paul_t = await open_connection(services, login, "paul")

            ack = await send(services, mona, **command("paul", "timeout", {"seconds": 30}))

            assert ack["ok"] is True
            assert "suspendedUntil" in ack
            assert paul_t.closed[0] == CLOSE_SUSPENDED

            with pytest.raises(Forbidden) as exc_info:
                services.credentials.issue("paul", password_for("paul"))
            assert exc_info.value.code == "Suspended"

            clock.advance(31)
            assert services.credentials.issue("paul", password_for("paul")).username == "paul"

        asyncio.run(scenario())

    @pytest.mark.parametrize("seconds", [
        0, -5, "soon", None, True, 1e12, 10 ** 400, float("nan"), float("inf"),
    ])
    def test_invalid_timeout(self, services, users, login, seconds):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            _, mary_t = await open_connection(services, login, "mary")

            message = command("mary", "timeout")
            message["data"] = seconds
            ack = await send(services, mona, **message)

            assert ack["ok"] is False
            assert ack["reason"] == "InvalidTimeout"
            assert mary_t.closed is None
            assert users.get_user("mary").suspended_until is None

        asyncio.run(scenario())


class TestCustomCommands:

    def test_forwarded_to_target(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            _, paul_t = await open_connection(services, login, "paul")

            ack = await send(services, mona, **command("paul", "reload", {"force": True}))

            assert ack["ok"] is True
            assert ack["delivered"] == 1
            assert paul_t.last("command") == {
                "type": "command", "from": "mona", "action": "reload", "data": {"force": True}
            }

        asyncio.run(scenario())

    def test_target_without_realtime_connection(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            login("paul")

            ack = await send(services, mona, **command("paul", "reload"))

            assert ack["ok"] is False
            assert ack["reason"] == "TargetNotConnected"

        asyncio.run(scenario())


class TestKillSwitch:

    def test_blocks_moderator_commands(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")
            _, mary_t = await open_connection(services, login, "mary")
            services.kill_switch.set(True)

            ack = await send(services, mona, **command("mary", "kick"))

            assert ack["reason"] == "KillSwitchActive"
            assert mary_t.closed is None

        asyncio.run(scenario())

    def test_owner_still_acts(self, services, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            _, mary_t = await open_connection(services, login, "mary")
            services.kill_switch.set(True)

            ack = await send(services, olivia, **command("mary", "kick"))

            assert ack["ok"] is True
            assert mary_t.closed is not None

        asyncio.run(scenario())

    def test_toggle_message_from_owner_broadcasts(self, services, login):
        async def scenario():
            olivia, _ = await open_connection(services, login, "olivia")
            _, mary_t = await open_connection(services, login, "mary")

            ack = await send(services, olivia, type="kill-switch", enable=True, id=3)

            assert ack["ok"] is True
            assert ack["killSwitchEnabled"] is True
            assert ack["id"] == 3
            assert services.kill_switch.enabled
            assert mary_t.last("kill-switch-update") == {"type": "kill-switch-update", "enabled": True}

        asyncio.run(scenario())

    def test_toggle_message_from_moderator_refused(self, services, login):
        async def scenario():
            mona, _ = await open_connection(services, login, "mona")

            ack = await send(services, mona, type="kill-switch", enable=True)

            assert ack["ok"] is False
            assert ack["reason"] == "Forbidden"
            assert not services.kill_switch.enabled

        asyncio.run(scenario())


class TestInboundHandling:

    def test_malformed_frame_gets_error_event(self, services, login):
        async def scenario():
            mary, mary_t = await open_connection(services, login, "mary")
            await services.router.handle_message(mary, "{broken")

            error = mary_t.last("error")
            assert error["reason"] == "InvalidMessage"
            assert mary.is_open

        asyncio.run(scenario())

    def test_heartbeat_updates_version(self, services, login):
        async def scenario():
            mary, _ = await open_connection(services, login, "mary", version="1.0")
            await services.router.handle_message(mary, '{"type": "heartbeat", "version": "1.5"}')
            assert services.presence.get(mary.connection_id).client_version == "1.5"

        asyncio.run(scenario())

    def test_revoked_sender_is_disconnected(self, services, login):
        async def scenario():
            mona, mona_t = await open_connection(services, login, "mona")
            _, mary_t = await open_connection(services, login, "mary")
            services.credentials.revoke(mona.token)

            ack = await send(services, mona, **command("mary", "kick"))

            assert ack["reason"] == "Revoked"
            assert mona_t.closed[0] == CLOSE_UNAUTHORIZED
            assert mary_t.closed is None

        asyncio.run(scenario())

    def test_broadcast_skips_dead_transport(self, services, login):
        async def scenario():
            _, olivia_t = await open_connection(services, login, "olivia")
            _, mary_t = await open_connection(services, login, "mary")
            mary_t.closed = (1006, "")

            delivered = await services.router.broadcast({"type": "ping"})

            assert delivered == 1
            assert olivia_t.last("ping") == {"type": "ping"}

        asyncio.run(scenario())


class TestMaintenance:

    def test_idle_and_reactivate(self, services, clock, login):
        async def scenario():
            mary, _ = await open_connection(services, login, "mary")
            clock.advance(61)

            assert services.router.sweep_idle(60) == 1
            assert mary.state is ConnectionState.IDLE

            await services.router.handle_message(mary, '{"type": "heartbeat"}')
            assert mary.state is ConnectionState.ACTIVE

        asyncio.run(scenario())

    def test_expired_connections_closed(self, services, clock, login):
        async def scenario():
            _, mary_t = await open_connection(services, login, "mary")
            clock.advance(30 * 60)

            assert await services.router.close_invalid() == 1
            assert mary_t.closed[0] == CLOSE_UNAUTHORIZED
            assert services.router.connections() == []

        asyncio.run(scenario())

    def test_sweep_once_reports_each_registry(self, services, clock, login):
        async def scenario():
            services.vault.upload("payload")
            principal = services.credentials.validate(login("mary").token)
            services.key_issuer.issue_key(principal, 10)
            clock.advance(30 * 60 + 1)

            report = await sweep_once(services)

            assert report.credentials == 1
            assert report.grants == 1
            assert report.presence == 1
            assert len(services.presence) == 0

        asyncio.run(scenario())


class TestHandshakeParams:

    def test_query_string(self):
        assert extract_handshake_params("/?token=abc&version=2.1", {}) == ("abc", "2.1")

    def test_bearer_header_fallback(self):
        token, version = extract_handshake_params("/", {"Authorization": "Bearer xyz"})
        assert token == "xyz"
        assert version is None

    def test_missing(self):
        assert extract_handshake_params("/", {}) == (None, None)
