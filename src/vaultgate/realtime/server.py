"""
WebSocket server for the real-time channel.

The credential is checked during the HTTP upgrade: a bad token gets a plain
401 and never becomes a WebSocket. Accepted connections are handed to the
command router for their whole lifetime.

Clients pass the token as `?token=...` (with optional `&version=...`) or as
an `Authorization: Bearer ...` header.
"""

from http import HTTPStatus
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..auth.credentials import CredentialStore
from ..errors import AuthFailure
from .router import CLOSE_UNAUTHORIZED, CommandRouter


def extract_handshake_params(path: str, headers) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull (token, version) from the upgrade request.

    Args:
        path: Request path including query string
        headers: Request headers mapping

    Returns:
        (token, version); either may be None
    """
    query = parse_qs(urlsplit(path).query)
    token = (query.get("token") or [None])[0]
    version = (query.get("version") or [None])[0]

    if not token:
        auth_header = headers.get("Authorization", "") if headers is not None else ""
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip() or None

    return token, version


class RealtimeServer:
    """Binds the command router to a websockets server."""

    def __init__(self, router: CommandRouter, credentials: CredentialStore):
        self.router = router
        self.credentials = credentials

    async def process_request(self, connection: ServerConnection, request):
        """Reject the upgrade outright unless the credential validates."""
        token, _ = extract_handshake_params(request.path, request.headers)
        try:
            self.credentials.validate(token)
        except AuthFailure as e:
            logger.warning(f"[{connection.remote_address}] Handshake rejected: {e.code}")
            return connection.respond(HTTPStatus.UNAUTHORIZED, f"{e.code}\n")
        return None

    async def handler(self, websocket: ServerConnection) -> None:
        """
        Handle one accepted connection.

        Args:
            websocket: WebSocket connection
        """
        token, version = extract_handshake_params(websocket.request.path, websocket.request.headers)

        try:
            client = await self.router.connect(websocket, token, version)
        except AuthFailure as e:
            # Expired between the upgrade check and here
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason=e.code)
            return

        try:
            async for message in websocket:
                await self.router.handle_message(client, message)
        except ConnectionClosed:
            logger.debug(f"[{client.connection_id}] WebSocket connection closed")
        finally:
            await self.router.disconnect(client.connection_id)

    async def start(self, host: str, port: int) -> Server:
        server = await serve(self.handler, host, port, process_request=self.process_request)
        logger.info(f"Real-time server running on {host}:{port}")
        return server
