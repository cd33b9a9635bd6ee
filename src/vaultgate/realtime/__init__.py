"""
Real-time presence and command dispatch.
"""

from .router import ClientConnection, CommandRouter, ConnectionState
from .server import RealtimeServer, extract_handshake_params

__all__ = [
    "ClientConnection",
    "CommandRouter",
    "ConnectionState",
    "RealtimeServer",
    "extract_handshake_params",
]
