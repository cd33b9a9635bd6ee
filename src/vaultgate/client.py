"""
Client-side helper.

Logs in, keeps the bearer token, fetches a decryption key and the encrypted
content, and decrypts locally.
"""

import base64
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from .errors import AuthFailure, Conflict, Forbidden, InvalidInput, NotFound, VaultGateError
from .vault.content import decrypt_blob


_STATUS_ERRORS = {
    400: InvalidInput,
    401: AuthFailure,
    403: Forbidden,
    404: NotFound,
    409: Conflict,
}


class VaultClient:
    """
    HTTP client for a vaultgate server.

    Usage:
        async with VaultClient("http://localhost:3000") as client:
            await client.login("alice", "secret")
            plaintext = await client.fetch_plaintext()
    """

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None,
                 version: str = "1.0"):
        """
        Initialize client.

        Args:
            base_url: Server root URL
            session: Existing aiohttp session (default: create one)
            version: Client version reported in presence
        """
        self.base_url = base_url.rstrip("/")
        self.version = version
        self._session = session
        self._owns_session = session is None
        self.token: Optional[str] = None
        self.role: Optional[str] = None
        self.session_id: Optional[str] = None

    async def __aenter__(self) -> "VaultClient":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, json: Any = None, raw: bool = False):
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        async with self._session.request(
            method, f"{self.base_url}{path}", json=json, headers=self._headers()
        ) as response:
            if response.status >= 400:
                try:
                    body = await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    body = {}
                error_cls = _STATUS_ERRORS.get(response.status, VaultGateError)
                raise error_cls(body.get("error"), body.get("message"))

            if raw:
                return await response.read()
            return await response.json()

    async def login(self, username: str, password: str) -> str:
        """
        Authenticate and keep the token.

        Returns:
            Role name
        """
        data = await self._request(
            "POST", "/api/login",
            json={"username": username, "password": password, "version": self.version},
        )
        self.token = data["token"]
        self.role = data["role"]
        self.session_id = data.get("sessionId")
        logger.info(f"Logged in as {username} ({self.role})")
        return self.role

    async def logout(self) -> None:
        await self._request("POST", "/api/logout")
        self.token = None
        self.session_id = None

    async def heartbeat(self) -> None:
        await self._request("POST", "/api/heartbeat", json={"version": self.version})

    async def online(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/online")

    async def get_key(self, ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        """
        Returns:
            {"key": bytes, "expiresAt": ms, "generation": n}
        """
        body = {} if ttl_seconds is None else {"ttlSeconds": ttl_seconds}
        data = await self._request("POST", "/api/get-key", json=body)
        data["key"] = base64.b64decode(data["key"])
        return data

    async def fetch_content(self) -> bytes:
        return await self._request("GET", "/content", raw=True)

    async def fetch_plaintext(self, ttl_seconds: Optional[int] = None) -> bytes:
        """Fetch a key, download the ciphertext and decrypt it."""
        grant = await self.get_key(ttl_seconds)
        blob = await self.fetch_content()
        return decrypt_blob(grant["key"], blob)

    async def upload(self, payload: str) -> int:
        data = await self._request("POST", "/api/upload-content", json={"payload": payload})
        return data["generation"]

    async def create_user(self, username: str, password: str, role: str) -> None:
        await self._request(
            "POST", "/api/users",
            json={"username": username, "password": password, "role": role},
        )

    async def set_kill_switch(self, enable: bool) -> bool:
        data = await self._request("POST", "/api/kill-switch", json={"enable": enable})
        return data["killSwitchEnabled"]
