"""
Runtime configuration loaded from the environment.

The signing secret has no default: a missing VAULTGATE_SECRET stops startup.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError


DEFAULT_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 3000
DEFAULT_WS_PORT = 3001
DEFAULT_DB_PATH = Path("data") / "users.db"
DEFAULT_TOKEN_TTL_SECONDS = 30 * 60       # 30 minutes
DEFAULT_PRESENCE_MAX_AGE = 5 * 60         # 5 minutes
DEFAULT_SWEEP_INTERVAL = 30.0
DEFAULT_IDLE_AFTER = 60.0
MIN_SECRET_LENGTH = 32                    # HS256 key size


@dataclass
class Settings:
    """
    Process-wide settings.

    Attributes:
        secret: Secret used to sign credentials (required)
        host: Bind address for both servers
        http_port: HTTP API port
        ws_port: Real-time WebSocket port
        db_path: SQLite user table location
        token_ttl: Credential lifetime in seconds
        presence_max_age: Seconds without heartbeat before presence is swept
        sweep_interval: Seconds between background sweeps
        idle_after: Seconds without messages before a connection is idle
        log_level: loguru level name
        owner_username: Optional bootstrap owner account
        owner_password: Password for the bootstrap owner
    """
    secret: str
    host: str = DEFAULT_HOST
    http_port: int = DEFAULT_HTTP_PORT
    ws_port: int = DEFAULT_WS_PORT
    db_path: Path = DEFAULT_DB_PATH
    token_ttl: int = DEFAULT_TOKEN_TTL_SECONDS
    presence_max_age: float = DEFAULT_PRESENCE_MAX_AGE
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    idle_after: float = DEFAULT_IDLE_AFTER
    log_level: str = "INFO"
    owner_username: Optional[str] = None
    owner_password: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If the secret is missing or a value is malformed
        """
        env = os.environ if environ is None else environ

        secret = env.get("VAULTGATE_SECRET", "").strip()
        if not secret:
            raise ConfigurationError(
                "VAULTGATE_SECRET is not set; refusing to start without a signing secret"
            )
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"VAULTGATE_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )

        owner_username = env.get("VAULTGATE_OWNER_USERNAME") or None
        owner_password = env.get("VAULTGATE_OWNER_PASSWORD") or None
        if owner_username and not owner_password:
            raise ConfigurationError(
                "VAULTGATE_OWNER_USERNAME is set but VAULTGATE_OWNER_PASSWORD is not"
            )

        return cls(
            secret=secret,
            host=env.get("VAULTGATE_HOST", DEFAULT_HOST),
            http_port=_int(env, "VAULTGATE_PORT", DEFAULT_HTTP_PORT),
            ws_port=_int(env, "VAULTGATE_WS_PORT", DEFAULT_WS_PORT),
            db_path=Path(env.get("VAULTGATE_DB", str(DEFAULT_DB_PATH))),
            token_ttl=_int(env, "VAULTGATE_TOKEN_TTL", DEFAULT_TOKEN_TTL_SECONDS),
            presence_max_age=_float(env, "VAULTGATE_PRESENCE_MAX_AGE", DEFAULT_PRESENCE_MAX_AGE),
            sweep_interval=_float(env, "VAULTGATE_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL),
            idle_after=_float(env, "VAULTGATE_IDLE_AFTER", DEFAULT_IDLE_AFTER),
            log_level=env.get("VAULTGATE_LOG_LEVEL", "INFO").upper(),
            owner_username=owner_username,
            owner_password=owner_password,
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value
