"""
JWT token generation and validation.

Handles creation and verification of signed bearer tokens. Expiry and
revocation are enforced by the credential store; this layer only proves the
token was minted by this server and has not been tampered with.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Tuple

import jwt
from loguru import logger

from ..errors import AuthFailure
from .permissions import Role


ALGORITHM = "HS256"
TOKEN_TYPE = "access"


@dataclass
class TokenPayload:
    """
    Decoded JWT payload.

    Attributes:
        username: Username (sub claim)
        role: Role at issuance
        exp: Expiration timestamp
        iat: Issued at timestamp
        jti: JWT ID, used as the credential identity
    """
    username: str
    role: Role
    exp: datetime
    iat: datetime
    jti: str


class JWTHandler:
    """
    JWT token handler.

    Creates and validates signed tokens.
    """

    def __init__(self, secret_key: str, algorithm: str = ALGORITHM):
        """
        Initialize handler.

        Args:
            secret_key: Secret key for signing tokens
            algorithm: JWT algorithm (default: HS256)
        """
        if not secret_key:
            raise ValueError("A signing secret is required")

        self.secret_key = secret_key
        self.algorithm = algorithm

    def create_access_token(
        self,
        username: str,
        role: Role,
        issued_at: datetime,
        lifetime: timedelta,
    ) -> Tuple[str, TokenPayload]:
        """
        Create a signed access token.

        Args:
            username: Username
            role: Role to snapshot into the token
            issued_at: Issuance time (timezone-aware)
            lifetime: Token lifetime

        Returns:
            (token, payload) tuple
        """
        expire = issued_at + lifetime
        jti = secrets.token_urlsafe(16)

        claims = {
            "iat": int(issued_at.timestamp()),
            "exp": int(expire.timestamp()),
            "sub": username,
            "role": Role.parse(role).value,
            "jti": jti,
            "type": TOKEN_TYPE,
        }

        token = jwt.encode(claims, self.secret_key, algorithm=self.algorithm)
        logger.debug(f"Access token created for user {username}")

        payload = TokenPayload(
            username=username,
            role=Role.parse(role),
            exp=expire,
            iat=issued_at,
            jti=jti,
        )
        return token, payload

    def verify_token(self, token: str) -> TokenPayload:
        """
        Verify signature and decode a token.

        Args:
            token: JWT token string

        Returns:
            TokenPayload

        Raises:
            AuthFailure: "Expired" if past exp, "Unknown" for anything else
        """
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub", "jti"], "verify_iat": False},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Token has expired")
            raise AuthFailure("Expired", "Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            raise AuthFailure("Unknown", "Invalid token")

        if claims.get("type") != TOKEN_TYPE:
            logger.warning("Token is not an access token")
            raise AuthFailure("Unknown", "Invalid token type")

        try:
            role = Role.parse(claims.get("role"))
        except ValueError:
            raise AuthFailure("Unknown", "Invalid token role")

        return TokenPayload(
            username=claims["sub"],
            role=role,
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            jti=claims["jti"],
        )
