"""Signed session cookies.

The session is a JWT (HS256 by default) stored in a cookie. It carries the
display name chosen at login and, once provisioned, the identity id. Issuing
real credentials is not this module's job; it only encodes, verifies and
re-issues the session payload.
"""
import logging
import time
from http.cookies import SimpleCookie
from typing import Mapping, Optional

from jose import JWTError, jwt
from pydantic import ValidationError

from chatroom.config import AppConfig, get_config

from .schemas import SessionClaims

logger = logging.getLogger(__name__)


class SessionCodec:
    """Encode and decode session cookies.

    Args:
        secret_key: HMAC key used to sign tokens.
        algorithm: JWT algorithm name.
        ttl_seconds: Lifetime of issued tokens.
        cookie_name: Name of the cookie carrying the token.
        cookie_secure: Whether issued cookies are marked ``Secure``.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl_seconds: int = 24 * 60 * 60,
        cookie_name: str = "chatroom_session",
        cookie_secure: bool = False,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self.cookie_name = cookie_name
        self.cookie_secure = cookie_secure

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "SessionCodec":
        config = config or get_config()
        return cls(
            secret_key=config.secrets.session.secret_key,
            algorithm=config.session.algorithm,
            ttl_seconds=config.session.ttl_seconds,
            cookie_name=config.session.cookie_name,
            cookie_secure=config.session.cookie_secure,
        )

    def encode(self, claims: SessionClaims) -> str:
        now = int(time.time())
        payload = {"name": claims.name, "iat": now, "exp": now + self.ttl_seconds}
        if claims.sub:
            payload["sub"] = claims.sub
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Verify a token and return its claims, or None if missing/invalid/expired."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Rejected session token: {e}")
            return None
        try:
            return SessionClaims(sub=payload.get("sub"), name=payload.get("name", ""))
        except ValidationError:
            logger.debug("Session token carries no display name")
            return None

    def from_cookies(self, cookies: Mapping[str, str]) -> Optional[SessionClaims]:
        return self.decode(cookies.get(self.cookie_name))

    def set_cookie_header(self, token: str) -> str:
        """Build a ``Set-Cookie`` header value for a WebSocket handshake response."""
        cookie: SimpleCookie = SimpleCookie()
        cookie[self.cookie_name] = token
        morsel = cookie[self.cookie_name]
        morsel["path"] = "/"
        morsel["max-age"] = str(self.ttl_seconds)
        morsel["httponly"] = True
        morsel["samesite"] = "lax"
        if self.cookie_secure:
            morsel["secure"] = True
        return morsel.OutputString()
