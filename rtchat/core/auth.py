from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from .errors import AuthError
from .proto import Identity, is_identity

log = logging.getLogger("rtchat.auth")

DEFAULT_TTL = timedelta(days=7)


class TokenAuthenticator:
    """Verifies the bearer token a client presents when opening its socket.

    Tokens are the same HS256 JWTs the REST layer issues at login, with the
    user id in the ``id`` claim (``sub`` is accepted as a fallback).
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        identity_claim: str = "id",
        leeway: float = 0,
    ) -> None:
        if not secret:
            raise ValueError("secret is required")
        self.secret = secret
        self.algorithm = algorithm
        self.identity_claim = identity_claim
        self.leeway = leeway

    def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthError("authentication required")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm], leeway=self.leeway)
        except ExpiredSignatureError as exc:
            raise AuthError("token expired") from exc
        except InvalidTokenError as exc:
            raise AuthError("invalid token") from exc

        identity = claims.get(self.identity_claim, claims.get("sub"))
        if not is_identity(identity):
            raise AuthError("token carries no user id")
        return identity

    def issue(
        self,
        identity: Identity,
        *,
        username: Optional[str] = None,
        role: str = "user",
        ttl: timedelta = DEFAULT_TTL,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            self.identity_claim: identity,
            "username": username,
            "role": role,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)


def token_from_handshake(path: Optional[str], headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Pull the credential from ``?token=`` or an ``Authorization: Bearer`` header."""

    if path:
        values = parse_qs(urlsplit(path).query).get("token")
        if values and values[0]:
            return values[0]
    if headers:
        auth = headers.get("Authorization") or headers.get("authorization") or ""
        scheme, _, value = auth.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


__all__ = ["TokenAuthenticator", "token_from_handshake", "DEFAULT_TTL"]
