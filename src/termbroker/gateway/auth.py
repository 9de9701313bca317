"""Connection authentication.

The broker does not issue tokens; it verifies JWTs minted by the
application that owns user accounts, using a shared HMAC secret.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from fastapi import Header, HTTPException, Request

from termbroker.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """An authenticated principal."""

    subject: str
    claims: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class Authenticator(Protocol):
    def authenticate(self, token: str | None) -> Identity: ...


class JWTAuthenticator:
    """Verify bearer tokens signed with a shared secret."""

    def __init__(
        self,
        secret: str,
        algorithms: list[str] | None = None,
        audience: str | None = None,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret is not configured (set TERMBROKER_JWT_SECRET)")
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]
        self._audience = audience

    def authenticate(self, token: str | None) -> Identity:
        """Decode and verify ``token``.

        The subject is taken from ``sub``, falling back to ``id`` / ``userId``
        claims.

        Raises:
            AuthenticationError: Missing, invalid, or expired token, or no subject.
        """
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise AuthenticationError("Invalid token") from e

        subject = claims.get("sub") or claims.get("id") or claims.get("userId")
        if not subject:
            raise AuthenticationError("Token has no subject")
        return Identity(subject=str(subject), claims=claims)


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_identity(
    request: Request, authorization: str | None = Header(default=None)
) -> Identity:
    """FastAPI dependency: authenticate an HTTP request with the app's authenticator."""
    try:
        return request.app.state.authenticator.authenticate(bearer_token(authorization))
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
