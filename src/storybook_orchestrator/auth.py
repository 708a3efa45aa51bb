"""Bearer credential verification.

Access tokens are HS256 JWTs signed by the hosted auth provider; the user id
is the ``sub`` claim. The same raw token is forwarded to the generation
service, which trusts the same issuer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import jwt
from jwt.exceptions import InvalidTokenError

from storybook_orchestrator.errors import AuthError

ALGORITHM = "HS256"
BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    user_id: str
    credential: str


class IdentityVerifier(Protocol):
    def verify(self, credential: str) -> Identity: ...


class JwtIdentityVerifier:
    def __init__(self, secret: str, *, audience: str | None = "authenticated") -> None:
        if not secret:
            raise ValueError("JWT secret is required")
        self._secret = secret
        self._audience = audience

    def verify(self, credential: str) -> Identity:
        try:
            payload = jwt.decode(
                credential,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except InvalidTokenError as exc:
            raise AuthError("Invalid credential") from exc
        user_id = payload.get("sub")
        if not user_id:
            raise AuthError("Credential has no subject")
        return Identity(user_id=str(user_id), credential=credential)


def bearer_credential(authorization: str | None) -> str:
    """Extract the token from an ``Authorization`` header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthError("Missing bearer credential")
    token = authorization[len(BEARER_PREFIX) :].strip()
    if not token:
        raise AuthError("Missing bearer credential")
    return token
