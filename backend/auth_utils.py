"""
Bearer-token verification for end-user requests.

Access tokens are minted by the external identity provider (HS256, `sub` =
account id, `aud` = AUTH_JWT_AUDIENCE). This service only verifies them.
"""
import hashlib
from dataclasses import dataclass

import jwt as _jwt

from config import AUTH_JWT_SECRET, AUTH_JWT_AUDIENCE


class InvalidCredentials(Exception):
    """The bearer token is missing, malformed, expired or carries no subject."""


@dataclass(frozen=True)
class Identity:
    account_id: str
    email: str | None
    token: str


def verify_access_token(token: str) -> Identity:
    if not token:
        raise InvalidCredentials("missing bearer token")
    try:
        claims = _jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=AUTH_JWT_AUDIENCE,
            options={"require": ["exp", "sub"]},
        )
    except _jwt.ExpiredSignatureError:
        raise InvalidCredentials("access token expired")
    except _jwt.InvalidTokenError as exc:
        raise InvalidCredentials(f"invalid access token: {exc}")
    sub = claims.get("sub")
    if not sub:
        raise InvalidCredentials("access token has no subject")
    return Identity(account_id=str(sub), email=claims.get("email"), token=token)


def hash_session_token(token: str) -> str:
    """Session tokens are looked up by digest; the raw token is never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
