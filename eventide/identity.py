"""Bearer token verification producing an identity claim."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt

from .config import settings
from .errors import Unauthenticated
from .utils import is_str


@dataclass(frozen=True)
class IdentityClaim:
    subject_id: str
    email: str
    name: str | None = None
    nickname: str | None = None
    picture: str | None = None


def _decode(token: str) -> dict[str, Any]:
    if not settings.auth_secret:
        raise Unauthenticated("Token verification is not configured; set EVENTIDE_AUTH_SECRET")
    audience = settings.auth_audience or None
    issuer = settings.auth_issuer or None
    try:
        return jwt.decode(
            token,
            settings.auth_secret,
            algorithms=[settings.auth_algorithm],
            audience=audience,
            issuer=issuer,
            options={"verify_aud": audience is not None},
        )
    except JWTError as exc:
        raise Unauthenticated("Invalid bearer token") from exc


def verify_bearer_token(token: str) -> IdentityClaim:
    """Verify ``token`` and return the identity it asserts."""
    if not is_str(token):
        raise Unauthenticated("Missing bearer token")
    payload = _decode(token)
    subject = payload.get("sub")
    email = payload.get("email")
    if not is_str(subject) or not is_str(email):
        raise Unauthenticated("Token is missing the sub or email claim")
    return IdentityClaim(
        subject_id=subject,
        email=email,
        name=payload.get("name"),
        nickname=payload.get("nickname"),
        picture=payload.get("picture"),
    )
