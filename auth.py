"""
Adapter for the external auth collaborator.

Requests carry a bearer JWT whose ``sub`` is the voter id and whose ``role``
is ``voter`` or ``admin``. Credentials and login live elsewhere; this module
only turns a verified token into an ``Actor``.
"""

from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError as SchemaValidationError

from config import Settings


class Actor(BaseModel):
    id: str
    role: Literal["voter", "admin"] = "voter"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def label(self) -> str:
        return self.email or self.id


class InvalidToken(Exception):
    pass


def issue_token(settings: Settings, actor: Actor, expires_in: timedelta = timedelta(hours=6)) -> str:
    claims = {
        "sub": actor.id,
        "role": actor.role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if actor.email:
        claims["email"] = actor.email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def actor_from_token(settings: Settings, token: str) -> Actor:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidToken(str(exc)) from exc
    try:
        return Actor(id=payload["sub"], role=payload.get("role", "voter"), email=payload.get("email"))
    except (KeyError, SchemaValidationError) as exc:
        raise InvalidToken("malformed claims") from exc


def actor_from_header(settings: Settings, header: Optional[str]) -> Actor:
    if not header:
        raise InvalidToken("No Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise InvalidToken("Invalid token header")
    return actor_from_token(settings, token.strip())
