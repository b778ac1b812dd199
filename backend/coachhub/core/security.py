from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum
from typing import Any, Dict

from jose import jwt

from ..config import get_settings

ALGORITHM = "HS256"


class Role(str, PyEnum):
    client = "client"
    coach = "coach"
    admin = "admin"
    system = "system"


@dataclass(slots=True, frozen=True)
class Principal:
    """Acting user as supplied by the identity provider."""

    user_id: int | None
    role: Role

    @property
    def actor(self) -> str:
        if self.user_id is None:
            return self.role.value
        return str(self.user_id)


SYSTEM_PRINCIPAL = Principal(user_id=None, role=Role.system)


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=ALGORITHM)


def decode_principal(token: str) -> Principal:
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    user_id = payload.get("sub")
    role = payload.get("role", Role.client.value)
    if user_id is None:
        raise ValueError("Token has no subject")
    return Principal(user_id=int(user_id), role=Role(role))
