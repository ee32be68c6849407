"""
Principal resolution.

Tokens are issued by the external auth collaborator. The engine only verifies
the signature and trusts the resolved (member_id, studio_id, role) triple.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from studio_booking.core.config import get_settings
from studio_booking.core.exceptions import BookingEngineError, PermissionDenied
from studio_booking.core.logging import bind_principal

settings = get_settings()

STAFF_ROLES = {"staff", "admin", "owner"}

bearer_scheme = HTTPBearer(auto_error=False)


class Unauthenticated(BookingEngineError):
    code = "UNAUTHORIZED"
    status_code = 401


@dataclass(frozen=True)
class Principal:
    member_id: int
    studio_id: int
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def create_access_token(
    member_id: int,
    studio_id: int,
    role: str = "member",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Mint a token the way the auth collaborator does. Used by tests and load scripts."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": str(member_id), "studio_id": studio_id, "role": role, "exp": expire}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_principal(token: str) -> Principal:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return Principal(
            member_id=int(payload["sub"]),
            studio_id=int(payload["studio_id"]),
            role=str(payload.get("role", "member")),
        )
    except (jwt.PyJWTError, KeyError, ValueError) as exc:
        raise Unauthenticated("Invalid or expired token") from exc


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise Unauthenticated("Not authenticated")
    principal = decode_principal(credentials.credentials)
    bind_principal(principal.member_id, principal.studio_id, principal.role)
    return principal


async def require_staff(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_staff:
        raise PermissionDenied("Staff role required")
    return principal


def ensure_studio(principal: Principal, studio_id: int) -> None:
    """Studios are isolated tenants: a principal only acts inside its own studio."""
    if principal.studio_id != studio_id:
        raise PermissionDenied("Not a member of this studio")
