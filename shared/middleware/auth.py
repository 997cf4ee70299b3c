"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The bearer token is verified once per request and turned into an explicit
RequestContext that routers hand to the booking workflow.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.exceptions import AuthenticationError, AuthorizationError
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    """Verified identity of the caller for the lifetime of one request."""

    user_id: uuid.UUID
    role: UserRole
    email: str
    name: str
    jti: str
    exp: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "RequestContext":
        return cls(
            user_id=uuid.UUID(payload["sub"]),
            role=UserRole(payload["role"]),
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            jti=payload["jti"],
            exp=int(payload.get("exp", 0)),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_driver(self) -> bool:
        return self.role == UserRole.DRIVER

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT


async def resolve_token(token: str, redis) -> RequestContext:
    """
    Verify a raw JWT and check the Redis deny-list.
    Shared by the HTTP dependency and the WebSocket handshake.
    """
    try:
        payload = verify_access_token(token)
        ctx = RequestContext.from_payload(payload)
    except (JWTError, ValueError, KeyError):
        # Tampered or expired tokens are a 403
        raise AuthenticationError("Invalid or expired token", status_code=403)

    if await RedisCache(redis).is_token_revoked(ctx.jti):
        raise AuthenticationError("Token has been revoked")
    return ctx


async def get_request_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> RequestContext:
    """Extract and validate the JWT from the Authorization header."""
    if not credentials:
        raise AuthenticationError("Access token required")
    return await resolve_token(credentials.credentials, redis)


async def get_current_user(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the full User row for the caller."""
    result = await db.execute(select(User).where(User.id == ctx.user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthorizationError("User account is inactive")
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        ctx: RequestContext = Depends(get_request_context),
    ) -> RequestContext:
        if ctx.role not in self.roles:
            raise AuthorizationError(
                f"Access denied. Required role: {', '.join(r.value for r in self.roles)}"
            )
        return ctx


# Convenience role dependencies
require_patient = RoleRequired(UserRole.PATIENT)
require_driver = RoleRequired(UserRole.DRIVER)
require_admin = RoleRequired(UserRole.ADMIN)
