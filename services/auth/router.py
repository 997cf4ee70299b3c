"""
services/auth/router.py
Email/password authentication endpoints.
Implements: Register → Login → JWT issue → Me → Logout (deny-list)
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.user.repository import UserRepository
from shared.middleware.auth import RequestContext, get_current_user, get_request_context
from shared.models.models import User, UserRole
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    UserResponse,
)
from shared.utils.exceptions import AuthorizationError, ValidationError
from shared.utils.security import (
    create_access_token,
    get_token_remaining_ttl,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

DRIVER_ONLY_FIELDS = {"available": None, "location": None, "rating": None, "total_rides": None}


def user_response(user: User) -> UserResponse:
    """Serialize an account; driver-only fields are blanked for other roles."""
    response = UserResponse.model_validate(user)
    if user.role != UserRole.DRIVER:
        response = response.model_copy(update=DRIVER_ONLY_FIELDS)
    return response


def _issue_token(user: User, message: str) -> AuthResponse:
    token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
        email=user.email,
        name=user.name,
    )
    return AuthResponse(
        message=message,
        token=token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=user_response(user),
    )


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a patient or driver",
)
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """
    Public sign-up. Only patient and driver accounts can be created here;
    admins are provisioned from settings at startup.
    """
    users = UserRepository(db)
    if await users.find_by_email(data.email):
        raise ValidationError("User already exists")

    role = UserRole(data.role)
    user = await users.create(User(
        name=data.name,
        email=data.email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        role=role,
        available=True if role == UserRole.DRIVER else None,
    ))
    await db.commit()
    logger.info(f"Registered {role.value} {user.id}")
    return _issue_token(user, "User registered successfully")


@router.post("/login", response_model=AuthResponse, summary="Login with email and password")
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await UserRepository(db).find_by_email(data.email)
    if not user or not verify_password(data.password, user.password_hash):
        raise ValidationError("Invalid credentials")
    if not user.is_active:
        raise AuthorizationError("User account is inactive")
    return _issue_token(user, "Login successful")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    return user_response(current_user)


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    ctx: RequestContext = Depends(get_request_context),
    redis=Depends(get_redis),
):
    """Add the presented JWT to the Redis deny-list until it expires."""
    ttl = get_token_remaining_ttl({"exp": ctx.exp}) or 1
    await RedisCache(redis).revoke_token(ctx.jti, ttl)
    return MessageResponse(message="Logged out successfully")
