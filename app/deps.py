"""Shared FastAPI dependencies."""

from functools import lru_cache

import redis.asyncio as aioredis
from fastapi import Request

from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_user_id
from app.core.security import load_session_cookie
from app.models.user import User
from app.services.generation_client import GenerationClient

SESSION_COOKIE_NAME = "animate_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_user_id(str(user.id))
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user


@lru_cache
def get_generation_client() -> GenerationClient:
    """One pooled provider client per process."""
    return GenerationClient()


@lru_cache
def get_redis() -> aioredis.Redis:
    return aioredis.from_url(get_settings().redis_url, decode_responses=True)
