from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import AbstractAsyncContextManager, aclosing
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import ExpiredSignatureError, InvalidTokenError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.models import User
from app.settings import get_settings

logger = logging.getLogger(__name__)
_bearer_scheme = HTTPBearer(auto_error=False)
get_session = get_async_session


def create_access_token(user_id: str, *, expires_in: timedelta | None = None) -> str:
    settings = get_settings()
    expires_in = expires_in or timedelta(minutes=settings.token_ttl_minutes)
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_user_id(token: str) -> str:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired")
    except InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_subject")
    return str(subject)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Extract and validate the current user from a bearer token."""

    if credentials is None:
        logger.warning("[get_current_user] No Authorization header or wrong scheme")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user_id = decode_user_id(credentials.credentials)
    user = await session.get(User, user_id)
    if user is None:
        logger.warning("[get_current_user] Token for unknown user id=%s", user_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user_not_found")
    return user


async def _unwrap_session(
    session: AsyncSession | AsyncGenerator[AsyncSession, None] | AbstractAsyncContextManager,
) -> AsyncGenerator[AsyncSession, None]:
    if isinstance(session, AsyncSession):
        yield session
    elif isinstance(session, AsyncGenerator):
        async with aclosing(session) as session_generator:
            real_session = await anext(session_generator)
            yield real_session
    else:
        async with session as real_session:  # type: ignore[func-returns-value]
            yield real_session


async def create_user(session: AsyncSession | AbstractAsyncContextManager, name: str) -> User:
    async for real_session in _unwrap_session(session):
        user = User(name=name.strip())
        real_session.add(user)
        await real_session.commit()
        await real_session.refresh(user)
        logger.info("Created user id=%s name=%s", user.id, user.name)
        return user
    raise RuntimeError("Failed to obtain database session")


async def get_or_create_user(
    session: AsyncSession | AbstractAsyncContextManager, user_id: str | None, name: str
) -> User:
    """Reuse the user behind an existing id, renaming it, or create a new one."""
    async for real_session in _unwrap_session(session):
        user = None
        if user_id:
            result = await real_session.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()
        if user is None:
            return await create_user(real_session, name)
        user.name = name.strip()
        await real_session.commit()
        await real_session.refresh(user)
        return user
    raise RuntimeError("Failed to obtain database session")
